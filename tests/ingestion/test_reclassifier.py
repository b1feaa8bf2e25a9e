"""Tests for late internal-transfer detection."""

from __future__ import annotations

import pytest

from wallet_radar.domain import EconomicEventType
from wallet_radar.ingestion.reclassifier import InternalTransferReclassifier
from wallet_radar.storage.repos import EconomicEventRepository

A = "0x" + "a" * 40
B = "0x" + "b" * 40
STRANGER = "0x" + "c" * 40


async def store(session_scope, *events) -> list[int]:
    async with session_scope() as session:
        repo = EconomicEventRepository(session)
        return [await repo.upsert(e) for e in events]


class TestInternalTransferReclassifier:
    @pytest.mark.asyncio
    async def test_inbound_from_tracked_wallet_becomes_internal(self, session_scope, make_event) -> None:
        internal_id, external_id = await store(
            session_scope,
            make_event(EconomicEventType.EXTERNAL_INBOUND, "1", wallet=A, counterparty_address=B),
            make_event(EconomicEventType.EXTERNAL_INBOUND, "1", wallet=A, counterparty_address=STRANGER),
        )

        updated = await InternalTransferReclassifier(session_scope).reclassify([A, B])

        assert [e.id for e in updated] == [internal_id]
        assert updated[0].event_type is EconomicEventType.INTERNAL_TRANSFER
        async with session_scope() as session:
            repo = EconomicEventRepository(session)
            internal = await repo.get(internal_id)
            external = await repo.get(external_id)
        assert internal is not None and external is not None
        assert internal.event_type is EconomicEventType.INTERNAL_TRANSFER
        assert internal.is_internal_transfer
        assert external.event_type is EconomicEventType.EXTERNAL_INBOUND

    @pytest.mark.asyncio
    async def test_tracked_addresses_are_matched_case_insensitively(self, session_scope, make_event) -> None:
        await store(session_scope, make_event(EconomicEventType.EXTERNAL_INBOUND, "1", wallet=A, counterparty_address=B))

        updated = await InternalTransferReclassifier(session_scope).reclassify([A.upper(), B.upper()])

        assert len(updated) == 1

    @pytest.mark.asyncio
    async def test_needs_at_least_two_wallets(self, session_scope, make_event) -> None:
        await store(session_scope, make_event(EconomicEventType.EXTERNAL_INBOUND, "1", wallet=A, counterparty_address=B))

        assert await InternalTransferReclassifier(session_scope).reclassify([B]) == []

    @pytest.mark.asyncio
    async def test_self_transfers_are_left_alone(self, session_scope, make_event) -> None:
        await store(session_scope, make_event(EconomicEventType.EXTERNAL_INBOUND, "1", wallet=A, counterparty_address=A))

        assert await InternalTransferReclassifier(session_scope).reclassify([A, B]) == []

    @pytest.mark.asyncio
    async def test_only_external_inbound_events_change(self, session_scope, make_event) -> None:
        await store(
            session_scope,
            make_event(EconomicEventType.SWAP_BUY, "1", "2000", wallet=A, counterparty_address=B),
            make_event(EconomicEventType.EXTERNAL_TRANSFER_OUT, "-1", wallet=A, counterparty_address=B),
        )

        assert await InternalTransferReclassifier(session_scope).reclassify([A, B]) == []
