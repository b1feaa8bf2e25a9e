"""Tests for setting and reverting cost-basis overrides."""

from __future__ import annotations

from decimal import Decimal

import pytest

from wallet_radar.costbasis.avco import AvcoEngine
from wallet_radar.costbasis.overrides import EVENT_NOT_FOUND, OVERRIDE_EXISTS, OverrideError, OverrideService
from wallet_radar.domain import EconomicEventType, NetworkId
from wallet_radar.events import OverrideSaved, SignalBus
from wallet_radar.storage.repos import CostBasisOverrideRepository, EconomicEventRepository

WALLET = "0x" + "a" * 40
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"


@pytest.fixture
def bus() -> SignalBus:
    return SignalBus()


@pytest.fixture
def saved(bus: SignalBus) -> list[OverrideSaved]:
    signals: list[OverrideSaved] = []

    async def record(signal: OverrideSaved) -> None:
        signals.append(signal)

    bus.subscribe(OverrideSaved, record)
    return signals


@pytest.fixture
def service(session_scope, bus: SignalBus) -> OverrideService:
    return OverrideService(session_scope, bus)


async def store(session_scope, event) -> int:
    async with session_scope() as session:
        return await EconomicEventRepository(session).upsert(event)


class TestSetOverride:
    @pytest.mark.asyncio
    async def test_creates_active_override_and_publishes(self, session_scope, service, saved, make_event) -> None:
        event_id = await store(session_scope, make_event(EconomicEventType.SWAP_BUY, "1", "3000"))

        override = await service.set_override(event_id, Decimal("2500"), note="OTC fill price")

        assert override.id is not None
        assert override.is_active
        assert override.price_usd == Decimal("2500")
        assert override.note == "OTC fill price"
        assert saved == [
            OverrideSaved(event_id=event_id, wallet_address=WALLET, network_id=NetworkId.ETHEREUM, asset_contract=WETH)
        ]

    @pytest.mark.asyncio
    async def test_unknown_event(self, service, saved) -> None:
        with pytest.raises(OverrideError) as exc_info:
            await service.set_override(404, Decimal("1"))

        assert exc_info.value.code == EVENT_NOT_FOUND
        assert saved == []

    @pytest.mark.asyncio
    async def test_manual_events_cannot_be_overridden(self, session_scope, service, make_event) -> None:
        event_id = await store(session_scope, make_event(EconomicEventType.MANUAL_COMPENSATING, "1", "10"))

        with pytest.raises(OverrideError) as exc_info:
            await service.set_override(event_id, Decimal("1"))

        assert exc_info.value.code == EVENT_NOT_FOUND
        assert str(exc_info.value) == "Override only for on-chain events"

    @pytest.mark.asyncio
    async def test_second_active_override_is_rejected(self, session_scope, service, saved, make_event) -> None:
        event_id = await store(session_scope, make_event(EconomicEventType.SWAP_BUY, "1", "3000"))
        await service.set_override(event_id, Decimal("2500"))

        with pytest.raises(OverrideError) as exc_info:
            await service.set_override(event_id, Decimal("2600"))

        assert exc_info.value.code == OVERRIDE_EXISTS
        assert len(saved) == 1
        async with session_scope() as session:
            assert len(await CostBasisOverrideRepository(session).list_for_event(event_id)) == 1


class TestRevertOverride:
    @pytest.mark.asyncio
    async def test_revert_keeps_history(self, session_scope, service, saved, make_event) -> None:
        event_id = await store(session_scope, make_event(EconomicEventType.SWAP_BUY, "1", "3000"))
        await service.set_override(event_id, Decimal("2500"))

        assert await service.revert_override(event_id) == 1
        await service.set_override(event_id, Decimal("2700"))

        async with session_scope() as session:
            history = await CostBasisOverrideRepository(session).list_for_event(event_id)
        assert [(o.price_usd, o.is_active) for o in history] == [
            (Decimal("2500"), False),
            (Decimal("2700"), True),
        ]
        assert len(saved) == 3

    @pytest.mark.asyncio
    async def test_revert_without_override_still_triggers_replay(
        self, session_scope, service, saved, make_event
    ) -> None:
        event_id = await store(session_scope, make_event(EconomicEventType.SWAP_BUY, "1", "3000"))

        assert await service.revert_override(event_id) == 0
        assert len(saved) == 1

    @pytest.mark.asyncio
    async def test_revert_unknown_event(self, service) -> None:
        with pytest.raises(OverrideError) as exc_info:
            await service.revert_override(404)

        assert exc_info.value.code == EVENT_NOT_FOUND


class TestOverrideReplay:
    @pytest.mark.asyncio
    async def test_saved_override_replays_the_position(self, session_scope, bus, service, make_event) -> None:
        engine = AvcoEngine(session_scope)

        async def replay(signal: OverrideSaved) -> None:
            await engine.replay(signal.wallet_address, signal.network_id, signal.asset_contract)

        bus.subscribe(OverrideSaved, replay)
        buy_id = await store(session_scope, make_event(EconomicEventType.SWAP_BUY, "1", "3000"))
        await store(session_scope, make_event(EconomicEventType.SWAP_BUY, "1", "1000"))
        before = await engine.replay(WALLET, NetworkId.ETHEREUM, WETH)

        await service.set_override(buy_id, Decimal("2000"))
        overridden = await engine.replay(WALLET, NetworkId.ETHEREUM, WETH)
        await service.revert_override(buy_id)
        reverted = await engine.replay(WALLET, NetworkId.ETHEREUM, WETH)

        assert before is not None and overridden is not None and reverted is not None
        assert before.avco_usd == Decimal("2000")
        assert overridden.avco_usd == Decimal("1500")
        assert reverted.avco_usd == Decimal("2000")
