"""Late internal-transfer detection across tracked wallets."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from wallet_radar.domain import EconomicEventType
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import EconomicEventDTO, EconomicEventRepository

logger = logging.getLogger(__name__)


class InternalTransferReclassifier:
    """Turns EXTERNAL_INBOUND events from tracked wallets into INTERNAL_TRANSFER.

    Wallet A's inbound from wallet B is only recognisable as internal once
    B is tracked, which may happen after A's backfill finished. The job
    runner therefore calls this when the whole queue is idle.
    """

    def __init__(self, session_scope: SessionScope) -> None:
        self._session_scope = session_scope

    async def reclassify(self, tracked_wallets: Iterable[str]) -> list[EconomicEventDTO]:
        """Reclassify matching events.

        Returns:
            The updated events; their wallets need an AVCO replay.
        """
        tracked = {w.lower() for w in tracked_wallets}
        if len(tracked) < 2:
            return []

        async with self._session_scope() as session:
            repo = EconomicEventRepository(session)
            candidates = await repo.list_external_inbound_from(tracked)
            # A wallet's own address as counterparty is not a transfer between wallets.
            updated = [
                e
                for e in candidates
                if e.id is not None and e.wallet_address.lower() != (e.counterparty_address or "").lower()
            ]
            await repo.mark_internal_transfer(e.id for e in updated if e.id is not None)

        for event in updated:
            event.event_type = EconomicEventType.INTERNAL_TRANSFER
            event.is_internal_transfer = True

        if updated:
            logger.info(
                "Reclassified %d inbound events as internal transfers across %d wallets",
                len(updated),
                len({e.wallet_address for e in updated}),
            )
        return updated
