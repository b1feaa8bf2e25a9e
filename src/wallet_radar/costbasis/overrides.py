"""User price corrections for on-chain events."""

from __future__ import annotations

import logging
from decimal import Decimal

from wallet_radar.events import OverrideSaved, SignalBus
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import (
    CostBasisOverrideDTO,
    CostBasisOverrideRepository,
    EconomicEventDTO,
    EconomicEventRepository,
)

logger = logging.getLogger(__name__)

EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
OVERRIDE_EXISTS = "OVERRIDE_EXISTS"


class OverrideError(Exception):
    """Rejected override request; ``code`` is EVENT_NOT_FOUND or OVERRIDE_EXISTS."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class OverrideService:
    """Sets and reverts cost-basis overrides.

    Requests are validated before anything is written. Every accepted
    change publishes :class:`OverrideSaved` so the affected position is
    replayed.
    """

    def __init__(self, session_scope: SessionScope, bus: SignalBus) -> None:
        self._session_scope = session_scope
        self._bus = bus

    @staticmethod
    async def _on_chain_event(repo: EconomicEventRepository, event_id: int) -> EconomicEventDTO:
        event = await repo.get(event_id)
        if event is None:
            raise OverrideError(EVENT_NOT_FOUND, f"Event not found: {event_id}")
        if event.is_manual:
            raise OverrideError(EVENT_NOT_FOUND, "Override only for on-chain events")
        return event

    async def set_override(self, event_id: int, price_usd: Decimal, note: str | None = None) -> CostBasisOverrideDTO:
        """Attach an active override price to an on-chain event.

        Raises:
            OverrideError: EVENT_NOT_FOUND for a missing or manual event,
                OVERRIDE_EXISTS when the event already has an active override.
        """
        async with self._session_scope() as session:
            event = await self._on_chain_event(EconomicEventRepository(session), event_id)
            override_repo = CostBasisOverrideRepository(session)
            if await override_repo.get_active(event_id) is not None:
                raise OverrideError(OVERRIDE_EXISTS, f"Active override already exists for event: {event_id}")
            override = await override_repo.insert(
                CostBasisOverrideDTO(economic_event_id=event_id, price_usd=price_usd, note=note)
            )

        logger.info("Override set for event %d at %s", event_id, price_usd)
        await self._publish(event)
        return override

    async def revert_override(self, event_id: int) -> int:
        """Deactivate the event's active override; earlier rows stay as history.

        Returns:
            Number of overrides deactivated.

        Raises:
            OverrideError: EVENT_NOT_FOUND for a missing or manual event.
        """
        async with self._session_scope() as session:
            event = await self._on_chain_event(EconomicEventRepository(session), event_id)
            deactivated = await CostBasisOverrideRepository(session).deactivate(event_id)

        logger.info("Override reverted for event %d (%d deactivated)", event_id, deactivated)
        await self._publish(event)
        return deactivated

    async def _publish(self, event: EconomicEventDTO) -> None:
        if event.id is None:
            return
        await self._bus.publish(
            OverrideSaved(
                event_id=event.id,
                wallet_address=event.wallet_address,
                network_id=event.network_id,
                asset_contract=event.asset_contract,
            )
        )
