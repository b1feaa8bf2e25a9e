"""Sync status transitions for one (wallet, network) backfill."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from wallet_radar.domain import NetworkId, SyncState
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import SyncStatusDTO, SyncStatusRepository

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BASE_DELAY_MINUTES = 2
DEFAULT_RETRY_MAX_DELAY_MINUTES = 60

# Caps the shift so huge retry counts cannot overflow the delay.
_MAX_SHIFT = 30


class SyncProgressTracker:
    """Writes ``sync_status`` rows as a backfill moves through its phases.

    Every method opens its own short session and commits, so status is
    visible to other workers (and the retry scheduler) immediately.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        retry_base_delay_minutes: int = DEFAULT_RETRY_BASE_DELAY_MINUTES,
        retry_max_delay_minutes: int = DEFAULT_RETRY_MAX_DELAY_MINUTES,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        rng: random.Random | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._base_minutes = retry_base_delay_minutes
        self._max_minutes = retry_max_delay_minutes
        self._clock = clock
        self._rng = rng or random.Random()

    async def get(self, wallet_address: str, network: NetworkId) -> SyncStatusDTO | None:
        async with self._session_scope() as session:
            return await SyncStatusRepository(session).get(wallet_address, network)

    async def ensure_pending(self, wallet_address: str, network: NetworkId) -> SyncStatusDTO:
        """Create a PENDING row when none exists; existing rows are untouched."""
        async with self._session_scope() as session:
            return await SyncStatusRepository(session).ensure(wallet_address, network)

    async def set_running(
        self,
        wallet_address: str,
        network: NetworkId,
        progress_pct: int,
        last_block_synced: int | None,
        banner: str | None,
    ) -> SyncStatusDTO:
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.ensure(wallet_address, network)
            status.status = SyncState.RUNNING
            status.progress_pct = progress_pct
            status.last_block_synced = last_block_synced
            status.sync_banner_message = banner
            status.backfill_complete = False
            await repo.save(status)
            return status

    async def set_progress(self, wallet_address: str, network: NetworkId, progress_pct: int, banner: str) -> None:
        """Update progress and banner of a RUNNING sync, keeping the other fields."""
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.get(wallet_address, network)
            if status is None:
                return
            status.progress_pct = progress_pct
            status.sync_banner_message = banner
            await repo.save(status)

    async def set_raw_fetch_complete(self, wallet_address: str, network: NetworkId, last_block_synced: int) -> None:
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.get(wallet_address, network)
            if status is None:
                return
            status.raw_fetch_complete = True
            status.last_block_synced = last_block_synced
            await repo.save(status)

    async def set_classification_complete(self, wallet_address: str, network: NetworkId) -> None:
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.get(wallet_address, network)
            if status is None:
                return
            status.classification_complete = True
            await repo.save(status)

    async def reset_phases(self, wallet_address: str, network: NetworkId) -> None:
        """Clear both phase flags before a fresh range is planned."""
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.get(wallet_address, network)
            if status is None:
                return
            status.raw_fetch_complete = False
            status.classification_complete = False
            await repo.save(status)

    async def set_complete(self, wallet_address: str, network: NetworkId) -> None:
        """Mark COMPLETE at 100%, clear the banner and the retry schedule."""
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.ensure(wallet_address, network)
            status.status = SyncState.COMPLETE
            status.progress_pct = 100
            status.sync_banner_message = None
            status.backfill_complete = status.raw_fetch_complete
            status.retry_count = 0
            status.next_retry_after = None
            await repo.save(status)

    async def set_failed(self, wallet_address: str, network: NetworkId, banner: str) -> SyncStatusDTO | None:
        """Mark FAILED, bump the retry count and schedule the next attempt."""
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.get(wallet_address, network)
            if status is None:
                return None
            status.retry_count += 1
            status.status = SyncState.FAILED
            status.sync_banner_message = banner
            status.next_retry_after = self.next_retry_after(status.retry_count)
            await repo.save(status)
        logger.warning(
            "Backfill %s %s failed (retry %d, next after %s): %s",
            wallet_address,
            network.value,
            status.retry_count,
            status.next_retry_after,
            banner,
        )
        return status

    async def set_abandoned(self, wallet_address: str, network: NetworkId, banner: str) -> None:
        async with self._session_scope() as session:
            repo = SyncStatusRepository(session)
            status = await repo.get(wallet_address, network)
            if status is None:
                return
            status.status = SyncState.ABANDONED
            status.sync_banner_message = banner
            status.next_retry_after = None
            await repo.save(status)
        logger.error("Backfill %s %s abandoned: %s", wallet_address, network.value, banner)

    def retry_delay_minutes(self, retry_count: int) -> int:
        """``min(base * 2**(retry_count - 1), max)`` minutes."""
        shift = min(max(retry_count - 1, 0), _MAX_SHIFT)
        return min(self._base_minutes * (1 << shift), self._max_minutes)

    def next_retry_after(self, retry_count: int) -> datetime:
        delay_minutes = self.retry_delay_minutes(retry_count)
        # Up to 25% of the delay: 15 seconds per delay minute.
        jitter_seconds = self._rng.randrange(0, max(1, delay_minutes * 15))
        return self._clock() + timedelta(minutes=delay_minutes, seconds=jitter_seconds)
