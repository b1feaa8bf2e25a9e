"""Block-timestamp estimation by linear interpolation.

Classification needs a timestamp for every block that carried a wallet
transaction. Instead of one RPC per block, the estimator is calibrated
once per backfill from the exact timestamps of the range endpoints and
then interpolates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from wallet_radar.domain import NetworkId
from wallet_radar.ingestion.adapters import BlockTimestampResolver

logger = logging.getLogger(__name__)


class EstimatorNotCalibratedError(Exception):
    """Raised when an estimate is requested before calibration."""


@dataclass(frozen=True)
class Calibration:
    from_block: int
    from_timestamp: datetime
    avg_block_seconds: float


class BlockTimestampEstimator:
    """Per-network calibrated block-time interpolation.

    Example:
        ```python
        estimator = BlockTimestampEstimator()
        await estimator.calibrate(NetworkId.ETHEREUM, 100, 200, resolver, fallback_seconds=12)
        estimator.estimate(NetworkId.ETHEREUM, 150)
        ```
    """

    def __init__(self) -> None:
        self._calibrations: dict[NetworkId, Calibration] = {}

    def is_calibrated(self, network: NetworkId) -> bool:
        return network in self._calibrations

    async def calibrate(
        self,
        network: NetworkId,
        from_block: int,
        to_block: int,
        resolver: BlockTimestampResolver,
        *,
        fallback_seconds: float,
    ) -> Calibration:
        """Fetch the exact anchor timestamps and store the average block time.

        A single-block range costs one lookup and uses ``fallback_seconds``;
        a non-positive measured average also falls back.
        """
        from_ts = await resolver.block_timestamp(network, from_block)
        avg = fallback_seconds
        if to_block != from_block:
            to_ts = await resolver.block_timestamp(network, to_block)
            measured = (to_ts - from_ts).total_seconds() / (to_block - from_block)
            if measured > 0:
                avg = measured
            else:
                logger.warning(
                    "Non-positive block time on %s between %d and %d; using fallback %.2fs",
                    network.value,
                    from_block,
                    to_block,
                    fallback_seconds,
                )

        calibration = Calibration(from_block=from_block, from_timestamp=from_ts, avg_block_seconds=avg)
        self._calibrations[network] = calibration
        logger.debug("Calibrated %s: %.4fs per block from %d", network.value, avg, from_block)
        return calibration

    def estimate(self, network: NetworkId, block_number: int) -> datetime:
        """Interpolated timestamp of ``block_number``; no RPC.

        Raises:
            EstimatorNotCalibratedError: If ``calibrate`` was never called for ``network``.
        """
        calibration = self._calibrations.get(network)
        if calibration is None:
            raise EstimatorNotCalibratedError(f"Estimator not calibrated for {network.value}")
        offset = round((block_number - calibration.from_block) * calibration.avg_block_seconds)
        return calibration.from_timestamp + timedelta(seconds=offset)
