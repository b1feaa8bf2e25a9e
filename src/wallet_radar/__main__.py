"""Run the wallet radar service: ``python -m wallet_radar``."""

from __future__ import annotations

import asyncio
import logging

from wallet_radar.config import get_settings
from wallet_radar.service import WalletRadarService


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(WalletRadarService(settings).run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
