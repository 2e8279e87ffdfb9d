"""Entry point for the harvester service."""

from __future__ import annotations

import asyncio

from .config import HarvesterConfig
from .service import HarvesterService


def main() -> None:
    config = HarvesterConfig()
    service = HarvesterService(config)
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
