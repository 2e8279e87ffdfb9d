"""HarvesterService: wires stores, adapters, scheduler and the operations API."""

from __future__ import annotations

import asyncio
import signal
import time

import structlog
import uvicorn

from .adapters.registry import AdapterRegistry
from .api import create_app
from .config import HarvesterConfig
from .db import Database, SqlConfigStore, SqlRecordStore
from .logging import setup_logging
from .orchestrator import SyncOrchestrator
from .scheduler import SyncScheduler
from .storage import AttachmentStore
from .stores import ConfigStore, RecordStore

logger = structlog.get_logger()


class HarvesterService:
    """Owns every long-lived component of the harvester process.

    Stores default to the SQL implementations on ``database_url``; tests and
    embedders can pass their own stores and adapter registry instead.
    """

    def __init__(
        self,
        config: HarvesterConfig,
        *,
        registry: AdapterRegistry | None = None,
        configs: ConfigStore | None = None,
        records: RecordStore | None = None,
    ) -> None:
        self._config = config
        self._db: Database | None = None
        if configs is None or records is None:
            self._db = Database(config.database_url)
            configs = configs or SqlConfigStore(self._db.session)
            records = records or SqlRecordStore(self._db.session)

        self.orchestrator = SyncOrchestrator(
            registry or AdapterRegistry.default(config),
            AttachmentStore(config.storage),
            configs,
            records,
            config.sync,
            run_timeout_seconds=config.scheduler.run_timeout_seconds,
            max_concurrency=config.scheduler.max_concurrency,
        )
        self.scheduler = SyncScheduler(self.orchestrator, configs, config.scheduler)
        self.start_time: float = time.monotonic()
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the scheduler and API server and run until shutdown."""
        setup_logging(json=self._config.log_json, level=self._config.log_level)
        self.start_time = time.monotonic()
        self._install_signal_handlers()

        if self._db is not None:
            await self._db.create_schema()
        await self.scheduler.start()
        logger.info(
            "harvester_started",
            storage_dir=str(self.orchestrator.storage.root),
            api_port=self._config.api_port,
        )

        try:
            await self._run_api_server()
        finally:
            await self.scheduler.stop()
            if self._db is not None:
                await self._db.close()
            logger.info("harvester_stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # API server
    # ------------------------------------------------------------------

    async def _run_api_server(self) -> None:
        config = uvicorn.Config(
            create_app(self),
            host=self._config.api_host,
            port=self._config.api_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        await asyncio.wait({serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        server.should_exit = True
        shutdown_task.cancel()
        await serve_task

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _handle(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig)
