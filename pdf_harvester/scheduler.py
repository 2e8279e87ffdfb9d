"""SyncScheduler: periodic fan-out of account syncs."""

from __future__ import annotations

import asyncio
import time

import structlog

from .config import SchedulerConfig
from .errors import AccountBusyError, HarvesterError
from .models import ConnectionProfile
from .orchestrator import SyncOrchestrator
from .stores import ConfigStore

logger = structlog.get_logger()


class SyncScheduler:
    """Drives ``sync_account`` for every active account on a fixed interval.

    Each tick dispatches one tracked task per active account, bounded by a
    semaphore of ``max_concurrency``.  An account whose previous run is still
    in flight is skipped for the tick.  Nothing an account run raises can
    stop the timer.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        configs: ConfigStore,
        config: SchedulerConfig,
    ) -> None:
        self._orchestrator = orchestrator
        self._configs = configs
        self._config = config
        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._timer: asyncio.Task | None = None
        self._in_flight: dict[str, asyncio.Task] = {}
        self.ticks = 0
        self.started_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def in_flight(self) -> list[str]:
        return sorted(self._in_flight)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        self.started_at = time.monotonic()
        self._timer = asyncio.create_task(self._timer_loop(), name="sync-scheduler")
        logger.info(
            "scheduler_started",
            interval_seconds=self._config.interval_seconds,
            max_concurrency=self._config.max_concurrency,
        )

    async def stop(self) -> None:
        """Cancel the timer, then drain in-flight runs and cancel stragglers."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        pending = list(self._in_flight.values())
        if pending:
            logger.info("scheduler_draining", runs=len(pending))
            _, still_running = await asyncio.wait(pending, timeout=self._config.drain_timeout_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning("scheduler_runs_cancelled", runs=len(still_running))

        self.started_at = None
        logger.info("scheduler_stopped", ticks=self.ticks)

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def _timer_loop(self) -> None:
        if self._config.run_on_start:
            await self.tick()
        while True:
            await asyncio.sleep(self._config.interval_seconds)
            await self.tick()

    async def tick(self) -> int:
        """Dispatch a run for every idle active account; return how many started."""
        self.ticks += 1
        try:
            profiles = await self._configs.list_active()
        except Exception:
            logger.exception("scheduler_list_failed", tick=self.ticks)
            return 0

        dispatched = 0
        for profile in profiles:
            if profile.id in self._in_flight or self._orchestrator.is_running(profile.id):
                logger.info("scheduler_account_busy", account_id=profile.id)
                continue
            task = asyncio.create_task(self._run_account(profile), name=f"sync-{profile.id}")
            self._in_flight[profile.id] = task
            task.add_done_callback(lambda _, account_id=profile.id: self._in_flight.pop(account_id, None))
            dispatched += 1

        logger.info("scheduler_tick", tick=self.ticks, accounts=len(profiles), dispatched=dispatched)
        return dispatched

    async def _run_account(self, profile: ConnectionProfile) -> None:
        async with self._semaphore:
            try:
                await self._orchestrator.sync_account(profile)
            except AccountBusyError:
                logger.info("scheduler_account_busy", account_id=profile.id)
            except HarvesterError as exc:
                # Already recorded on the account by the orchestrator.
                logger.warning("scheduled_sync_failed", account_id=profile.id, error=str(exc))
            except Exception:
                logger.exception("scheduled_sync_crashed", account_id=profile.id)
