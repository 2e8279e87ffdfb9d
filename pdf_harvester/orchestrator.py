"""SyncOrchestrator: one account run, from connect through record creation.

Failure isolation mirrors the error taxonomy: session-level errors abort the
run and are written to the account's ``last_error``; message- and
attachment-level errors are counted, logged and skipped.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from datetime import UTC, datetime, timedelta

import structlog

from .adapters.base import MailSession
from .adapters.registry import AdapterRegistry
from .config import SyncConfig
from .errors import (
    AccountBusyError,
    AuthRefreshError,
    DuplicateRecordError,
    FetchError,
    HarvesterError,
    ParseError,
    StorageError,
    SyncTimeoutError,
)
from .logging import bind_account
from .models import (
    AccountSyncResult,
    AttachmentRecord,
    ConnectionProfile,
    ConsumePolicy,
    MessageRef,
    ParsedMessage,
    SyncCriteria,
    SyncReport,
    SyncWindow,
)
from .stores import ConfigStore, RecordStore
from .storage import AttachmentStore

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(UTC)


class SyncOrchestrator:
    """Runs sync for individual accounts, at most one run per account at a time."""

    def __init__(
        self,
        registry: AdapterRegistry,
        storage: AttachmentStore,
        configs: ConfigStore,
        records: RecordStore,
        sync: SyncConfig,
        *,
        run_timeout_seconds: float | None = None,
        max_concurrency: int = 4,
    ) -> None:
        self._registry = registry
        self._storage = storage
        self._configs = configs
        self._records = records
        self._sync = sync
        self._run_timeout = run_timeout_seconds
        self._max_concurrency = max_concurrency
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def configs(self) -> ConfigStore:
        return self._configs

    @property
    def records(self) -> RecordStore:
        return self._records

    @property
    def storage(self) -> AttachmentStore:
        return self._storage

    def is_running(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()

    def window_for(self, profile: ConnectionProfile) -> SyncWindow:
        if self._sync.criteria is SyncCriteria.SINCE_TIMESTAMP:
            # Overlaps the previous run by lookback_hours; record dedup absorbs repeats.
            base = profile.last_checked_at or _now()
            since = base - timedelta(hours=self._sync.lookback_hours)
            return SyncWindow(SyncCriteria.SINCE_TIMESTAMP, since)
        return SyncWindow(SyncCriteria.UNSEEN_ONLY)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def sync_account(self, profile: ConnectionProfile) -> SyncReport:
        """Run one sync for *profile* and return its counters.

        Raises :class:`AccountBusyError` if a run for the same account is
        already in flight, and re-raises any :class:`MailboxConnectionError`
        after recording it on the account.
        """
        report = SyncReport(account_id=profile.id)
        if not profile.active:
            logger.info("sync_skipped_inactive", account_id=profile.id)
            report.skipped = True
            report.finished_at = _now()
            return report

        lock = self._locks.setdefault(profile.id, asyncio.Lock())
        if lock.locked():
            logger.info("sync_skipped_busy", account_id=profile.id)
            raise AccountBusyError(profile.id)

        try:
            async with lock:
                with bind_account(profile.id, profile.protocol.value):
                    return await self._run(profile, report)
        finally:
            # Locks are never waited on; drop released ones.
            if not lock.locked():
                self._locks.pop(profile.id, None)

    async def test_connection(self, profile: ConnectionProfile) -> bool:
        """Connect and disconnect without processing mail or touching state."""
        try:
            async with asyncio.timeout(self._run_timeout):
                adapter = self._registry.get(profile.protocol)
                session = await adapter.connect(profile)
                await session.aclose()
        except Exception as exc:
            logger.info(
                "connection_test_failed",
                account_id=profile.id,
                error=str(exc) or type(exc).__name__,
            )
            return False
        logger.info("connection_test_succeeded", account_id=profile.id)
        return True

    async def sync_all(self) -> list[AccountSyncResult]:
        """Sync every active account concurrently and report per account."""
        profiles = await self._configs.list_active()
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(profile: ConnectionProfile) -> AccountSyncResult:
            async with semaphore:
                try:
                    report = await self.sync_account(profile)
                except AccountBusyError as exc:
                    return AccountSyncResult(account_id=profile.id, status="busy", error=str(exc))
                except HarvesterError as exc:
                    return AccountSyncResult(account_id=profile.id, status="failed", error=str(exc))
                except Exception as exc:
                    logger.exception("sync_crashed", account_id=profile.id)
                    return AccountSyncResult(account_id=profile.id, status="failed", error=str(exc))
            return AccountSyncResult(account_id=profile.id, status="succeeded", report=report)

        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(_one(profile)) for profile in profiles]
        return [task.result() for task in tasks]

    # ------------------------------------------------------------------
    # Run internals
    # ------------------------------------------------------------------

    async def _run(self, profile: ConnectionProfile, report: SyncReport) -> SyncReport:
        storage_failures: list[str] = []
        logger.info("sync_started", email=profile.email_address)

        try:
            async with asyncio.timeout(self._run_timeout):
                adapter = self._registry.get(profile.protocol)
                session = await adapter.connect(profile)
                async with session:
                    await self._process(session, profile, report, storage_failures)
        except TimeoutError as exc:
            error = SyncTimeoutError(f"sync exceeded {self._run_timeout}s and was aborted")
            await self._record_failure(profile, report, error)
            raise error from exc
        except Exception as exc:
            await self._record_failure(profile, report, exc)
            raise

        last_error = None
        if storage_failures:
            last_error = (
                f"{len(storage_failures)} attachment(s) could not be stored: "
                + "; ".join(storage_failures[:3])
            )
        report.finished_at = _now()
        await self._update_state(profile.id, last_checked_at=report.finished_at, last_error=last_error)
        logger.info("sync_completed", **report.model_dump(exclude={"account_id", "started_at", "finished_at"}))
        return report

    async def _process(
        self,
        session: MailSession,
        profile: ConnectionProfile,
        report: SyncReport,
        storage_failures: list[str],
    ) -> None:
        window = self.window_for(profile)

        async with aclosing(session.list_candidates(window)) as candidates:
            async for ref in candidates:
                report.candidates += 1
                try:
                    message = await session.fetch_message(ref)
                except FetchError as exc:
                    report.fetch_errors += 1
                    logger.warning("message_fetch_failed", ref=ref.id, error=str(exc))
                    continue
                except ParseError as exc:
                    report.parse_errors += 1
                    logger.warning("message_parse_failed", ref=ref.id, error=str(exc))
                    continue

                report.messages_processed += 1
                await self._store_attachments(session, profile, ref, message, report, storage_failures)

                if message.attachments or self._sync.consume_policy is ConsumePolicy.ALWAYS:
                    try:
                        await session.mark_consumed(ref)
                    except FetchError as exc:
                        report.consume_errors += 1
                        logger.warning("message_consume_failed", ref=ref.id, error=str(exc))

    async def _store_attachments(
        self,
        session: MailSession,
        profile: ConnectionProfile,
        ref: MessageRef,
        message: ParsedMessage,
        report: SyncReport,
        storage_failures: list[str],
    ) -> None:
        for attachment in message.attachments:
            try:
                content = await session.load_attachment(ref, attachment)
            except FetchError as exc:
                report.fetch_errors += 1
                logger.warning("attachment_fetch_failed", ref=ref.id, file_name=attachment.filename, error=str(exc))
                continue

            try:
                stored = await self._storage.save(attachment.filename, content)
            except StorageError as exc:
                report.storage_errors += 1
                storage_failures.append(f"{attachment.filename}: {exc}")
                continue

            record = AttachmentRecord(
                profile_id=profile.id,
                from_address=message.from_address,
                received_at=message.received_at,
                subject=message.subject,
                file_name=attachment.filename,
                local_path=stored.path,
                file_size=stored.size,
            )
            try:
                created = await self._records.create(record)
            except DuplicateRecordError:
                report.duplicates += 1
                logger.info("attachment_duplicate", ref=ref.id, file_name=attachment.filename)
                await self._discard(stored.path)
                continue
            except StorageError as exc:
                report.storage_errors += 1
                storage_failures.append(f"{attachment.filename}: {exc}")
                logger.error("attachment_record_failed", ref=ref.id, file_name=attachment.filename, error=str(exc))
                await self._discard(stored.path)
                continue

            report.records_created += 1
            logger.info(
                "attachment_stored",
                ref=ref.id,
                record_id=created.id,
                file_name=attachment.filename,
                size=stored.size,
            )

    async def _discard(self, path: str) -> None:
        try:
            await self._storage.delete(path)
        except StorageError as exc:
            logger.warning("attachment_discard_failed", path=path, error=str(exc))

    async def _record_failure(self, profile: ConnectionProfile, report: SyncReport, exc: BaseException) -> None:
        report.finished_at = _now()
        fields: dict = {"last_checked_at": report.finished_at, "last_error": str(exc) or type(exc).__name__}
        if isinstance(exc, AuthRefreshError):
            fields["active"] = False
        logger.error(
            "sync_failed",
            error=fields["last_error"],
            error_type=type(exc).__name__,
            deactivated="active" in fields,
        )
        await self._update_state(profile.id, **fields)

    async def _update_state(self, account_id: str, **fields) -> None:
        try:
            await self._configs.update(account_id, **fields)
        except HarvesterError as exc:
            logger.error("sync_state_update_failed", account_id=account_id, error=str(exc))
