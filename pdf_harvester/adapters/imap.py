"""IMAP adapter wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import AsyncIterator
from datetime import datetime

import structlog

from ..config import ImapConfig
from ..errors import FetchError, MailboxConnectionError
from ..models import ConnectionProfile, MessageRef, ProtocolKind, SyncCriteria, SyncWindow
from ..parser import MessageExtractor
from .base import MailSession, ProtocolAdapter, require_fields

logger = structlog.get_logger()

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def imap_date(value: datetime) -> str:
    """Format a date as IMAP ``dd-Mon-YYYY`` independently of the locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def search_criteria(window: SyncWindow) -> str:
    if window.criteria is SyncCriteria.SINCE_TIMESTAMP and window.since is not None:
        # IMAP date search is day-granular; the orchestrator trims the rest.
        return f"SINCE {imap_date(window.since)}"
    if window.criteria is SyncCriteria.SINCE_TIMESTAMP:
        return "ALL"
    return "UNSEEN"


class ImapSession(MailSession):
    """One selected-mailbox IMAP session.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()``; every socket operation is bounded by the
    configured timeout.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        config: ImapConfig,
        extractor: MessageExtractor,
    ) -> None:
        super().__init__(profile, extractor)
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    @property
    def port(self) -> int:
        if self.profile.port:
            return self.profile.port
        return 993 if self.profile.use_tls else 143

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect, login, and select the configured mailbox."""
        try:
            await asyncio.to_thread(self._open_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            await self.abort()
            raise MailboxConnectionError(
                f"IMAP connection to {self.profile.host}:{self.port} failed: {exc}"
            ) from exc
        except asyncio.CancelledError:
            await self.abort()
            raise
        logger.info("imap_connected", host=self.profile.host, mailbox=self._config.mailbox)

    def _open_sync(self) -> None:
        host = self.profile.host
        timeout = self._config.timeout_seconds
        if self.profile.use_tls:
            self._conn = imaplib.IMAP4_SSL(host, self.port, timeout=timeout)
        else:
            self._conn = imaplib.IMAP4(host, self.port, timeout=timeout)
        self._conn.login(self.profile.username, self.profile.password.get_secret_value())
        status, data = self._conn.select(self._config.mailbox)
        if status != "OK":
            raise imaplib.IMAP4.error(f"cannot select {self._config.mailbox}: {data}")

    async def aclose(self) -> None:
        if self._conn is not None:
            await asyncio.to_thread(self._close_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _close_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def abort(self) -> None:
        if self._conn is not None:
            try:
                self._conn.shutdown()
            except OSError:
                pass
            self._conn = None
            logger.warning("imap_aborted", host=self.profile.host)

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def list_candidates(self, window: SyncWindow) -> AsyncIterator[MessageRef]:
        criteria = search_criteria(window)
        try:
            uids = await asyncio.to_thread(self._search_sync, criteria)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailboxConnectionError(f"IMAP search {criteria!r} failed: {exc}") from exc

        logger.info("imap_candidates_found", criteria=criteria, count=len(uids))
        for uid in uids:
            yield MessageRef(id=uid)

    async def fetch_raw(self, ref: MessageRef) -> bytes:
        try:
            return await asyncio.to_thread(self._fetch_sync, ref.id)
        except (imaplib.IMAP4.abort, OSError) as exc:
            raise MailboxConnectionError(f"IMAP session lost fetching UID {ref.id}: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise FetchError(f"IMAP fetch of UID {ref.id} failed: {exc}") from exc

    async def mark_consumed(self, ref: MessageRef) -> None:
        try:
            await asyncio.to_thread(self._store_seen_sync, ref.id)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise FetchError(f"IMAP could not flag UID {ref.id} as seen: {exc}") from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _search_sync(self, criteria: str) -> list[str]:
        assert self._conn is not None, "Not connected"
        status, data = self._conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise imaplib.IMAP4.error(f"SEARCH returned {status}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    def _fetch_sync(self, uid: str) -> bytes:
        assert self._conn is not None, "Not connected"
        # PEEK leaves \Seen alone; consumption is an explicit, separate step.
        status, data = self._conn.uid("FETCH", uid, "(BODY.PEEK[])")
        if status != "OK":
            raise imaplib.IMAP4.error(f"FETCH returned {status}")
        for item in data or []:
            if isinstance(item, tuple) and len(item) >= 2:
                return item[1]
        raise imaplib.IMAP4.error("message no longer exists")

    def _store_seen_sync(self, uid: str) -> None:
        assert self._conn is not None, "Not connected"
        status, data = self._conn.uid("STORE", uid, "+FLAGS", "(\\Seen)")
        if status != "OK":
            raise imaplib.IMAP4.error(f"STORE returned {status}: {data}")


class ImapAdapter(ProtocolAdapter):
    """Session-oriented mailbox access with server-side candidate search."""

    kind = ProtocolKind.IMAP

    def __init__(self, config: ImapConfig, extractor: MessageExtractor | None = None) -> None:
        self._config = config
        self._extractor = extractor or MessageExtractor()

    async def connect(self, profile: ConnectionProfile) -> ImapSession:
        require_fields(profile, "host", "username", "password")
        session = ImapSession(profile, self._config, self._extractor)
        await session.open()
        return session
