"""POP3 adapter wrapping stdlib poplib with asyncio.to_thread.

POP3 has no server-side search and no flags: every run sees the most
recent ``max_messages`` messages, and "consumed" means deleted, which only
happens when ``POP3_DELETE_CONSUMED`` is enabled.
"""

from __future__ import annotations

import asyncio
import poplib
from collections.abc import AsyncIterator

import structlog

from ..config import Pop3Config
from ..errors import FetchError, MailboxConnectionError
from ..models import ConnectionProfile, MessageRef, ProtocolKind, SyncWindow
from ..parser import MessageExtractor
from .base import MailSession, ProtocolAdapter, require_fields

logger = structlog.get_logger()


class Pop3Session(MailSession):
    def __init__(
        self,
        profile: ConnectionProfile,
        config: Pop3Config,
        extractor: MessageExtractor,
    ) -> None:
        super().__init__(profile, extractor)
        self._config = config
        self._conn: poplib.POP3_SSL | poplib.POP3 | None = None

    @property
    def port(self) -> int:
        if self.profile.port:
            return self.profile.port
        return 995 if self.profile.use_tls else 110

    async def open(self) -> None:
        try:
            count, size = await asyncio.to_thread(self._open_sync)
        except (poplib.error_proto, OSError) as exc:
            await self.abort()
            raise MailboxConnectionError(
                f"POP3 connection to {self.profile.host}:{self.port} failed: {exc}"
            ) from exc
        except asyncio.CancelledError:
            await self.abort()
            raise
        logger.info("pop3_connected", host=self.profile.host, messages=count, octets=size)

    def _open_sync(self) -> tuple[int, int]:
        timeout = self._config.timeout_seconds
        if self.profile.use_tls:
            self._conn = poplib.POP3_SSL(self.profile.host, self.port, timeout=timeout)
        else:
            self._conn = poplib.POP3(self.profile.host, self.port, timeout=timeout)
        self._conn.user(self.profile.username)
        self._conn.pass_(self.profile.password.get_secret_value())
        return self._conn.stat()

    async def aclose(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            # QUIT commits any DELE issued during the session.
            await asyncio.to_thread(conn.quit)
            logger.info("pop3_disconnected")
        except (poplib.error_proto, OSError) as exc:
            logger.warning("pop3_quit_failed", error=str(exc))
            conn.close()

    async def abort(self) -> None:
        if self._conn is not None:
            # Closing without QUIT discards pending deletions.
            self._conn.close()
            self._conn = None
            logger.warning("pop3_aborted", host=self.profile.host)

    async def list_candidates(self, window: SyncWindow) -> AsyncIterator[MessageRef]:
        try:
            numbers = await asyncio.to_thread(self._list_sync)
        except (poplib.error_proto, OSError) as exc:
            raise MailboxConnectionError(f"POP3 LIST failed: {exc}") from exc

        recent = numbers[-self._config.max_messages:] if self._config.max_messages > 0 else []
        logger.info("pop3_candidates_found", total=len(numbers), count=len(recent))
        for number in recent:
            yield MessageRef(id=str(number))

    async def fetch_raw(self, ref: MessageRef) -> bytes:
        try:
            return await asyncio.to_thread(self._retr_sync, int(ref.id))
        except poplib.error_proto as exc:
            raise FetchError(f"POP3 RETR {ref.id} failed: {exc}") from exc
        except OSError as exc:
            raise MailboxConnectionError(f"POP3 session lost fetching {ref.id}: {exc}") from exc

    async def mark_consumed(self, ref: MessageRef) -> None:
        if not self._config.delete_consumed:
            return
        try:
            await asyncio.to_thread(self._conn.dele, int(ref.id))
        except (poplib.error_proto, OSError) as exc:
            raise FetchError(f"POP3 DELE {ref.id} failed: {exc}") from exc
        logger.debug("pop3_marked_for_deletion", message=ref.id)

    def _list_sync(self) -> list[int]:
        assert self._conn is not None, "Not connected"
        _, listings, _ = self._conn.list()
        numbers = []
        for item in listings:
            line = item.decode() if isinstance(item, bytes) else item
            numbers.append(int(line.split()[0]))
        return sorted(numbers)

    def _retr_sync(self, number: int) -> bytes:
        assert self._conn is not None, "Not connected"
        _, lines, _ = self._conn.retr(number)
        return b"\r\n".join(lines) + b"\r\n"


class Pop3Adapter(ProtocolAdapter):
    kind = ProtocolKind.POP3

    def __init__(self, config: Pop3Config, extractor: MessageExtractor | None = None) -> None:
        self._config = config
        self._extractor = extractor or MessageExtractor()

    async def connect(self, profile: ConnectionProfile) -> Pop3Session:
        require_fields(profile, "host", "username", "password")
        session = Pop3Session(profile, self._config, self._extractor)
        await session.open()
        return session
