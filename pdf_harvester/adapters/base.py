"""ProtocolAdapter / MailSession: the contract every mail transport implements."""

from __future__ import annotations

import abc
import asyncio
from collections.abc import AsyncIterator
from typing import ClassVar

from ..errors import FetchError, MailboxConnectionError
from ..models import ConnectionProfile, MessageRef, ParsedAttachment, ParsedMessage, ProtocolKind, SyncWindow
from ..parser import MessageExtractor


class MailSession(abc.ABC):
    """An open, authenticated session against one account.

    Use as an async context manager; the session is always closed on exit.
    When the block is left through cancellation or a timeout, :meth:`abort`
    tears the connection down without a protocol-level goodbye.
    """

    def __init__(self, profile: ConnectionProfile, extractor: MessageExtractor) -> None:
        self.profile = profile
        self._extractor = extractor

    async def __aenter__(self) -> MailSession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and issubclass(exc_type, (asyncio.CancelledError, TimeoutError)):
            await self.abort()
        else:
            await self.aclose()

    @abc.abstractmethod
    def list_candidates(self, window: SyncWindow) -> AsyncIterator[MessageRef]:
        """Yield references to candidate messages, in source order.

        Raises :class:`MailboxConnectionError` if the listing itself fails.
        """
        ...

    @abc.abstractmethod
    async def fetch_raw(self, ref: MessageRef) -> bytes:
        """Return the full RFC 822 bytes of one message."""

    async def fetch_message(self, ref: MessageRef) -> ParsedMessage:
        """Fetch one message and extract its PDF attachments.

        The default fetches raw bytes and runs the MIME extractor.  REST
        sources override this to build the message from API metadata.
        """
        raw = await self.fetch_raw(ref)
        return self._extractor.extract(raw)

    async def load_attachment(self, ref: MessageRef, attachment: ParsedAttachment) -> bytes:
        """Return attachment bytes, downloading them if they are not inline."""
        if attachment.content is None:
            raise FetchError(f"attachment {attachment.filename!r} of {ref.id} has no content")
        return attachment.content

    @abc.abstractmethod
    async def mark_consumed(self, ref: MessageRef) -> None:
        """Mark a message as consumed at the source.  Idempotent."""

    @abc.abstractmethod
    async def aclose(self) -> None:
        """Close the session gracefully.  Safe to call more than once."""

    async def abort(self) -> None:
        """Force-close the session.  Defaults to :meth:`aclose`."""
        await self.aclose()


class ProtocolAdapter(abc.ABC):
    """Opens :class:`MailSession` instances for one protocol kind."""

    kind: ClassVar[ProtocolKind]

    @abc.abstractmethod
    async def connect(self, profile: ConnectionProfile) -> MailSession:
        """Authenticate and return an open session.

        Raises :class:`MailboxConnectionError` (or :class:`AuthRefreshError`)
        when the session cannot be established.
        """


def require_fields(profile: ConnectionProfile, *names: str) -> None:
    """Fail with MailboxConnectionError if any named profile field is empty."""
    missing = [name for name in names if not getattr(profile, name)]
    if missing:
        raise MailboxConnectionError(
            f"missing {profile.protocol.value} connection details: {', '.join(missing)}"
        )
