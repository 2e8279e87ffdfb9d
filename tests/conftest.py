"""Shared test fixtures for the harvester test suite."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from pdf_harvester.adapters.base import MailSession, ProtocolAdapter
from pdf_harvester.adapters.registry import AdapterRegistry
from pdf_harvester.config import (
    GmailConfig,
    ImapConfig,
    OutlookConfig,
    Pop3Config,
    RetryConfig,
    StorageConfig,
    SyncConfig,
)
from pdf_harvester.models import (
    ConnectionProfile,
    MessageRef,
    ProtocolKind,
    SyncCriteria,
    SyncWindow,
)
from pdf_harvester.orchestrator import SyncOrchestrator
from pdf_harvester.parser import MessageExtractor
from pdf_harvester.storage import AttachmentStore
from pdf_harvester.stores import MemoryConfigStore, MemoryRecordStore


@pytest.fixture
def storage_config(tmp_path) -> StorageConfig:
    return StorageConfig(directory=str(tmp_path / "pdfs"))


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_wait_seconds=0, max_wait_seconds=0, multiplier=0)


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(mailbox="INBOX", timeout_seconds=5)


@pytest.fixture
def pop3_config() -> Pop3Config:
    return Pop3Config(max_messages=50, delete_consumed=False, timeout_seconds=5)


@pytest.fixture
def gmail_config() -> GmailConfig:
    return GmailConfig(
        client_id="client-id",
        client_secret="client-secret",
        token_url="https://oauth2.test/token",
        api_base_url="https://gmail.test/gmail/v1",
        page_size=2,
    )


@pytest.fixture
def outlook_config() -> OutlookConfig:
    return OutlookConfig(api_base_url="https://graph.test/v1.0", page_size=2)


def make_profile(protocol: ProtocolKind = ProtocolKind.IMAP, **overrides) -> ConnectionProfile:
    """Build a ConnectionProfile with sensible per-protocol defaults."""
    defaults: dict = {
        "id": "acct-1",
        "email_address": "inbox@example.com",
        "protocol": protocol,
    }
    if protocol in (ProtocolKind.IMAP, ProtocolKind.POP3):
        defaults.update(
            host="mail.test.com",
            username="testuser",
            password="testpass",
        )
    else:
        defaults["token"] = "oauth-token"
    defaults.update(overrides)
    return ConnectionProfile(**defaults)


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "Sender Name <sender@example.com>",
    body: str = "Hello, World!",
    message_id: str = "<test-001@example.com>",
    date: str = "Sun, 01 Jun 2025 12:00:00 +0000",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = message_id
    msg["Date"] = date
    return msg.as_bytes()


def _build_multipart_email(
    *,
    subject: str = "Multipart Email",
    from_addr: str = "sender@example.com",
    date: str | None = "Sun, 01 Jun 2025 12:00:00 +0000",
    attachments: list[tuple[str | None, str, bytes]] | None = None,
    received: list[str] | None = None,
) -> bytes:
    """Build a multipart email with a text body and optional attachments.

    A ``None`` filename produces an attachment part without a name; a
    ``None`` date leaves the Date header out.  *received* lines are added as
    Received headers, newest first.
    """
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    if date is not None:
        msg["Date"] = date
    for line in received or []:
        msg["Received"] = line
    msg.attach(MIMEText("Please find attached.", "plain"))

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        if filename is None:
            part.add_header("Content-Disposition", "attachment")
        else:
            part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def _build_pdf_email(filename: str = "invoice.pdf", payload: bytes = b"%PDF-1.4 test", **kwargs) -> bytes:
    return _build_multipart_email(attachments=[(filename, "application/pdf", payload)], **kwargs)


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def pdf_eml_bytes() -> bytes:
    return _build_pdf_email()


# ------------------------------------------------------------------
# In-memory mailbox + adapter
# ------------------------------------------------------------------


class FakeMailbox:
    """Mailbox state shared by every session an adapter opens.

    Values are raw message bytes, or an exception to raise on fetch.
    """

    def __init__(self, messages: dict[str, bytes | Exception] | None = None) -> None:
        self.messages: dict[str, bytes | Exception] = dict(messages or {})
        self.seen: set[str] = set()
        self.fetch_delay = 0.0
        self.consume_error: Exception | None = None


class FakeSession(MailSession):
    def __init__(self, profile: ConnectionProfile, mailbox: FakeMailbox) -> None:
        super().__init__(profile, MessageExtractor())
        self.mailbox = mailbox
        self.windows: list[SyncWindow] = []
        self.fetched: list[str] = []
        self.consumed: list[str] = []
        self.closed = False
        self.aborted = False

    async def list_candidates(self, window: SyncWindow) -> AsyncIterator[MessageRef]:
        self.windows.append(window)
        for message_id in list(self.mailbox.messages):
            if window.criteria is SyncCriteria.UNSEEN_ONLY and message_id in self.mailbox.seen:
                continue
            yield MessageRef(id=message_id)

    async def fetch_raw(self, ref: MessageRef) -> bytes:
        if self.mailbox.fetch_delay:
            await asyncio.sleep(self.mailbox.fetch_delay)
        self.fetched.append(ref.id)
        value = self.mailbox.messages[ref.id]
        if isinstance(value, Exception):
            raise value
        return value

    async def mark_consumed(self, ref: MessageRef) -> None:
        if self.mailbox.consume_error is not None:
            raise self.mailbox.consume_error
        self.consumed.append(ref.id)
        self.mailbox.seen.add(ref.id)

    async def aclose(self) -> None:
        self.closed = True

    async def abort(self) -> None:
        self.aborted = True


class FakeAdapter(ProtocolAdapter):
    def __init__(
        self,
        mailbox: FakeMailbox | None = None,
        *,
        kind: ProtocolKind = ProtocolKind.IMAP,
        connect_error: Exception | None = None,
    ) -> None:
        self.kind = kind
        self.mailbox = mailbox or FakeMailbox()
        self.connect_error = connect_error
        self.connect_calls = 0
        self.sessions: list[FakeSession] = []

    async def connect(self, profile: ConnectionProfile) -> FakeSession:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        session = FakeSession(profile, self.mailbox)
        self.sessions.append(session)
        return session


def make_orchestrator(
    adapter: FakeAdapter,
    storage_config: StorageConfig,
    profiles: list[ConnectionProfile],
    *,
    sync: SyncConfig | None = None,
    run_timeout_seconds: float | None = None,
) -> tuple[SyncOrchestrator, MemoryConfigStore, MemoryRecordStore]:
    configs = MemoryConfigStore(profiles)
    records = MemoryRecordStore()
    orchestrator = SyncOrchestrator(
        AdapterRegistry([adapter]),
        AttachmentStore(storage_config),
        configs,
        records,
        sync or SyncConfig(),
        run_timeout_seconds=run_timeout_seconds,
    )
    return orchestrator, configs, records
