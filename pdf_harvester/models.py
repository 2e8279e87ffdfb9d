"""Data models shared by the sync engine, the stores and the HTTP API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr


class ProtocolKind(str, Enum):
    """Transport used to reach a mail account."""

    IMAP = "IMAP"
    POP3 = "POP3"
    GMAIL_API = "GMAIL_API"
    OUTLOOK_API = "OUTLOOK_API"


class SyncCriteria(str, Enum):
    """Which messages a sync run considers as candidates."""

    UNSEEN_ONLY = "unseen_only"
    SINCE_TIMESTAMP = "since_timestamp"


class ConsumePolicy(str, Enum):
    """When a processed message is marked as consumed at the source."""

    PDF_ONLY = "pdf_only"
    ALWAYS = "always"


class ConnectionProfile(BaseModel):
    """A configured mail account.

    Credentials and connection fields are owned by whoever manages account
    configuration.  The sync engine only ever writes ``last_checked_at``,
    ``last_error`` and ``active`` (the latter only to ``False``).
    """

    id: str = Field(description="Account identifier")
    email_address: str = Field(description="Mailbox address, used for logging")
    protocol: ProtocolKind = Field(description="Transport used for this account")
    username: str | None = Field(default=None, description="Login name (IMAP/POP3)")
    password: SecretStr | None = Field(default=None, description="Login password (IMAP/POP3)")
    token: SecretStr | None = Field(
        default=None,
        description="Gmail refresh token or Outlook bearer token",
    )
    host: str | None = Field(default=None, description="Server hostname (IMAP/POP3)")
    port: int | None = Field(default=None, description="Server port (IMAP/POP3)")
    use_tls: bool = Field(default=True, description="Use implicit TLS (IMAP/POP3)")
    active: bool = Field(default=True, description="Whether the account is synced")
    last_checked_at: datetime | None = Field(default=None, description="End of the last run (UTC)")
    last_error: str | None = Field(default=None, description="Failure summary of the last run")


class AttachmentRecord(BaseModel):
    """Provenance record for one stored PDF attachment."""

    id: str | None = Field(default=None, description="Assigned by the record store")
    profile_id: str = Field(description="Owning account id")
    from_address: str = Field(default="", description="Sender address")
    received_at: datetime = Field(description="When the message was received (UTC)")
    subject: str = Field(default="", description="Message subject")
    file_name: str = Field(description="Attachment file name as sent")
    local_path: str = Field(description="Where the attachment bytes are stored")
    file_size: int = Field(description="Stored size in bytes")
    processed: bool = Field(default=False, description="Set by downstream processing")
    processing_error: str | None = Field(default=None, description="Set by downstream processing")


class SyncReport(BaseModel):
    """Counters for a single account run."""

    account_id: str
    skipped: bool = False
    candidates: int = 0
    messages_processed: int = 0
    records_created: int = 0
    duplicates: int = 0
    fetch_errors: int = 0
    parse_errors: int = 0
    storage_errors: int = 0
    consume_errors: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


class AccountSyncResult(BaseModel):
    """Outcome of one account in a ``sync_all`` sweep."""

    account_id: str
    status: str = Field(description="succeeded, failed or busy")
    error: str | None = None
    report: SyncReport | None = None


@dataclass(frozen=True)
class SyncWindow:
    """Candidate selection for one run."""

    criteria: SyncCriteria = SyncCriteria.UNSEEN_ONLY
    since: datetime | None = None


@dataclass(frozen=True)
class MessageRef:
    """Reference to a candidate message, not yet fetched."""

    id: str
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class ParsedAttachment:
    """A PDF attachment found in a message.

    ``content`` is ``None`` when the bytes have to be downloaded separately
    (REST sources); ``attachment_id`` then identifies the remote attachment.
    """

    filename: str
    content_type: str
    content: bytes | None = None
    attachment_id: str | None = None


@dataclass
class ParsedMessage:
    """Headers of interest plus the PDF attachments of one message."""

    from_address: str
    subject: str
    received_at: datetime
    message_id: str = ""
    attachments: list[ParsedAttachment] = field(default_factory=list)
