"""Harvester configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Nested configs are populated from their own env-var prefixes.
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

from .models import ConsumePolicy, SyncCriteria


class StorageConfig(BaseSettings):
    """Where extracted PDF attachments are written."""

    model_config = {"env_prefix": "STORAGE_"}

    directory: str = Field(default="./pdfs", description="Attachment storage directory")


class SchedulerConfig(BaseSettings):
    """Periodic sync driver settings."""

    model_config = {"env_prefix": "SCHEDULER_"}

    interval_seconds: float = Field(default=300.0, description="Seconds between sync ticks")
    max_concurrency: int = Field(default=4, description="Accounts synced in parallel")
    run_timeout_seconds: float = Field(
        default=600.0,
        description="Per-account run timeout; the session is force-closed when exceeded",
    )
    drain_timeout_seconds: float = Field(
        default=30.0,
        description="Grace period for in-flight runs when the scheduler stops",
    )
    run_on_start: bool = Field(default=False, description="Tick once immediately on start")


class SyncConfig(BaseSettings):
    """Candidate selection and consume behavior."""

    model_config = {"env_prefix": "SYNC_"}

    criteria: SyncCriteria = Field(
        default=SyncCriteria.UNSEEN_ONLY,
        description="unseen_only or since_timestamp",
    )
    lookback_hours: float = Field(
        default=24.0,
        description="How far a since_timestamp window reaches back before the last check (or now)",
    )
    consume_policy: ConsumePolicy = Field(
        default=ConsumePolicy.PDF_ONLY,
        description="Mark consumed only messages with PDFs, or every fetched message",
    )


class ImapConfig(BaseSettings):
    """IMAP session settings shared by all IMAP accounts."""

    model_config = {"env_prefix": "IMAP_"}

    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to poll")
    timeout_seconds: float = Field(default=30.0, description="Socket timeout per command")


class Pop3Config(BaseSettings):
    """POP3 session settings shared by all POP3 accounts."""

    model_config = {"env_prefix": "POP3_"}

    max_messages: int = Field(
        default=50,
        description="Only the most recent N messages are retrieved per run",
    )
    delete_consumed: bool = Field(
        default=False,
        description="Delete messages from the server once consumed",
    )
    timeout_seconds: float = Field(default=30.0, description="Socket timeout per command")


class GmailConfig(BaseSettings):
    """Gmail API OAuth client and endpoint settings."""

    model_config = {"env_prefix": "GMAIL_"}

    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: SecretStr | None = Field(default=None, description="OAuth client secret")
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint used for refresh",
    )
    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1",
        description="Gmail REST API base URL",
    )
    page_size: int = Field(default=50, description="Messages requested per list page")
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")


class OutlookConfig(BaseSettings):
    """Microsoft Graph mail endpoint settings."""

    model_config = {"env_prefix": "OUTLOOK_"}

    api_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Microsoft Graph base URL",
    )
    page_size: int = Field(default=50, description="Messages requested per list page")
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")


class RetryConfig(BaseSettings):
    """Retry / backoff for transient REST failures, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per request")
    initial_wait_seconds: float = Field(default=0.5, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=10.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class HarvesterConfig(BaseSettings):
    """Root configuration for the harvester process."""

    model_config = {"env_prefix": "HARVESTER_"}

    database_url: str = Field(
        default="sqlite+aiosqlite:///./harvester.db",
        description="Async SQLAlchemy URL of the account/attachment database",
    )
    api_host: str = Field(default="0.0.0.0", description="Bind address of the operations API")
    api_port: int = Field(default=8080, description="Bind port of the operations API")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="JSON log output (False for dev console)")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
    pop3: Pop3Config = Field(default_factory=Pop3Config)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    outlook: OutlookConfig = Field(default_factory=OutlookConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
