"""Error taxonomy for the sync engine.

Session-level failures (:class:`MailboxConnectionError` and its subclasses)
abort the current account run.  Message- and attachment-level failures
(:class:`FetchError`, :class:`ParseError`, :class:`StorageError`) are isolated
by the orchestrator and never abort a run.
"""

from __future__ import annotations


class HarvesterError(Exception):
    """Base class for every error raised by this package."""


class MailboxConnectionError(HarvesterError):
    """Could not open or keep a session with the mail source (auth, network, TLS)."""


class AuthRefreshError(MailboxConnectionError):
    """The OAuth credential was rejected; the account needs re-authorization."""


class SyncTimeoutError(MailboxConnectionError):
    """An account run exceeded its configured timeout and was force-closed."""


class UnsupportedProtocolError(MailboxConnectionError):
    """No adapter is registered for the profile's protocol kind."""


class FetchError(HarvesterError):
    """Transport failure while fetching a single message or attachment."""


class ParseError(HarvesterError):
    """A raw message could not be parsed as MIME."""


class StorageError(HarvesterError):
    """An attachment could not be written to storage or recorded."""


class DuplicateRecordError(HarvesterError):
    """An identical attachment record already exists."""


class AccountBusyError(HarvesterError):
    """A sync run for this account is already in flight."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"sync already running for account {account_id}")
        self.account_id = account_id
