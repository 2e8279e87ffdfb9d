"""PDF Harvester: pull PDF attachments out of IMAP, POP3, Gmail and Outlook mailboxes.

Public API re-exported here for convenience::

    from pdf_harvester import HarvesterConfig, HarvesterService, SyncOrchestrator
"""

from .adapters import AdapterRegistry, MailSession, ProtocolAdapter
from .config import HarvesterConfig
from .errors import (
    AccountBusyError,
    AuthRefreshError,
    DuplicateRecordError,
    FetchError,
    HarvesterError,
    MailboxConnectionError,
    ParseError,
    StorageError,
    SyncTimeoutError,
    UnsupportedProtocolError,
)
from .logging import setup_logging
from .models import (
    AttachmentRecord,
    ConnectionProfile,
    ConsumePolicy,
    ProtocolKind,
    SyncCriteria,
    SyncReport,
    SyncWindow,
)
from .orchestrator import SyncOrchestrator
from .parser import MessageExtractor
from .scheduler import SyncScheduler
from .service import HarvesterService
from .storage import AttachmentStore
from .stores import ConfigStore, MemoryConfigStore, MemoryRecordStore, RecordStore

__all__ = [
    "AccountBusyError",
    "AdapterRegistry",
    "AttachmentRecord",
    "AttachmentStore",
    "AuthRefreshError",
    "ConfigStore",
    "ConnectionProfile",
    "ConsumePolicy",
    "DuplicateRecordError",
    "FetchError",
    "HarvesterConfig",
    "HarvesterError",
    "HarvesterService",
    "MailSession",
    "MailboxConnectionError",
    "MemoryConfigStore",
    "MemoryRecordStore",
    "MessageExtractor",
    "ParseError",
    "ProtocolAdapter",
    "ProtocolKind",
    "RecordStore",
    "StorageError",
    "SyncCriteria",
    "SyncOrchestrator",
    "SyncReport",
    "SyncScheduler",
    "SyncTimeoutError",
    "SyncWindow",
    "UnsupportedProtocolError",
    "setup_logging",
]
