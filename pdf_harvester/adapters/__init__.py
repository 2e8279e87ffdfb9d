from .base import MailSession, ProtocolAdapter
from .gmail import GmailAdapter
from .imap import ImapAdapter
from .outlook import OutlookAdapter
from .pop3 import Pop3Adapter
from .registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "GmailAdapter",
    "ImapAdapter",
    "MailSession",
    "OutlookAdapter",
    "Pop3Adapter",
    "ProtocolAdapter",
]
