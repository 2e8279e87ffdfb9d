"""Maps a ProtocolKind to the adapter that serves it."""

from __future__ import annotations

import structlog

from ..config import HarvesterConfig
from ..errors import UnsupportedProtocolError
from ..models import ProtocolKind
from ..parser import MessageExtractor
from .base import ProtocolAdapter
from .gmail import GmailAdapter
from .imap import ImapAdapter
from .outlook import OutlookAdapter
from .pop3 import Pop3Adapter

logger = structlog.get_logger()


class AdapterRegistry:
    def __init__(self, adapters: list[ProtocolAdapter] | None = None) -> None:
        self._adapters: dict[ProtocolKind, ProtocolAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    @classmethod
    def default(cls, config: HarvesterConfig, extractor: MessageExtractor | None = None) -> AdapterRegistry:
        """Registry with one adapter per built-in protocol kind."""
        extractor = extractor or MessageExtractor()
        return cls([
            ImapAdapter(config.imap, extractor),
            Pop3Adapter(config.pop3, extractor),
            GmailAdapter(config.gmail, config.retry, extractor),
            OutlookAdapter(config.outlook, config.retry, extractor),
        ])

    def register(self, adapter: ProtocolAdapter) -> None:
        if adapter.kind in self._adapters:
            logger.warning("adapter_replaced", protocol=adapter.kind.value)
        self._adapters[adapter.kind] = adapter

    def get(self, kind: ProtocolKind | str) -> ProtocolAdapter:
        try:
            return self._adapters[ProtocolKind(kind)]
        except (KeyError, ValueError):
            raise UnsupportedProtocolError(f"no adapter for protocol {kind!r}") from None

    @property
    def supported(self) -> list[ProtocolKind]:
        return list(self._adapters)
