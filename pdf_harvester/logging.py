"""structlog configuration for the harvester process.

Harvester events and stdlib records from uvicorn, SQLAlchemy and httpx all
pass through the same processor chain, so every line on stdout has the same
shape.  Per-run account context is carried in contextvars.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

_CREDENTIAL_KEYS = frozenset({"password", "token", "access_token", "refresh_token", "client_secret"})
_NOISY_LOGGERS = {"httpx": logging.WARNING, "uvicorn.access": logging.WARNING}


def redact_credentials(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential values passed as log keys."""
    for key in _CREDENTIAL_KEYS.intersection(event_dict):
        event_dict[key] = "**********"
    return event_dict


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Configure structlog and the root stdlib logger.

    ``json=True`` writes one JSON object per line; ``json=False`` uses the
    console renderer for local development.
    """
    shared = _shared_processors()
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def bind_account(account_id: str, protocol: str):
    """Bind account context to every log event emitted inside the block."""
    return structlog.contextvars.bound_contextvars(account_id=account_id, protocol=protocol)
