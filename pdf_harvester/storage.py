"""Durable local storage for extracted PDF attachments.

All filesystem calls run in a worker thread via ``asyncio.to_thread()`` so
the event loop is never blocked by disk I/O.
"""

from __future__ import annotations

import asyncio
import os
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from .config import StorageConfig
from .errors import StorageError

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


@dataclass(frozen=True)
class StoredFile:
    """Where an attachment ended up and how large it is."""

    path: str
    size: int


class AttachmentStore:
    """Write attachment bytes under a single storage directory.

    Files are written to a temporary name, fsynced and atomically renamed, so
    a path returned by :meth:`save` always refers to complete content.
    """

    def __init__(self, config: StorageConfig) -> None:
        self._root = Path(config.directory).resolve()

    @property
    def root(self) -> Path:
        return self._root

    async def save(self, file_name: str, content: bytes) -> StoredFile:
        """Store *content* under a sanitized, collision-free name."""
        target = self._root / _unique_name(file_name)
        try:
            await asyncio.to_thread(self._write_sync, target, content)
        except OSError as exc:
            logger.error("attachment_write_failed", file_name=file_name, error=str(exc))
            raise StorageError(f"could not store {file_name!r}: {exc}") from exc

        logger.debug("attachment_written", path=str(target), size=len(content))
        return StoredFile(path=str(target), size=len(content))

    async def delete(self, path: str) -> bool:
        """Remove a stored file.  Returns False if it was already gone."""
        target = Path(path).resolve()
        if target.parent != self._root:
            raise StorageError(f"refusing to delete outside storage directory: {path}")
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"could not delete {path}: {exc}") from exc
        logger.debug("attachment_deleted", path=str(target))
        return True

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _write_sync(self, target: Path, content: bytes) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        if target.resolve().parent != self._root:
            raise StorageError(f"sanitized name escapes storage directory: {target.name}")

        tmp = target.with_name(f".{target.name}.tmp")
        try:
            with open(tmp, "wb") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        _fsync_dir(self._root)


def sanitize_filename(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_.-]`` with ``_``."""
    cleaned = _UNSAFE_CHARS.sub("_", name)
    return cleaned or "attachment.pdf"


def _unique_name(file_name: str) -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}-{sanitize_filename(file_name)}"


def _fsync_dir(directory: Path) -> None:
    # Directory fsync makes the rename durable; not supported on every platform.
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)
