"""Account configuration and attachment record stores.

The sync engine only depends on the two abstract interfaces here.  The
in-memory implementations back tests and embedded use; the SQL
implementations live in :mod:`pdf_harvester.db`.
"""

from __future__ import annotations

import abc
import uuid
from typing import Any

from .errors import DuplicateRecordError, StorageError
from .models import AttachmentRecord, ConnectionProfile

SYNC_STATE_FIELDS = frozenset({"last_checked_at", "last_error", "active"})


def check_update_fields(fields: dict[str, Any]) -> None:
    """Reject writes outside the sync-state fields, and any re-activation."""
    unknown = set(fields) - SYNC_STATE_FIELDS
    if unknown:
        raise ValueError(f"sync engine may not update {', '.join(sorted(unknown))}")
    if fields.get("active") is True:
        raise ValueError("sync engine may only deactivate accounts")


class ConfigStore(abc.ABC):
    """Source of ConnectionProfiles; accepts sync-state updates."""

    @abc.abstractmethod
    async def get(self, account_id: str) -> ConnectionProfile | None: ...

    @abc.abstractmethod
    async def list_active(self) -> list[ConnectionProfile]: ...

    async def update(self, account_id: str, **fields: Any) -> None:
        """Update ``last_checked_at``, ``last_error`` and/or ``active``.

        Raises ValueError for any other field, or for ``active=True``.
        """
        check_update_fields(fields)
        await self._apply_update(account_id, fields)

    @abc.abstractmethod
    async def _apply_update(self, account_id: str, fields: dict[str, Any]) -> None: ...


class RecordStore(abc.ABC):
    """Persistence for AttachmentRecords."""

    @abc.abstractmethod
    async def create(self, record: AttachmentRecord) -> AttachmentRecord:
        """Persist *record* and return it with its id assigned.

        Raises :class:`DuplicateRecordError` when a record with the same
        ``(profile_id, file_name, received_at)`` already exists.
        """

    @abc.abstractmethod
    async def get(self, record_id: str) -> AttachmentRecord | None: ...

    @abc.abstractmethod
    async def delete(self, record_id: str) -> bool: ...

    @abc.abstractmethod
    async def list(self, profile_id: str | None = None) -> list[AttachmentRecord]: ...


# ------------------------------------------------------------------
# In-memory implementations
# ------------------------------------------------------------------


class MemoryConfigStore(ConfigStore):
    def __init__(self, profiles: list[ConnectionProfile] | None = None) -> None:
        self._profiles: dict[str, ConnectionProfile] = {p.id: p for p in profiles or []}

    def add(self, profile: ConnectionProfile) -> None:
        self._profiles[profile.id] = profile

    async def get(self, account_id: str) -> ConnectionProfile | None:
        return self._profiles.get(account_id)

    async def list_active(self) -> list[ConnectionProfile]:
        return [p for p in self._profiles.values() if p.active]

    async def _apply_update(self, account_id: str, fields: dict[str, Any]) -> None:
        profile = self._profiles.get(account_id)
        if profile is None:
            raise StorageError(f"unknown account {account_id}")
        self._profiles[account_id] = profile.model_copy(update=fields)


class MemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._records: dict[str, AttachmentRecord] = {}

    async def create(self, record: AttachmentRecord) -> AttachmentRecord:
        key = (record.profile_id, record.file_name, record.received_at)
        for existing in self._records.values():
            if (existing.profile_id, existing.file_name, existing.received_at) == key:
                raise DuplicateRecordError(
                    f"record for {record.file_name!r} received {record.received_at} already exists"
                )
        stored = record.model_copy(update={"id": str(uuid.uuid4())})
        self._records[stored.id] = stored
        return stored

    async def get(self, record_id: str) -> AttachmentRecord | None:
        return self._records.get(record_id)

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def list(self, profile_id: str | None = None) -> list[AttachmentRecord]:
        return [r for r in self._records.values() if profile_id is None or r.profile_id == profile_id]
