"""Tests for the in-memory stores in pdf_harvester.stores."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from tests.conftest import make_profile

from pdf_harvester.errors import StorageError
from pdf_harvester.stores import MemoryConfigStore


class TestMemoryConfigStore:
    @pytest.mark.asyncio
    async def test_update_applies_state_fields(self):
        store = MemoryConfigStore([make_profile()])
        checked = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

        await store.update("acct-1", last_checked_at=checked, last_error="boom")

        profile = await store.get("acct-1")
        assert profile.last_checked_at == checked
        assert profile.last_error == "boom"

    @pytest.mark.asyncio
    async def test_update_unknown_account_raises_storage_error(self):
        store = MemoryConfigStore()
        with pytest.raises(StorageError, match="unknown account"):
            await store.update("missing", last_error="boom")

    @pytest.mark.asyncio
    async def test_update_rejects_reactivation(self):
        store = MemoryConfigStore([make_profile(active=False)])
        with pytest.raises(ValueError):
            await store.update("acct-1", active=True)
