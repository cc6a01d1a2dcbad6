"""
Checkpoint store tests.
"""

import json
from datetime import date

import pytest

from attendance_sync.data import FileCheckpointStore, InMemoryCheckpointStore
from attendance_sync.models import DateRange

JANUARY = DateRange(date(2024, 1, 1), date(2024, 1, 31))
FEBRUARY = DateRange(date(2024, 2, 1), date(2024, 2, 29))


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCheckpointStore()
    return FileCheckpointStore(tmp_path / "checkpoints")


class TestCheckpointStores:
    @pytest.mark.asyncio
    async def test_mark_and_check(self, store):
        await store.mark_complete("sync-1", JANUARY, "001", records_written=12)

        assert await store.is_complete("sync-1", JANUARY, "001")
        assert not await store.is_complete("sync-1", JANUARY, "002")
        assert not await store.is_complete("sync-1", FEBRUARY, "001")
        assert not await store.is_complete("sync-2", JANUARY, "001")

    @pytest.mark.asyncio
    async def test_load_returns_all_for_operation(self, store):
        await store.mark_complete("sync-1", JANUARY, None, records_written=3)
        await store.mark_complete("sync-1", FEBRUARY, None, records_written=4)

        loaded = await store.load("sync-1")

        assert set(loaded) == {"2024-01-01..2024-01-31@*", "2024-02-01..2024-02-29@*"}
        assert loaded["2024-02-01..2024-02-29@*"].records_written == 4

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.mark_complete("sync-1", JANUARY, None)

        await store.clear("sync-1")

        assert await store.load("sync-1") == {}


class TestFileCheckpointStore:
    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path):
        """Test checkpoints written by one store are read by a fresh one."""
        directory = tmp_path / "checkpoints"
        await FileCheckpointStore(directory).mark_complete("sync-1", JANUARY, "001", 7)

        reloaded = await FileCheckpointStore(directory).load("sync-1")

        checkpoint = reloaded["2024-01-01..2024-01-31@001"]
        assert checkpoint.chunk == JANUARY
        assert checkpoint.scope == "001"
        assert checkpoint.records_written == 7

    @pytest.mark.asyncio
    async def test_file_format(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.mark_complete("sync-1", JANUARY, None, 2)

        with open(tmp_path / "sync-1.json") as f:
            payload = json.load(f)

        assert payload["operation_id"] == "sync-1"
        assert payload["checkpoints"][0]["chunk_start"] == "2024-01-01"
        assert payload["checkpoints"][0]["scope"] is None
        assert not (tmp_path / "sync-1.json.tmp").exists()
