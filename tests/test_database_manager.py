"""
Tests for DatabaseManager connection handling and atomic units.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

from ipam_allocator.database import AtomicStep, DatabaseManager
from ipam_allocator.database.ipam_indexes import create_ipam_indexes


def recording_step(log, name, fail=False, undo_fails=False):
    async def apply(session):
        if fail:
            raise PyMongoError(f"{name} failed")
        log.append(("apply", name, session))
        return name

    async def undo():
        if undo_fails:
            raise PyMongoError(f"undo {name} failed")
        log.append(("undo", name))

    return AtomicStep(name, apply, undo)


class FakeTransaction:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        self.session.events.append("start")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.session.events.append("abort" if exc_type else "commit")
        return False


class FakeSession:
    def __init__(self):
        self.events = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.events.append("end")
        return False

    def start_transaction(self):
        return FakeTransaction(self)


class TestRunAtomic:
    """run_atomic without transactions compensates completed steps."""

    @pytest.mark.asyncio
    async def test_all_steps_applied_in_order(self):
        manager = DatabaseManager()
        manager.transactions_supported = False
        log = []

        results = await manager.run_atomic([recording_step(log, "a"), recording_step(log, "b")], "test")

        assert results == ["a", "b"]
        assert log == [("apply", "a", None), ("apply", "b", None)]

    @pytest.mark.asyncio
    async def test_failure_undoes_completed_steps_in_reverse(self):
        manager = DatabaseManager()
        manager.transactions_supported = False
        log = []
        steps = [recording_step(log, "a"), recording_step(log, "b"), recording_step(log, "c", fail=True)]

        with pytest.raises(PyMongoError, match="c failed"):
            await manager.run_atomic(steps, "test")

        assert log == [("apply", "a", None), ("apply", "b", None), ("undo", "b"), ("undo", "a")]

    @pytest.mark.asyncio
    async def test_failing_undo_does_not_mask_original_error(self):
        manager = DatabaseManager()
        manager.transactions_supported = False
        log = []
        steps = [
            recording_step(log, "a"),
            recording_step(log, "b", undo_fails=True),
            recording_step(log, "c", fail=True),
        ]

        with pytest.raises(PyMongoError, match="c failed"):
            await manager.run_atomic(steps, "test")
        assert ("undo", "a") in log

    @pytest.mark.asyncio
    async def test_non_storage_undo_error_does_not_stop_compensation(self):
        manager = DatabaseManager()
        manager.transactions_supported = False
        log = []

        async def broken_undo():
            raise RuntimeError("Database not connected")

        steps = [
            recording_step(log, "a"),
            AtomicStep("b", recording_step(log, "b").apply, broken_undo),
            recording_step(log, "c", fail=True),
        ]

        with pytest.raises(PyMongoError, match="c failed"):
            await manager.run_atomic(steps, "test")
        assert log[-1] == ("undo", "a")

    @pytest.mark.asyncio
    async def test_transaction_path(self):
        manager = DatabaseManager()
        manager.transactions_supported = True
        session = FakeSession()
        manager.client = MagicMock()
        manager.client.start_session = AsyncMock(return_value=session)
        log = []

        results = await manager.run_atomic([recording_step(log, "a"), recording_step(log, "b")], "test")

        assert results == ["a", "b"]
        assert [entry[2] for entry in log] == [session, session]
        assert session.events == ["start", "commit", "end"]

    @pytest.mark.asyncio
    async def test_transaction_aborts_without_compensation(self):
        manager = DatabaseManager()
        manager.transactions_supported = True
        session = FakeSession()
        manager.client = MagicMock()
        manager.client.start_session = AsyncMock(return_value=session)
        log = []

        with pytest.raises(PyMongoError):
            await manager.run_atomic([recording_step(log, "a"), recording_step(log, "b", fail=True)], "test")

        assert session.events == ["start", "abort", "end"]
        assert not any(entry[0] == "undo" for entry in log)


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_detects_replica_set(self):
        client = MagicMock()
        client.admin.command = AsyncMock(
            side_effect=lambda command: {"setName": "rs0"} if isinstance(command, dict) else {"ok": 1}
        )
        manager = DatabaseManager()

        with patch("ipam_allocator.database.manager.AsyncIOMotorClient", return_value=client):
            await manager.connect()

        assert manager.transactions_supported is True
        assert manager.database is not None

    @pytest.mark.asyncio
    async def test_connect_standalone(self):
        client = MagicMock()
        client.admin.command = AsyncMock(return_value={"ok": 1})
        manager = DatabaseManager()

        with patch("ipam_allocator.database.manager.AsyncIOMotorClient", return_value=client):
            await manager.connect()

        assert manager.transactions_supported is False

    @pytest.mark.asyncio
    async def test_connect_gives_up_after_retries(self):
        client = MagicMock()
        client.admin.command = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))
        manager = DatabaseManager()

        with patch("ipam_allocator.database.manager.AsyncIOMotorClient", return_value=client), patch(
            "ipam_allocator.database.manager.asyncio.sleep", new=AsyncMock()
        ) as sleep:
            with pytest.raises(ServerSelectionTimeoutError):
                await manager.connect()

        assert client.admin.command.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_health_check(self):
        manager = DatabaseManager()
        assert await manager.health_check() is False

        manager.client = MagicMock()
        manager.client.admin.command = AsyncMock(return_value={"ok": 1})
        assert await manager.health_check() is True

        manager.client.admin.command = AsyncMock(side_effect=PyMongoError("down"))
        assert await manager.health_check() is False

    def test_get_collection_requires_connection(self):
        with pytest.raises(RuntimeError):
            DatabaseManager().get_collection("ipam_regions")

    def test_sanitize_query_truncates_long_lists(self):
        sanitized = DatabaseManager()._sanitize_query_for_logging(
            {"_id": {"$in": list(range(50))}, "status": "Active"}
        )
        assert sanitized == {"_id": {"$in": "[50 items]"}, "status": "Active"}


class TestIndexes:
    @pytest.mark.asyncio
    async def test_partial_unique_indexes_created(self, db, fake_db):
        assert await create_ipam_indexes(db) is True

        unique = {
            (name, index["name"])
            for name, collection in fake_db.collections.items()
            for index in collection.indexes
            if index.get("unique")
        }
        assert unique == {
            ("ipam_regions", "active_xy_unique_idx"),
            ("ipam_hosts", "active_region_z_unique_idx"),
            ("ipam_hosts", "active_xyz_unique_idx"),
        }
        regions_index = next(i for i in fake_db["ipam_regions"].indexes if i["name"] == "active_xy_unique_idx")
        assert regions_index["partialFilterExpression"] == {"status": "Active"}

    @pytest.mark.asyncio
    async def test_index_failure_reported(self, db, fake_db):
        fake_db["ipam_hosts"].create_index = AsyncMock(side_effect=PyMongoError("not primary"))
        assert await create_ipam_indexes(db) is False
