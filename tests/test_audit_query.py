"""
Tests for audit history queries.
"""

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from ipam_allocator.managers.ipam_audit_manager import AuditTrail
from ipam_allocator.managers.ipam_exceptions import AuditEntryNotFound, PersistenceError, ValidationError


@pytest.fixture
async def history(ipam):
    region = await ipam.create_region("alice", "India", "mumbai")
    other = await ipam.create_region("bob", "Japan", "tokyo")
    host = await ipam.create_host("alice", region["region_id"], "web-01")
    await ipam.release_host("bob", host["host_id"], "done")
    return {"region": region, "other": other, "host": host}


class TestAuditQuery:
    @pytest.mark.asyncio
    async def test_newest_first(self, ipam, history):
        page = await ipam.audit.query()

        actions = [(e["action_type"], e["resource_type"]) for e in page["results"]]
        assert actions == [("release", "host"), ("create", "host"), ("create", "region"), ("create", "region")]
        assert all("audit_id" in e and "_id" not in e for e in page["results"])
        assert page["pagination"]["total_count"] == 4

    @pytest.mark.asyncio
    async def test_filters(self, ipam, history):
        by_user = await ipam.audit.query(user="bob")
        assert {e["action_type"] for e in by_user["results"]} == {"create", "release"}

        by_action = await ipam.audit.query(action_type="release")
        assert [e["resource_id"] for e in by_action["results"]] == [history["host"]["host_id"]]

        by_country = await ipam.audit.query(country="Japan")
        assert [e["resource_id"] for e in by_country["results"]] == [history["other"]["region_id"]]

        by_resource = await ipam.audit.query(resource_type="host", resource_id=history["host"]["host_id"])
        assert by_resource["pagination"]["total_count"] == 2

    @pytest.mark.asyncio
    async def test_date_range(self, ipam, history):
        now = datetime.now(timezone.utc)
        recent = await ipam.audit.query(start_date=now - timedelta(minutes=5), end_date=now + timedelta(minutes=5))
        assert recent["pagination"]["total_count"] == 4

        old = await ipam.audit.query(end_date=now - timedelta(days=1))
        assert old["results"] == []
        assert old["pagination"]["total_pages"] == 0

    @pytest.mark.asyncio
    async def test_pagination(self, ipam, history):
        first = await ipam.audit.query(page=1, page_size=3)
        second = await ipam.audit.query(page=2, page_size=3)

        assert len(first["results"]) == 3
        assert len(second["results"]) == 1
        assert first["pagination"] == {
            "page": 1,
            "page_size": 3,
            "total_count": 4,
            "total_pages": 2,
            "has_next": True,
            "has_prev": False,
        }
        assert second["pagination"]["has_prev"] is True
        seen = {e["audit_id"] for e in first["results"]} | {e["audit_id"] for e in second["results"]}
        assert len(seen) == 4

    @pytest.mark.asyncio
    async def test_invalid_queries(self, ipam):
        with pytest.raises(ValidationError):
            await ipam.audit.query(action_type="delete")
        with pytest.raises(ValidationError):
            await ipam.audit.query(resource_type="continent")
        with pytest.raises(ValidationError):
            await ipam.audit.query(page=0)
        with pytest.raises(ValidationError):
            await ipam.audit.query(page_size=101)
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            await ipam.audit.query(start_date=now, end_date=now - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_get_entry(self, ipam, history):
        page = await ipam.audit.query(action_type="release")
        audit_id = page["results"][0]["audit_id"]

        entry = await ipam.audit.get_entry(audit_id)
        assert entry["reason"] == "done"
        assert entry["user"] == "bob"

        with pytest.raises(AuditEntryNotFound):
            await ipam.audit.get_entry(str(ObjectId()))
        with pytest.raises(AuditEntryNotFound):
            await ipam.audit.get_entry("garbage")

    @pytest.mark.asyncio
    async def test_storage_failure(self, ipam, audit_log):
        audit_log.fail_on("count_documents")
        with pytest.raises(PersistenceError):
            await ipam.audit.query()

    def test_build_entry_rejects_unknown_action(self, db):
        with pytest.raises(ValidationError):
            AuditTrail(db).build_entry(user="x", action_type="delete", resource_type="host", resource_id="1")
