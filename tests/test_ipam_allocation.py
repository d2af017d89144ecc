"""
Unit tests for IPAM auto-allocation algorithms.

Tests the region (X.Y) and host (Z) slot selection against the in-memory database,
capacity exhaustion detection, slot reuse policies and the address interpretation lookup.
"""

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from ipam_allocator.managers.address_space import AddressSpace
from ipam_allocator.managers.ipam_exceptions import (
    CapacityExhausted,
    CountryNotFound,
    HostNotFound,
    InvalidHostname,
    InvalidState,
    RegionInactive,
    RegionNotFound,
    ValidationError,
)
from ipam_allocator.managers.ipam_manager import IPAMManager

USER = "test_user_123"


def region_doc(x, y, status="Active", allocated_hosts=0, country="India", continent="Asia"):
    now = datetime.now(timezone.utc)
    return {
        "_id": ObjectId(),
        "country": country,
        "continent": continent,
        "x_octet": x,
        "y_octet": y,
        "cidr": f"10.{x}.{y}.0/24",
        "region_name": f"prefilled-{x}-{y}",
        "status": status,
        "allocated_hosts": allocated_hosts,
        "tags": {},
        "created_at": now,
        "updated_at": now,
        "created_by": "seed",
        "updated_by": "seed",
    }


def host_doc(region, z, status="Active"):
    return {
        "_id": ObjectId(),
        "region_id": str(region["_id"]),
        "country": region["country"],
        "continent": region["continent"],
        "x_octet": region["x_octet"],
        "y_octet": region["y_octet"],
        "z_octet": z,
        "ip_address": f"10.{region['x_octet']}.{region['y_octet']}.{z}",
        "hostname": f"seed-{z}",
        "status": status,
        "tags": {},
    }


class TestRegionAllocation:
    """find_next_xy through create_region."""

    @pytest.mark.asyncio
    async def test_first_region_takes_lowest_slot(self, ipam):
        region = await ipam.create_region(USER, "India", "Mumbai DC1")

        assert region["cidr"] == "10.0.0.0/24"
        assert region["x_octet"] == 0
        assert region["y_octet"] == 0
        assert region["status"] == "Active"
        assert region["allocated_hosts"] == 0
        assert region["continent"] == "Asia"
        assert region["created_by"] == USER

    @pytest.mark.asyncio
    async def test_sequential_y_allocation(self, ipam):
        cidrs = [(await ipam.create_region(USER, "UAE", f"dc-{i}"))["cidr"] for i in range(3)]
        assert cidrs == ["10.30.0.0/24", "10.30.1.0/24", "10.30.2.0/24"]

    @pytest.mark.asyncio
    async def test_rolls_over_to_next_x(self, ipam, regions):
        """When every Y of the first X is taken, allocation moves to X+1, Y=0."""
        regions.docs.extend(region_doc(0, y) for y in range(256))

        region = await ipam.create_region(USER, "India", "overflow")
        assert region["cidr"] == "10.1.0.0/24"

    @pytest.mark.asyncio
    async def test_fills_gaps_first(self, ipam, regions):
        regions.docs.extend(region_doc(0, y) for y in (0, 1, 3))

        region = await ipam.create_region(USER, "India", "gap")
        assert region["cidr"] == "10.0.2.0/24"

    @pytest.mark.asyncio
    async def test_country_capacity_exhausted(self, db, mock_redis, regions):
        space = AddressSpace([{"continent": "Lab", "country": "Tiny", "x_start": 0, "x_end": 0}])
        manager = IPAMManager(db_manager_instance=db, redis_manager_instance=mock_redis, address_space=space)
        regions.docs.extend(region_doc(0, y, country="Tiny", continent="Lab") for y in range(256))

        with pytest.raises(CapacityExhausted) as exc_info:
            await manager.create_region(USER, "Tiny", "one too many")
        assert exc_info.value.context["capacity"] == 256
        assert exc_info.value.context["allocated"] == 256

    @pytest.mark.asyncio
    async def test_reserved_country_rejected(self, ipam, regions):
        with pytest.raises(ValidationError):
            await ipam.create_region(USER, "Future Use", "nope")
        assert regions.docs == []

    @pytest.mark.asyncio
    async def test_unknown_country(self, ipam):
        with pytest.raises(CountryNotFound):
            await ipam.create_region(USER, "Atlantis", "nope")

    @pytest.mark.asyncio
    async def test_blank_region_name(self, ipam):
        with pytest.raises(ValidationError):
            await ipam.create_region(USER, "India", "   ")

    @pytest.mark.asyncio
    async def test_invalid_tags(self, ipam):
        with pytest.raises(ValidationError):
            await ipam.create_region(USER, "India", "dc", tags={"bad key!": "x"})

    @pytest.mark.asyncio
    async def test_retired_slot_reused_by_default(self, ipam):
        first = await ipam.create_region(USER, "Japan", "tokyo")
        await ipam.retire_region(USER, first["region_id"], "decommissioned")

        again = await ipam.create_region(USER, "Japan", "tokyo-2")
        assert again["cidr"] == first["cidr"]
        assert again["region_id"] != first["region_id"]

    @pytest.mark.asyncio
    async def test_retired_slot_kept_when_reuse_disabled(self, db, mock_redis):
        manager = IPAMManager(
            db_manager_instance=db, redis_manager_instance=mock_redis, reuse_retired_region_slots=False
        )
        first = await manager.create_region(USER, "Japan", "tokyo")
        await manager.retire_region(USER, first["region_id"], "decommissioned")

        again = await manager.create_region(USER, "Japan", "tokyo-2")
        assert again["cidr"] == "10.46.1.0/24"

    @pytest.mark.asyncio
    async def test_orphaned_hosts_block_slot_reuse(self, ipam):
        """A retired region whose hosts are still Active keeps its /24 until they are released."""
        region = await ipam.create_region(USER, "Spain", "madrid")
        host = await ipam.create_host(USER, region["region_id"], "web-01")
        await ipam.retire_region(USER, region["region_id"], "moving", cascade=False)

        blocked = await ipam.next_available_region("Spain")
        assert blocked["cidr"] == "10.128.1.0/24"

        await ipam.release_host(USER, host["host_id"], "cleanup")
        freed = await ipam.next_available_region("Spain")
        assert freed["cidr"] == "10.128.0.0/24"

    @pytest.mark.asyncio
    async def test_next_available_region_preview_writes_nothing(self, ipam, regions):
        preview = await ipam.next_available_region("Chile")

        assert preview["cidr"] == "10.178.0.0/24"
        assert preview["available_count"] == 10 * 256
        assert regions.docs == []

    @pytest.mark.asyncio
    async def test_update_region(self, ipam, audit_log):
        region = await ipam.create_region(USER, "India", "old name")
        updated = await ipam.update_region(USER, region["region_id"], {"region_name": "new name", "owner": "netops"})

        assert updated["region_name"] == "new name"
        assert updated["owner"] == "netops"
        assert updated["cidr"] == region["cidr"]
        entry = audit_log.docs[-1]
        assert entry["action_type"] == "update"
        assert [c["field"] for c in entry["changes"]] == ["region_name", "owner"]

    @pytest.mark.asyncio
    async def test_update_region_rejects_address_fields(self, ipam):
        region = await ipam.create_region(USER, "India", "dc")
        with pytest.raises(ValidationError):
            await ipam.update_region(USER, region["region_id"], {"cidr": "10.9.9.0/24"})

    @pytest.mark.asyncio
    async def test_update_region_noop_writes_no_audit(self, ipam, audit_log):
        region = await ipam.create_region(USER, "India", "dc")
        before = len(audit_log.docs)

        await ipam.update_region(USER, region["region_id"], {"region_name": "dc"})
        assert len(audit_log.docs) == before

    @pytest.mark.asyncio
    async def test_update_retired_region(self, ipam):
        region = await ipam.create_region(USER, "India", "dc")
        await ipam.retire_region(USER, region["region_id"], "gone")
        with pytest.raises(InvalidState):
            await ipam.update_region(USER, region["region_id"], {"owner": "someone"})

    @pytest.mark.asyncio
    async def test_list_regions_paginated(self, ipam):
        for i in range(3):
            await ipam.create_region(USER, "Poland", f"dc-{i}")
        await ipam.create_region(USER, "Brazil", "sp")

        page = await ipam.regions.list({"country": "poland"}, page=1, page_size=2)
        assert [r["cidr"] for r in page["results"]] == ["10.118.0.0/24", "10.118.1.0/24"]
        assert page["pagination"]["total_count"] == 3
        assert page["pagination"]["has_next"] is True


class TestHostAllocation:
    """find_next_z through create_host."""

    @pytest.mark.asyncio
    async def test_hosts_take_lowest_free_octet(self, ipam, regions):
        region = await ipam.create_region(USER, "India", "dc")
        first = await ipam.create_host(USER, region["region_id"], "web-01")
        second = await ipam.create_host(USER, region["region_id"], "web-02", device_type="VM", owner="ops")

        assert first["ip_address"] == "10.0.0.1"
        assert second["ip_address"] == "10.0.0.2"
        assert second["device_type"] == "VM"
        assert regions.docs[0]["allocated_hosts"] == 2

    @pytest.mark.asyncio
    async def test_released_octet_reused(self, ipam):
        region = await ipam.create_region(USER, "India", "dc")
        first = await ipam.create_host(USER, region["region_id"], "web-01")
        await ipam.create_host(USER, region["region_id"], "web-02")
        await ipam.release_host(USER, first["host_id"], "decommissioned")

        replacement = await ipam.create_host(USER, region["region_id"], "web-03")
        assert replacement["ip_address"] == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_released_octet_kept_when_reuse_disabled(self, db, mock_redis):
        manager = IPAMManager(db_manager_instance=db, redis_manager_instance=mock_redis, reuse_released_host_slots=False)
        region = await manager.create_region(USER, "India", "dc")
        first = await manager.create_host(USER, region["region_id"], "web-01")
        await manager.release_host(USER, first["host_id"], "decommissioned")

        replacement = await manager.create_host(USER, region["region_id"], "web-02")
        assert replacement["ip_address"] == "10.0.0.2"

    @pytest.mark.asyncio
    async def test_invalid_hostname(self, ipam, hosts):
        region = await ipam.create_region(USER, "India", "dc")
        for hostname in ("a", "bad host", "", None, "web-01\n"):
            with pytest.raises(InvalidHostname):
                await ipam.create_host(USER, region["region_id"], hostname)
        assert hosts.docs == []

    @pytest.mark.asyncio
    async def test_unknown_region(self, ipam):
        with pytest.raises(RegionNotFound):
            await ipam.create_host(USER, "not-an-id", "web-01")
        with pytest.raises(RegionNotFound):
            await ipam.create_host(USER, str(ObjectId()), "web-01")

    @pytest.mark.asyncio
    async def test_retired_region_rejects_hosts(self, ipam):
        region = await ipam.create_region(USER, "India", "dc")
        await ipam.retire_region(USER, region["region_id"], "gone")

        with pytest.raises(RegionInactive) as exc_info:
            await ipam.create_host(USER, region["region_id"], "web-01")
        assert exc_info.value.error_code == "REGION_INACTIVE"

    @pytest.mark.asyncio
    async def test_region_capacity_exhausted(self, ipam, regions, hosts):
        region = region_doc(5, 5, allocated_hosts=254)
        regions.docs.append(region)
        hosts.docs.extend(host_doc(region, z) for z in range(1, 255))

        with pytest.raises(CapacityExhausted) as exc_info:
            await ipam.create_host(USER, str(region["_id"]), "web-255")
        assert exc_info.value.context["capacity"] == 254

    @pytest.mark.asyncio
    async def test_last_octet_is_254(self, ipam, regions, hosts):
        region = region_doc(5, 6, allocated_hosts=253)
        regions.docs.append(region)
        hosts.docs.extend(host_doc(region, z) for z in range(1, 254))

        host = await ipam.create_host(USER, str(region["_id"]), "last-one")
        assert host["z_octet"] == 254

    @pytest.mark.asyncio
    async def test_next_available_host(self, ipam, hosts):
        region = await ipam.create_region(USER, "India", "dc")
        await ipam.create_host(USER, region["region_id"], "web-01")

        preview = await ipam.next_available_host(region["region_id"])
        assert preview["ip_address"] == "10.0.0.2"
        assert preview["available_count"] == 253
        assert len(hosts.docs) == 1

    @pytest.mark.asyncio
    async def test_update_host(self, ipam, audit_log):
        region = await ipam.create_region(USER, "India", "dc")
        host = await ipam.create_host(USER, region["region_id"], "web-01")

        updated = await ipam.update_host(USER, host["host_id"], {"hostname": "api-01", "tags": {"env": "prod"}})
        assert updated["hostname"] == "api-01"
        assert updated["tags"] == {"env": "prod"}
        assert updated["ip_address"] == host["ip_address"]
        assert audit_log.docs[-1]["resource_name"] == "api-01"

    @pytest.mark.asyncio
    async def test_update_host_rejects_unknown_fields(self, ipam):
        region = await ipam.create_region(USER, "India", "dc")
        host = await ipam.create_host(USER, region["region_id"], "web-01")
        with pytest.raises(ValidationError):
            await ipam.update_host(USER, host["host_id"], {"ip_address": "10.0.0.9"})

    @pytest.mark.asyncio
    async def test_release_twice(self, ipam):
        region = await ipam.create_region(USER, "India", "dc")
        host = await ipam.create_host(USER, region["region_id"], "web-01")
        await ipam.release_host(USER, host["host_id"], "done")

        with pytest.raises(InvalidState):
            await ipam.release_host(USER, host["host_id"], "again")

    @pytest.mark.asyncio
    async def test_get_by_ip(self, ipam):
        region = await ipam.create_region(USER, "India", "dc")
        host = await ipam.create_host(USER, region["region_id"], "web-01")

        found = await ipam.hosts.get_by_ip("10.0.0.1")
        assert found["host_id"] == host["host_id"]
        with pytest.raises(HostNotFound):
            await ipam.hosts.get_by_ip("10.0.0.2")


class TestInterpretAddress:
    """interpret_ip_address walks the hierarchy."""

    @pytest.mark.asyncio
    async def test_full_hierarchy(self, ipam):
        region = await ipam.create_region(USER, "India", "Mumbai")
        await ipam.create_host(USER, region["region_id"], "web-01")

        result = await ipam.interpret_ip_address("10.0.0.1")
        assert result["continent"] == "Asia"
        assert result["country"] == "India"
        assert result["region"]["cidr"] == "10.0.0.0/24"
        assert result["host"]["hostname"] == "web-01"
        assert result["hierarchy"] == "Global > Asia > India > Mumbai (10.0.0.0/24) > web-01"

    @pytest.mark.asyncio
    async def test_unallocated_address(self, ipam):
        result = await ipam.interpret_ip_address("10.153.4.9")
        assert result["country"] == "United States"
        assert result["region"] is None
        assert result["host"] is None

    @pytest.mark.asyncio
    async def test_reserved_space(self, ipam):
        result = await ipam.interpret_ip_address("10.250.0.1")
        assert result["is_reserved"] is True
        assert result["country"] == "Future Use"

    @pytest.mark.asyncio
    async def test_outside_private_space(self, ipam):
        with pytest.raises(ValidationError):
            await ipam.interpret_ip_address("192.168.1.1")
