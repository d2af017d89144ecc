"""
Region-level allocation: /24 blocks 10.X.Y.0/24 inside a country's X range.

Slot selection scans X ascending and, within each X, Y ascending, taking the first pair
not occupied. Create and retire run under the country's scoped lock; retire additionally
holds the region lock so host allocation cannot race a cascade.
"""

from datetime import datetime, timezone
import time
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import PyMongoError

from ipam_allocator.config import settings
from ipam_allocator.database import AtomicStep, DatabaseManager, db_manager
from ipam_allocator.database.ipam_indexes import REGIONS_COLLECTION
from ipam_allocator.managers.address_space import HOST_SLOTS_PER_REGION, Y_SLOTS_PER_X, AddressSpace, Country
from ipam_allocator.managers.host_allocator import HostAllocator
from ipam_allocator.managers.ipam_audit_manager import AuditTrail, field_changes
from ipam_allocator.managers.ipam_exceptions import (
    CapacityExhausted,
    InvalidState,
    PersistenceError,
    RegionNotFound,
    ValidationError,
)
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.utils.ipam_atomic import commit_atomic, parse_object_id
from ipam_allocator.utils.ipam_validation import IPAMValidation, build_pagination, compute_utilization
from ipam_allocator.utils.scoped_locks import ScopedLockRegistry, country_scope, region_scope

logger = get_logger(prefix="[RegionAllocator]")

REGION_ACTIVE = "Active"
REGION_RETIRED = "Retired"
UPDATABLE_REGION_FIELDS = ("region_name", "description", "owner", "tags")


def serialize_region(doc: Dict[str, Any]) -> Dict[str, Any]:
    result = {k: v for k, v in doc.items() if k != "_id"}
    result["region_id"] = str(doc["_id"])
    result["utilization_percentage"] = compute_utilization(doc.get("allocated_hosts", 0), HOST_SLOTS_PER_REGION)
    return result


def region_utilization_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    allocated = doc.get("allocated_hosts", 0)
    return {
        "region_id": str(doc["_id"]),
        "cidr": doc["cidr"],
        "status": doc["status"],
        "allocated": allocated,
        "total": HOST_SLOTS_PER_REGION,
        "available": max(0, HOST_SLOTS_PER_REGION - allocated),
        "percentage": compute_utilization(allocated, HOST_SLOTS_PER_REGION),
    }


class RegionAllocator:
    """Allocates, updates and retires regions in the ``ipam_regions`` collection."""

    def __init__(
        self,
        db_manager_instance: Optional[DatabaseManager] = None,
        address_space: Optional[AddressSpace] = None,
        audit_trail: Optional[AuditTrail] = None,
        locks: Optional[ScopedLockRegistry] = None,
        host_allocator: Optional[HostAllocator] = None,
        reuse_retired_slots: Optional[bool] = None,
    ) -> None:
        self.db_manager = db_manager_instance or db_manager
        self.address_space = address_space or AddressSpace()
        self.audit = audit_trail or AuditTrail(self.db_manager)
        self.locks = locks or ScopedLockRegistry()
        self.host_allocator = host_allocator or HostAllocator(self.db_manager, self.audit, self.locks)
        self.reuse_retired_slots = (
            settings.IPAM_REUSE_RETIRED_REGION_SLOTS if reuse_retired_slots is None else reuse_retired_slots
        )
        self.logger = logger

    @property
    def regions(self):
        return self.db_manager.get_collection(REGIONS_COLLECTION)

    def _allocatable_country(self, name: str) -> Country:
        country = self.address_space.get_country(name)
        if country.is_reserved:
            raise ValidationError(f"Country {country.name} is reserved and cannot be allocated", "country", name)
        return country

    async def _load_region(self, region_id: Any) -> Dict[str, Any]:
        oid = parse_object_id(region_id)
        if oid is None:
            raise RegionNotFound(f"Region {region_id} not found", str(region_id))
        try:
            region = await self.regions.find_one({"_id": oid})
        except PyMongoError as e:
            raise PersistenceError("Failed to load region", "load_region", e) from e
        if region is None:
            raise RegionNotFound(f"Region {region_id} not found", str(region_id))
        return region

    def _occupies_slot(self, doc: Dict[str, Any]) -> bool:
        if doc.get("status") == REGION_ACTIVE or not self.reuse_retired_slots:
            return True
        # Retired regions keep their slot while orphaned hosts still hold addresses in it
        return doc.get("allocated_hosts", 0) > 0

    async def find_next_xy(self, country: Country) -> Tuple[Optional[Tuple[int, int]], int]:
        """
        First free (X, Y) in the country, plus the number of occupied slots.

        Returns ((x, y), occupied) or (None, occupied) when the country is full.
        """
        query = {"x_octet": {"$gte": country.x_start, "$lte": country.x_end}}
        start_time = self.db_manager.log_query_start(REGIONS_COLLECTION, "find", query)
        try:
            docs = await self.regions.find(query, {"x_octet": 1, "y_octet": 1, "status": 1, "allocated_hosts": 1}).to_list(
                length=None
            )
        except PyMongoError as e:
            self.db_manager.log_query_error(REGIONS_COLLECTION, "find", start_time, e, query)
            raise PersistenceError("Failed to read allocated regions", "find_next_xy", e) from e
        self.db_manager.log_query_success(REGIONS_COLLECTION, "find", start_time, len(docs))

        occupied: Dict[int, set] = {}
        for doc in docs:
            if self._occupies_slot(doc):
                occupied.setdefault(doc["x_octet"], set()).add(doc["y_octet"])
        occupied_count = sum(len(ys) for ys in occupied.values())

        for x in range(country.x_start, country.x_end + 1):
            taken = occupied.get(x, set())
            if len(taken) >= Y_SLOTS_PER_X:
                continue
            for y in range(Y_SLOTS_PER_X):
                if y not in taken:
                    return (x, y), occupied_count
        return None, occupied_count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, region_id: str) -> Dict[str, Any]:
        return serialize_region(await self._load_region(region_id))

    async def get_active_by_xy(self, x_octet: int, y_octet: int) -> Optional[Dict[str, Any]]:
        region = await self.regions.find_one({"x_octet": x_octet, "y_octet": y_octet, "status": REGION_ACTIVE})
        return serialize_region(region) if region else None

    async def utilization(self, region_id: str) -> Dict[str, Any]:
        return region_utilization_view(await self._load_region(region_id))

    async def list(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, page_size: int = 50) -> Dict[str, Any]:
        IPAMValidation.require_page(page, page_size)
        filters = filters or {}
        query: Dict[str, Any] = {}
        if filters.get("country"):
            query["country"] = self.address_space.get_country(filters["country"]).name
        for key in ("continent", "status", "owner"):
            if filters.get(key) is not None:
                query[key] = filters[key]
        start_time = self.db_manager.log_query_start(REGIONS_COLLECTION, "find", query)
        try:
            total_count = await self.regions.count_documents(query)
            cursor = (
                self.regions.find(query)
                .sort([("x_octet", 1), ("y_octet", 1), ("_id", 1)])
                .skip((page - 1) * page_size)
                .limit(page_size)
            )
            docs = await cursor.to_list(length=page_size)
        except PyMongoError as e:
            self.db_manager.log_query_error(REGIONS_COLLECTION, "find", start_time, e, query)
            raise PersistenceError("Failed to list regions", "list_regions", e) from e
        self.db_manager.log_query_success(REGIONS_COLLECTION, "find", start_time, len(docs))
        return {"results": [serialize_region(d) for d in docs], "pagination": build_pagination(page, page_size, total_count)}

    async def next_available(self, country_name: str) -> Dict[str, Any]:
        """Preview of the /24 the next allocation in the country would take; writes nothing."""
        country = self._allocatable_country(country_name)
        slot, occupied = await self.find_next_xy(country)
        return {
            "country": country.name,
            "continent": country.continent,
            "x_octet": slot[0] if slot else None,
            "y_octet": slot[1] if slot else None,
            "cidr": f"10.{slot[0]}.{slot[1]}.0/24" if slot else None,
            "available_count": country.total_region_slots - occupied,
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        user: str,
        country: str,
        region_name: str,
        description: Optional[str] = None,
        owner: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Allocate the next free /24 in `country`.

        Raises:
            ValidationError: blank/oversized name, invalid tags, reserved country
            CountryNotFound: unknown country
            CapacityExhausted: every (X, Y) of the country is occupied
            ConcurrencyConflict: another process claimed the chosen slot first
            PersistenceError: storage or audit failure; nothing was written
        """
        start_time = time.time()
        region_name = IPAMValidation.require_region_name(region_name)
        tags = IPAMValidation.require_tags(tags)
        target = self._allocatable_country(country)

        async with self.locks.hold(country_scope(target.name)):
            slot, occupied = await self.find_next_xy(target)
            if slot is None:
                self.logger.warning(
                    "Capacity exhausted: operation=find_next_xy user=%s country=%s x_range=%d-%d capacity=%d duration_ms=%.1f",
                    user,
                    target.name,
                    target.x_start,
                    target.x_end,
                    target.total_region_slots,
                    (time.time() - start_time) * 1000,
                )
                raise CapacityExhausted(
                    f"No /24 blocks left in {target.name}", "region", target.total_region_slots, occupied
                )

            x_octet, y_octet = slot
            now = datetime.now(timezone.utc)
            region = {
                "_id": ObjectId(),
                "country": target.name,
                "continent": target.continent,
                "x_octet": x_octet,
                "y_octet": y_octet,
                "cidr": f"10.{x_octet}.{y_octet}.0/24",
                "region_name": region_name,
                "description": description,
                "owner": owner,
                "tags": tags,
                "status": REGION_ACTIVE,
                "allocated_hosts": 0,
                "created_at": now,
                "updated_at": now,
                "created_by": user,
                "updated_by": user,
            }

            async def insert(session):
                await self.regions.insert_one(region, session=session)
                return str(region["_id"])

            async def undo_insert():
                await self.regions.delete_one({"_id": region["_id"]})

            entry = self.audit.build_entry(
                user=user,
                action_type="create",
                resource_type="region",
                resource_id=region["_id"],
                resource_name=region_name,
                snapshot=region,
                metadata={"country": target.name, "continent": target.continent, "x_octet": x_octet, "y_octet": y_octet},
                cidr=region["cidr"],
                timestamp=now,
            )
            await commit_atomic(
                self.db_manager,
                [AtomicStep(f"insert region {region['cidr']}", insert, undo_insert), self.audit.record_step(entry)],
                "allocate_region",
                "region",
                region["cidr"],
            )

        self.logger.info(
            "Allocation success: operation=allocate_region user=%s country=%s region=%s cidr=%s x=%d y=%d duration_ms=%.1f result=success",
            user,
            target.name,
            region_name,
            region["cidr"],
            x_octet,
            y_octet,
            (time.time() - start_time) * 1000,
        )
        return serialize_region(region)

    async def update(self, user: str, region_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Edit descriptive fields of an Active region. Address fields are immutable."""
        unknown = sorted(set(updates or {}) - set(UPDATABLE_REGION_FIELDS))
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(unknown)}", unknown[0], updates[unknown[0]])
        updates = dict(updates or {})
        if "region_name" in updates:
            updates["region_name"] = IPAMValidation.require_region_name(updates["region_name"])
        if "tags" in updates:
            updates["tags"] = IPAMValidation.require_tags(updates["tags"])

        region = await self._load_region(region_id)
        rid = str(region["_id"])
        async with self.locks.hold(region_scope(rid)):
            region = await self._load_region(rid)
            if region["status"] != REGION_ACTIVE:
                raise InvalidState(f"Region {region['cidr']} is retired", "region", rid, region["status"])
            changes = field_changes(region, updates, UPDATABLE_REGION_FIELDS)
            if not changes:
                return serialize_region(region)

            now = datetime.now(timezone.utc)
            new_values = {c["field"]: c["new_value"] for c in changes}
            old_values = {c["field"]: c["old_value"] for c in changes}
            old_values.update({"updated_at": region.get("updated_at"), "updated_by": region.get("updated_by")})
            region_oid = region["_id"]

            async def apply(session):
                result = await self.regions.update_one(
                    {"_id": region_oid, "status": REGION_ACTIVE},
                    {"$set": {**new_values, "updated_at": now, "updated_by": user}},
                    session=session,
                )
                if result.matched_count == 0:
                    raise InvalidState(f"Region {region['cidr']} is retired", "region", rid, REGION_RETIRED)

            async def undo():
                await self.regions.update_one({"_id": region_oid}, {"$set": old_values})

            updated = {**region, **new_values, "updated_at": now, "updated_by": user}
            entry = self.audit.build_entry(
                user=user,
                action_type="update",
                resource_type="region",
                resource_id=region_oid,
                resource_name=updated["region_name"],
                changes=changes,
                snapshot=updated,
                metadata={"country": region["country"], "x_octet": region["x_octet"], "y_octet": region["y_octet"]},
                cidr=region["cidr"],
                timestamp=now,
            )
            await commit_atomic(
                self.db_manager,
                [AtomicStep(f"update region {rid}", apply, undo), self.audit.record_step(entry)],
                "update_region",
                "region",
                region["cidr"],
            )
        self.logger.info(
            "Region updated: operation=update_region user=%s cidr=%s fields=%s", user, region["cidr"], list(new_values)
        )
        return serialize_region(updated)

    async def retire(self, user: str, region_id: str, reason: str, cascade: bool = False) -> Dict[str, Any]:
        """
        Retire a region, optionally releasing all of its Active hosts in the same atomic unit.

        Without cascade, Active hosts stay Active (orphaned) and keep the /24 from being
        reallocated until they are released.
        """
        start_time = time.time()
        reason = IPAMValidation.require_reason(reason)
        region = await self._load_region(region_id)
        rid = str(region["_id"])
        if region["status"] != REGION_ACTIVE:
            raise InvalidState(f"Region {region['cidr']} is already retired", "region", rid, region["status"])

        async with self.locks.hold(country_scope(region["country"]), region_scope(rid)):
            region = await self._load_region(rid)
            if region["status"] != REGION_ACTIVE:
                raise InvalidState(f"Region {region['cidr']} is already retired", "region", rid, region["status"])

            active_hosts = await self.host_allocator.active_hosts(rid)
            steps: List[AtomicStep] = []
            if cascade:
                for host in active_hosts:
                    steps.extend(
                        self.host_allocator.plan_release(user, host, reason, {"cascade": True, "retired_region": rid})
                    )
            released_count = len(active_hosts) if cascade else 0
            orphaned_count = 0 if cascade else len(active_hosts)

            now = datetime.now(timezone.utc)
            retire_fields = {
                "status": REGION_RETIRED,
                "retired_at": now,
                "retired_by": user,
                "retire_reason": reason,
                "updated_at": now,
                "updated_by": user,
            }
            region_oid = region["_id"]

            async def apply_status(session):
                result = await self.regions.update_one(
                    {"_id": region_oid, "status": REGION_ACTIVE}, {"$set": retire_fields}, session=session
                )
                if result.matched_count == 0:
                    raise InvalidState(f"Region {region['cidr']} is already retired", "region", rid, REGION_RETIRED)

            async def undo_status():
                await self.regions.update_one(
                    {"_id": region_oid},
                    {
                        "$set": {
                            "status": REGION_ACTIVE,
                            "updated_at": region.get("updated_at"),
                            "updated_by": region.get("updated_by"),
                        },
                        "$unset": {"retired_at": "", "retired_by": "", "retire_reason": ""},
                    },
                )

            snapshot = {**region, **retire_fields}
            if cascade:
                snapshot["allocated_hosts"] = region.get("allocated_hosts", 0) - released_count
            entry = self.audit.build_entry(
                user=user,
                action_type="retire",
                resource_type="region",
                resource_id=region_oid,
                resource_name=region["region_name"],
                reason=reason,
                changes=[{"field": "status", "old_value": REGION_ACTIVE, "new_value": REGION_RETIRED}],
                snapshot=snapshot,
                metadata={
                    "country": region["country"],
                    "x_octet": region["x_octet"],
                    "y_octet": region["y_octet"],
                    "cascade": cascade,
                    "released_hosts": released_count,
                    "orphaned_hosts": orphaned_count,
                },
                cidr=region["cidr"],
                timestamp=now,
            )
            steps.append(AtomicStep(f"retire region {rid}", apply_status, undo_status))
            steps.append(self.audit.record_step(entry))
            await commit_atomic(self.db_manager, steps, "retire_region", "region", region["cidr"])

        warnings = []
        if orphaned_count:
            warnings.append(
                f"{orphaned_count} active host(s) remain in {region['cidr']}; the block stays unavailable until they are released"
            )
            self.logger.warning(
                "Region retired with orphaned hosts: operation=retire_region cidr=%s orphaned=%d", region["cidr"], orphaned_count
            )
        self.logger.info(
            "Retire success: operation=retire_region user=%s cidr=%s cascade=%s released_hosts=%d duration_ms=%.1f result=success",
            user,
            region["cidr"],
            cascade,
            released_count,
            (time.time() - start_time) * 1000,
        )
        return {
            "region_id": rid,
            "cidr": region["cidr"],
            "status": REGION_RETIRED,
            "cascade": cascade,
            "reason": reason,
            "released_hosts": released_count,
            "orphaned_hosts": orphaned_count,
            "warnings": warnings,
        }
