"""
Host-level allocation: individual 10.X.Y.Z addresses inside an Active region.

Every mutation runs under the region's scoped lock and commits the host write, the
region's ``allocated_hosts`` counter and the audit entries as one atomic unit.
"""

from datetime import datetime, timezone
import re
import time
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import PyMongoError

from ipam_allocator.config import settings
from ipam_allocator.database import AtomicStep, DatabaseManager, db_manager
from ipam_allocator.database.ipam_indexes import HOSTS_COLLECTION, REGIONS_COLLECTION
from ipam_allocator.managers.address_space import HOST_SLOTS_PER_REGION
from ipam_allocator.managers.ipam_audit_manager import AuditTrail, field_changes
from ipam_allocator.managers.ipam_exceptions import (
    CapacityExhausted,
    HostNotFound,
    InvalidState,
    IPAMError,
    PersistenceError,
    RegionInactive,
    RegionNotFound,
    ValidationError,
)
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.utils.ipam_atomic import commit_atomic, parse_object_id
from ipam_allocator.utils.ipam_validation import IPAMValidation, build_pagination
from ipam_allocator.utils.scoped_locks import ScopedLockRegistry, region_scope

logger = get_logger(prefix="[HostAllocator]")

HOST_ACTIVE = "Active"
HOST_RELEASED = "Released"
UPDATABLE_HOST_FIELDS = ("hostname", "device_type", "owner", "purpose", "tags")


def serialize_host(doc: Dict[str, Any]) -> Dict[str, Any]:
    result = {k: v for k, v in doc.items() if k != "_id"}
    result["host_id"] = str(doc["_id"])
    return result


class HostAllocator:
    """Allocates, updates and releases hosts in the ``ipam_hosts`` collection."""

    def __init__(
        self,
        db_manager_instance: Optional[DatabaseManager] = None,
        audit_trail: Optional[AuditTrail] = None,
        locks: Optional[ScopedLockRegistry] = None,
        reuse_released_slots: Optional[bool] = None,
    ) -> None:
        self.db_manager = db_manager_instance or db_manager
        self.audit = audit_trail or AuditTrail(self.db_manager)
        self.locks = locks or ScopedLockRegistry()
        self.reuse_released_slots = (
            settings.IPAM_REUSE_RELEASED_HOST_SLOTS if reuse_released_slots is None else reuse_released_slots
        )
        self.logger = logger

    @property
    def hosts(self):
        return self.db_manager.get_collection(HOSTS_COLLECTION)

    @property
    def regions(self):
        return self.db_manager.get_collection(REGIONS_COLLECTION)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

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

    async def _load_active_region(self, region_id: Any) -> Dict[str, Any]:
        region = await self._load_region(region_id)
        if region["status"] != "Active":
            raise RegionInactive(
                f"Region {region['cidr']} is {region['status']}; hosts can only be allocated in Active regions",
                str(region["_id"]),
                region["status"],
            )
        return region

    async def _load_host(self, host_id: Any) -> Dict[str, Any]:
        oid = parse_object_id(host_id)
        if oid is None:
            raise HostNotFound(f"Host {host_id} not found", str(host_id))
        try:
            host = await self.hosts.find_one({"_id": oid})
        except PyMongoError as e:
            raise PersistenceError("Failed to load host", "load_host", e) from e
        if host is None:
            raise HostNotFound(f"Host {host_id} not found", str(host_id))
        return host

    async def active_hosts(self, region_id: str) -> List[Dict[str, Any]]:
        start_time = self.db_manager.log_query_start(HOSTS_COLLECTION, "find", {"region_id": region_id})
        try:
            docs = await self.hosts.find({"region_id": region_id, "status": HOST_ACTIVE}).sort("z_octet", 1).to_list(
                length=None
            )
        except PyMongoError as e:
            self.db_manager.log_query_error(HOSTS_COLLECTION, "find", start_time, e, {"region_id": region_id})
            raise PersistenceError("Failed to list region hosts", "active_hosts", e) from e
        self.db_manager.log_query_success(HOSTS_COLLECTION, "find", start_time, len(docs))
        return docs

    async def free_z_values(self, region_id: str) -> List[int]:
        """Z octets (ascending) that a new host in the region may take."""
        query: Dict[str, Any] = {"region_id": region_id}
        if self.reuse_released_slots:
            query["status"] = HOST_ACTIVE
        try:
            docs = await self.hosts.find(query, {"z_octet": 1}).to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError("Failed to read allocated host octets", "find_next_z", e) from e
        taken = {doc["z_octet"] for doc in docs}
        return [z for z in range(1, HOST_SLOTS_PER_REGION + 1) if z not in taken]

    async def find_next_z(self, region_id: str) -> Optional[int]:
        free = await self.free_z_values(region_id)
        return free[0] if free else None

    async def get(self, host_id: str) -> Dict[str, Any]:
        return serialize_host(await self._load_host(host_id))

    async def get_by_ip(self, ip_address: str) -> Dict[str, Any]:
        x, y, z = IPAMValidation.parse_ip(ip_address)
        host = await self.hosts.find_one({"x_octet": x, "y_octet": y, "z_octet": z, "status": HOST_ACTIVE})
        if host is None:
            raise HostNotFound(f"No active host at {ip_address}", ip_address)
        return serialize_host(host)

    async def list(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, page_size: int = 50) -> Dict[str, Any]:
        IPAMValidation.require_page(page, page_size)
        filters = filters or {}
        query: Dict[str, Any] = {}
        for key in ("region_id", "status", "owner", "device_type", "hostname"):
            if filters.get(key) is not None:
                query[key] = filters[key]
        start_time = self.db_manager.log_query_start(HOSTS_COLLECTION, "find", query)
        try:
            total_count = await self.hosts.count_documents(query)
            cursor = (
                self.hosts.find(query)
                .sort([("x_octet", 1), ("y_octet", 1), ("z_octet", 1), ("_id", 1)])
                .skip((page - 1) * page_size)
                .limit(page_size)
            )
            docs = await cursor.to_list(length=page_size)
        except PyMongoError as e:
            self.db_manager.log_query_error(HOSTS_COLLECTION, "find", start_time, e, query)
            raise PersistenceError("Failed to list hosts", "list_hosts", e) from e
        self.db_manager.log_query_success(HOSTS_COLLECTION, "find", start_time, len(docs))
        return {"results": [serialize_host(d) for d in docs], "pagination": build_pagination(page, page_size, total_count)}

    async def next_available(self, region_id: str) -> Dict[str, Any]:
        """Preview of the address the next allocation would take; writes nothing."""
        region = await self._load_active_region(region_id)
        free = await self.free_z_values(str(region["_id"]))
        next_z = free[0] if free else None
        return {
            "region_id": str(region["_id"]),
            "cidr": region["cidr"],
            "z_octet": next_z,
            "ip_address": f"10.{region['x_octet']}.{region['y_octet']}.{next_z}" if next_z else None,
            "available_count": len(free),
        }

    # ------------------------------------------------------------------
    # Atomic steps
    # ------------------------------------------------------------------

    def _insert_hosts_step(self, docs: List[Dict[str, Any]]) -> AtomicStep:
        ids = [doc["_id"] for doc in docs]

        async def apply(session):
            if len(docs) == 1:
                await self.hosts.insert_one(docs[0], session=session)
            else:
                await self.hosts.insert_many(docs, ordered=True, session=session)
            return ids

        async def undo():
            await self.hosts.delete_many({"_id": {"$in": ids}})

        return AtomicStep(f"insert {len(docs)} host(s)", apply, undo)

    def _region_counter_step(self, region: Dict[str, Any], delta: int, require_active: bool) -> AtomicStep:
        region_oid = region["_id"]

        async def apply(session):
            query: Dict[str, Any] = {"_id": region_oid}
            if require_active:
                query["status"] = "Active"
            result = await self.regions.update_one(
                query,
                {"$inc": {"allocated_hosts": delta}, "$set": {"updated_at": datetime.now(timezone.utc)}},
                session=session,
            )
            if result.matched_count == 0:
                raise RegionInactive(f"Region {region['cidr']} is no longer Active", str(region_oid), None)
            return result.modified_count

        async def undo():
            await self.regions.update_one({"_id": region_oid}, {"$inc": {"allocated_hosts": -delta}})

        return AtomicStep(f"region {region_oid} allocated_hosts {delta:+d}", apply, undo)

    def _build_host_doc(
        self,
        user: str,
        region: Dict[str, Any],
        z_octet: int,
        hostname: str,
        device_type: Optional[str],
        owner: Optional[str],
        purpose: Optional[str],
        tags: Dict[str, str],
        now: datetime,
    ) -> Dict[str, Any]:
        return {
            "_id": ObjectId(),
            "region_id": str(region["_id"]),
            "country": region["country"],
            "continent": region["continent"],
            "x_octet": region["x_octet"],
            "y_octet": region["y_octet"],
            "z_octet": z_octet,
            "ip_address": f"10.{region['x_octet']}.{region['y_octet']}.{z_octet}",
            "hostname": hostname,
            "device_type": device_type,
            "owner": owner,
            "purpose": purpose,
            "tags": dict(tags),
            "status": HOST_ACTIVE,
            "created_at": now,
            "updated_at": now,
            "created_by": user,
            "updated_by": user,
        }

    def _create_audit_entry(self, user: str, host: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None):
        meta = {"country": host["country"], "region_id": host["region_id"], "z_octet": host["z_octet"]}
        meta.update(metadata or {})
        return self.audit.build_entry(
            user=user,
            action_type="create",
            resource_type="host",
            resource_id=host["_id"],
            resource_name=host["hostname"],
            snapshot=host,
            metadata=meta,
            ip_address=host["ip_address"],
            timestamp=host["created_at"],
        )

    def plan_release(
        self, user: str, host: Dict[str, Any], reason: str, metadata: Optional[Dict[str, Any]] = None
    ) -> List[AtomicStep]:
        """Steps that release `host`: status flip, region counter decrement, audit entry."""
        host_oid = host["_id"]
        now = datetime.now(timezone.utc)
        release_fields = {
            "status": HOST_RELEASED,
            "released_at": now,
            "released_by": user,
            "release_reason": reason,
            "updated_at": now,
            "updated_by": user,
        }

        async def apply_status(session):
            result = await self.hosts.update_one(
                {"_id": host_oid, "status": HOST_ACTIVE}, {"$set": release_fields}, session=session
            )
            if result.matched_count == 0:
                raise InvalidState(f"Host {host['ip_address']} is already released", "host", str(host_oid), HOST_RELEASED)
            return str(host_oid)

        async def undo_status():
            await self.hosts.update_one(
                {"_id": host_oid},
                {
                    "$set": {"status": HOST_ACTIVE, "updated_at": host.get("updated_at"), "updated_by": host.get("updated_by")},
                    "$unset": {"released_at": "", "released_by": "", "release_reason": ""},
                },
            )

        region_stub = {"_id": parse_object_id(host["region_id"]), "cidr": f"10.{host['x_octet']}.{host['y_octet']}.0/24"}
        meta = {"country": host["country"], "region_id": host["region_id"], "z_octet": host["z_octet"]}
        meta.update(metadata or {})
        entry = self.audit.build_entry(
            user=user,
            action_type="release",
            resource_type="host",
            resource_id=host_oid,
            resource_name=host["hostname"],
            reason=reason,
            changes=[{"field": "status", "old_value": HOST_ACTIVE, "new_value": HOST_RELEASED}],
            snapshot={**host, **release_fields},
            metadata=meta,
            ip_address=host["ip_address"],
            timestamp=now,
        )
        return [
            AtomicStep(f"release host {host_oid}", apply_status, undo_status),
            self._region_counter_step(region_stub, -1, require_active=False),
            self.audit.record_step(entry),
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        user: str,
        region_id: str,
        hostname: str,
        device_type: Optional[str] = None,
        owner: Optional[str] = None,
        purpose: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Allocate the lowest free host octet of an Active region.

        Raises:
            InvalidHostname, RegionNotFound, RegionInactive, CapacityExhausted,
            ConcurrencyConflict, PersistenceError
        """
        start_time = time.time()
        hostname = IPAMValidation.require_hostname(hostname)
        tags = IPAMValidation.require_tags(tags)
        region = await self._load_active_region(region_id)
        rid = str(region["_id"])

        async with self.locks.hold(region_scope(rid)):
            region = await self._load_active_region(rid)
            z_octet = await self.find_next_z(rid)
            if z_octet is None:
                self.logger.warning(
                    "Capacity exhausted: operation=find_next_z user=%s region=%s capacity=%d duration_ms=%.1f",
                    user,
                    region["cidr"],
                    HOST_SLOTS_PER_REGION,
                    (time.time() - start_time) * 1000,
                )
                raise CapacityExhausted(
                    f"No host addresses left in region {region['cidr']}",
                    "host",
                    HOST_SLOTS_PER_REGION,
                    region.get("allocated_hosts"),
                )

            now = datetime.now(timezone.utc)
            host = self._build_host_doc(user, region, z_octet, hostname, device_type, owner, purpose, tags, now)
            steps = [
                self._insert_hosts_step([host]),
                self._region_counter_step(region, 1, require_active=True),
                self.audit.record_step(self._create_audit_entry(user, host)),
            ]
            await commit_atomic(self.db_manager, steps, "allocate_host", "host", host["ip_address"])

        self.logger.info(
            "Allocation success: operation=allocate_host user=%s region=%s hostname=%s ip=%s duration_ms=%.1f result=success",
            user,
            region["cidr"],
            hostname,
            host["ip_address"],
            (time.time() - start_time) * 1000,
        )
        return serialize_host(host)

    async def _next_hostname_index(self, region_id: str, prefix: str) -> int:
        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        highest = 0
        for host in await self.active_hosts(region_id):
            match = pattern.match(host.get("hostname") or "")
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    async def batch_create(
        self,
        user: str,
        region_id: str,
        count: int,
        hostname_prefix: str,
        device_type: Optional[str] = None,
        owner: Optional[str] = None,
        purpose: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Allocate `count` hosts named ``{prefix}-NN`` in one atomic unit.

        Numbering continues after the highest existing suffix for the prefix among the
        region's Active hosts. Either every host is created or none is.
        """
        start_time = time.time()
        if not isinstance(count, int) or isinstance(count, bool) or not 1 <= count <= IPAMValidation.MAX_BATCH_SIZE:
            raise ValidationError(
                f"count must be between 1 and {IPAMValidation.MAX_BATCH_SIZE}", "count", count
            )
        hostname_prefix = IPAMValidation.require_hostname_prefix(hostname_prefix)
        tags = IPAMValidation.require_tags(tags)
        region = await self._load_active_region(region_id)
        rid = str(region["_id"])

        async with self.locks.hold(region_scope(rid)):
            region = await self._load_active_region(rid)
            free = await self.free_z_values(rid)
            if len(free) < count:
                self.logger.warning(
                    "Capacity exhausted: operation=batch_allocate_hosts user=%s region=%s requested=%d available=%d",
                    user,
                    region["cidr"],
                    count,
                    len(free),
                )
                raise CapacityExhausted(
                    f"Region {region['cidr']} has {len(free)} free addresses, {count} requested",
                    "host",
                    HOST_SLOTS_PER_REGION,
                    HOST_SLOTS_PER_REGION - len(free),
                )

            first = await self._next_hostname_index(rid, hostname_prefix)
            width = max(2, len(str(first + count - 1)))
            hostnames = [f"{hostname_prefix}-{str(n).zfill(width)}" for n in range(first, first + count)]
            for name in hostnames:
                IPAMValidation.require_hostname(name)

            now = datetime.now(timezone.utc)
            batch_id = str(ObjectId())
            hosts = [
                self._build_host_doc(user, region, z, name, device_type, owner, purpose, tags, now)
                for z, name in zip(free[:count], hostnames)
            ]
            steps = [self._insert_hosts_step(hosts), self._region_counter_step(region, count, require_active=True)]
            steps.extend(
                self.audit.record_step(self._create_audit_entry(user, host, {"batch_id": batch_id, "batch_size": count}))
                for host in hosts
            )
            await commit_atomic(self.db_manager, steps, "batch_allocate_hosts", "host", region["cidr"])

        self.logger.info(
            "Allocation success: operation=batch_allocate_hosts user=%s region=%s count=%d first=%s last=%s duration_ms=%.1f result=success",
            user,
            region["cidr"],
            count,
            hosts[0]["ip_address"],
            hosts[-1]["ip_address"],
            (time.time() - start_time) * 1000,
        )
        return {
            "region_id": rid,
            "batch_id": batch_id,
            "count": count,
            "hosts": [serialize_host(h) for h in hosts],
        }

    async def update(self, user: str, host_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        unknown = sorted(set(updates or {}) - set(UPDATABLE_HOST_FIELDS))
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(unknown)}", unknown[0], updates[unknown[0]])
        updates = dict(updates or {})
        if "hostname" in updates:
            IPAMValidation.require_hostname(updates["hostname"])
        if "tags" in updates:
            updates["tags"] = IPAMValidation.require_tags(updates["tags"])

        host = await self._load_host(host_id)
        async with self.locks.hold(region_scope(host["region_id"])):
            host = await self._load_host(host_id)
            if host["status"] != HOST_ACTIVE:
                raise InvalidState(f"Host {host['ip_address']} is released", "host", str(host["_id"]), host["status"])
            changes = field_changes(host, updates, UPDATABLE_HOST_FIELDS)
            if not changes:
                return serialize_host(host)

            now = datetime.now(timezone.utc)
            new_values = {c["field"]: c["new_value"] for c in changes}
            old_values = {c["field"]: c["old_value"] for c in changes}
            old_values.update({"updated_at": host.get("updated_at"), "updated_by": host.get("updated_by")})
            host_oid = host["_id"]

            async def apply(session):
                result = await self.hosts.update_one(
                    {"_id": host_oid, "status": HOST_ACTIVE},
                    {"$set": {**new_values, "updated_at": now, "updated_by": user}},
                    session=session,
                )
                if result.matched_count == 0:
                    raise InvalidState(f"Host {host['ip_address']} is released", "host", str(host_oid), HOST_RELEASED)

            async def undo():
                await self.hosts.update_one({"_id": host_oid}, {"$set": old_values})

            updated = {**host, **new_values, "updated_at": now, "updated_by": user}
            entry = self.audit.build_entry(
                user=user,
                action_type="update",
                resource_type="host",
                resource_id=host_oid,
                resource_name=updated["hostname"],
                changes=changes,
                snapshot=updated,
                metadata={"country": host["country"], "region_id": host["region_id"], "z_octet": host["z_octet"]},
                ip_address=host["ip_address"],
                timestamp=now,
            )
            await commit_atomic(
                self.db_manager,
                [AtomicStep(f"update host {host_oid}", apply, undo), self.audit.record_step(entry)],
                "update_host",
                "host",
                host["ip_address"],
            )
        self.logger.info(
            "Host updated: operation=update_host user=%s ip=%s fields=%s", user, host["ip_address"], list(new_values)
        )
        return serialize_host(updated)

    async def release(self, user: str, host_id: str, reason: str) -> Dict[str, Any]:
        """
        Release an Active host; its octet becomes reusable.

        Raises:
            ValidationError: blank reason
            HostNotFound, InvalidState, PersistenceError
        """
        start_time = time.time()
        reason = IPAMValidation.require_reason(reason)
        host = await self._load_host(host_id)
        if host["status"] != HOST_ACTIVE:
            raise InvalidState(f"Host {host['ip_address']} is already released", "host", str(host["_id"]), host["status"])

        async with self.locks.hold(region_scope(host["region_id"])):
            host = await self._load_host(host_id)
            if host["status"] != HOST_ACTIVE:
                raise InvalidState(
                    f"Host {host['ip_address']} is already released", "host", str(host["_id"]), host["status"]
                )
            steps = self.plan_release(user, host, reason)
            await commit_atomic(self.db_manager, steps, "release_host", "host", host["ip_address"])

        self.logger.info(
            "Release success: operation=release_host user=%s ip=%s reason=%s duration_ms=%.1f result=success",
            user,
            host["ip_address"],
            reason,
            (time.time() - start_time) * 1000,
        )
        return {
            "host_id": str(host["_id"]),
            "ip_address": host["ip_address"],
            "hostname": host["hostname"],
            "status": HOST_RELEASED,
            "reason": reason,
        }

    async def bulk_release(self, user: str, host_ids: List[str], reason: str) -> Dict[str, Any]:
        """
        Release each host independently; failures do not roll back successes.

        Returns:
            Dict with success flag, total_requested, total_released, total_failed,
            released_hosts and failed_hosts (host_id, error_code, error).
        """
        if not isinstance(host_ids, list) or not 1 <= len(host_ids) <= IPAMValidation.MAX_BULK_RELEASE:
            raise ValidationError(
                f"host_ids must contain between 1 and {IPAMValidation.MAX_BULK_RELEASE} ids",
                "host_ids",
                len(host_ids) if isinstance(host_ids, list) else host_ids,
            )
        reason = IPAMValidation.require_reason(reason)

        released: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        for host_id in host_ids:
            try:
                released.append(await self.release(user, host_id, reason))
            except IPAMError as e:
                self.logger.warning(
                    "Bulk release item failed: operation=bulk_release host_id=%s error_code=%s error=%s",
                    host_id,
                    e.error_code,
                    e,
                )
                failed.append({"host_id": str(host_id), "error_code": e.error_code, "error": str(e)})

        self.logger.info(
            "Bulk release completed: operation=bulk_release user=%s requested=%d released=%d failed=%d",
            user,
            len(host_ids),
            len(released),
            len(failed),
        )
        return {
            "success": not failed,
            "total_requested": len(host_ids),
            "total_released": len(released),
            "total_failed": len(failed),
            "released_hosts": released,
            "failed_hosts": failed,
            "reason": reason,
        }
