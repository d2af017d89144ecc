"""
IPAM manager: composition root for the hierarchical 10.0.0.0/8 allocator.

The manager wires the address space, the region and host allocators, the utilization
tracker and the audit trail around one shared scoped-lock registry, so every allocation
made through the same manager is serialized per country and per region. Cross-process
safety comes from the partial unique indexes in ``database.ipam_indexes``.

Dependencies are injected for testability and fall back to the module-level singletons.
"""

from typing import Any, Dict, List, Optional

from ipam_allocator.database import DatabaseManager, db_manager
from ipam_allocator.managers.address_space import AddressSpace
from ipam_allocator.managers.host_allocator import HOST_ACTIVE, HostAllocator, serialize_host
from ipam_allocator.managers.ipam_audit_manager import AuditTrail
from ipam_allocator.managers.ipam_comments import CommentLog
from ipam_allocator.managers.ipam_exceptions import CountryNotFound
from ipam_allocator.managers.ipam_search import AllocationSearch
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.managers.redis_manager import RedisManager, redis_manager
from ipam_allocator.managers.region_allocator import RegionAllocator
from ipam_allocator.managers.utilization_tracker import UtilizationTracker
from ipam_allocator.utils.ipam_validation import IPAMValidation
from ipam_allocator.utils.scoped_locks import ScopedLockRegistry

logger = get_logger(prefix="[IPAMManager]")


class IPAMManager:
    """Entry point for allocation, retirement, utilization and audit operations."""

    def __init__(
        self,
        db_manager_instance: Optional[DatabaseManager] = None,
        redis_manager_instance: Optional[RedisManager] = None,
        address_space: Optional[AddressSpace] = None,
        reuse_retired_region_slots: Optional[bool] = None,
        reuse_released_host_slots: Optional[bool] = None,
    ) -> None:
        self.db_manager = db_manager_instance or db_manager
        self.redis_manager = redis_manager_instance or redis_manager
        self.address_space = address_space or AddressSpace()
        self.locks = ScopedLockRegistry()
        self.audit = AuditTrail(self.db_manager)
        self.hosts = HostAllocator(
            self.db_manager, self.audit, self.locks, reuse_released_slots=reuse_released_host_slots
        )
        self.regions = RegionAllocator(
            self.db_manager,
            self.address_space,
            self.audit,
            self.locks,
            self.hosts,
            reuse_retired_slots=reuse_retired_region_slots,
        )
        self.utilization = UtilizationTracker(self.db_manager, self.address_space, self.redis_manager, self.audit)
        self.allocation_search = AllocationSearch(self.db_manager, self.address_space)
        self.comments = CommentLog(self.db_manager)
        self.logger = logger
        self.logger.info(
            "IPAMManager initialized: countries=%d reuse_retired_region_slots=%s reuse_released_host_slots=%s",
            len(self.address_space.list_countries()),
            self.regions.reuse_retired_slots,
            self.hosts.reuse_released_slots,
        )

    # --- address space ---

    def list_countries(self, continent: Optional[str] = None) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.address_space.list_countries(continent=continent)]

    def get_country(self, name: str) -> Dict[str, Any]:
        return self.address_space.get_country(name).to_dict()

    # --- regions ---

    async def create_region(self, user: str, country: str, region_name: str, **kwargs) -> Dict[str, Any]:
        return await self.regions.create(user, country, region_name, **kwargs)

    async def update_region(self, user: str, region_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self.regions.update(user, region_id, updates)

    async def retire_region(self, user: str, region_id: str, reason: str, cascade: bool = False) -> Dict[str, Any]:
        return await self.regions.retire(user, region_id, reason, cascade=cascade)

    async def next_available_region(self, country: str) -> Dict[str, Any]:
        return await self.regions.next_available(country)

    # --- hosts ---

    async def create_host(self, user: str, region_id: str, hostname: str, **kwargs) -> Dict[str, Any]:
        return await self.hosts.create(user, region_id, hostname, **kwargs)

    async def batch_create_hosts(
        self, user: str, region_id: str, count: int, hostname_prefix: str, **kwargs
    ) -> Dict[str, Any]:
        return await self.hosts.batch_create(user, region_id, count, hostname_prefix, **kwargs)

    async def update_host(self, user: str, host_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self.hosts.update(user, host_id, updates)

    async def release_host(self, user: str, host_id: str, reason: str) -> Dict[str, Any]:
        return await self.hosts.release(user, host_id, reason)

    async def bulk_release_hosts(self, user: str, host_ids: List[str], reason: str) -> Dict[str, Any]:
        return await self.hosts.bulk_release(user, host_ids, reason)

    async def next_available_host(self, region_id: str) -> Dict[str, Any]:
        return await self.hosts.next_available(region_id)

    # --- comments ---

    async def add_region_comment(self, user: str, region_id: str, comment_text: str) -> Dict[str, Any]:
        region = await self.regions.get(region_id)
        return await self.comments.add(user, "region", region["region_id"], comment_text)

    async def list_region_comments(self, region_id: str) -> List[Dict[str, Any]]:
        region = await self.regions.get(region_id)
        return await self.comments.list("region", region["region_id"])

    async def add_host_comment(self, user: str, host_id: str, comment_text: str) -> Dict[str, Any]:
        host = await self.hosts.get(host_id)
        return await self.comments.add(user, "host", host["host_id"], comment_text)

    async def list_host_comments(self, host_id: str) -> List[Dict[str, Any]]:
        host = await self.hosts.get(host_id)
        return await self.comments.list("host", host["host_id"])

    # --- lookups ---

    async def search(
        self,
        filters: Optional[Dict[str, Any]] = None,
        resource_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        return await self.allocation_search.search(filters, resource_type=resource_type, page=page, page_size=page_size)

    async def get_host_by_ip(self, ip_address: str) -> Dict[str, Any]:
        return await self.hosts.get_by_ip(ip_address)

    async def interpret_ip_address(self, ip_address: str) -> Dict[str, Any]:
        """
        Walk an address down the hierarchy.

        Returns the continent and country owning X, the Active region at X.Y (if any)
        and the Active host at X.Y.Z (if any). Invalid addresses raise ValidationError.
        """
        x, y, z = IPAMValidation.parse_ip(ip_address)
        result: Dict[str, Any] = {
            "ip_address": f"10.{x}.{y}.{z}",
            "x_octet": x,
            "y_octet": y,
            "z_octet": z,
            "continent": None,
            "country": None,
            "is_reserved": False,
            "region": None,
            "host": None,
            "hierarchy": "Global > 10.0.0.0/8",
        }
        try:
            country = self.address_space.resolve_country(x)
        except CountryNotFound:
            return result
        result.update(
            continent=country.continent,
            country=country.name,
            is_reserved=country.is_reserved,
            hierarchy=f"Global > {country.continent} > {country.name}",
        )

        region = await self.regions.get_active_by_xy(x, y)
        if region is None:
            return result
        result["region"] = region
        result["hierarchy"] += f" > {region['region_name']} ({region['cidr']})"

        host = await self.hosts.hosts.find_one(
            {"region_id": region["region_id"], "z_octet": z, "status": HOST_ACTIVE}
        )
        if host is not None:
            result["host"] = serialize_host(host)
            result["hierarchy"] += f" > {host['hostname']}"
        return result

    async def health_check(self) -> Dict[str, Any]:
        mongodb_ok = await self.db_manager.health_check()
        redis_ok = await self.redis_manager.health_check()
        return {
            "status": "healthy" if mongodb_ok else "unhealthy",
            "mongodb": mongodb_ok,
            "redis": redis_ok,
            "transactions_supported": bool(self.db_manager.transactions_supported),
            "countries": len(self.address_space.list_countries()),
        }


ipam_manager: Optional[IPAMManager] = None


def get_ipam_manager() -> IPAMManager:
    """Lazily created process-wide manager."""
    global ipam_manager
    if ipam_manager is None:
        ipam_manager = IPAMManager()
    return ipam_manager
