"""
Read-only utilization aggregates and exhaustion forecasts.

Nothing here takes the allocation locks, so results may trail in-flight mutations.
Aggregates are cached in Redis for IPAM_UTILIZATION_CACHE_TTL seconds; a failing cache
only costs a recomputation.
"""

from datetime import datetime, timedelta, timezone
import statistics
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from ipam_allocator.config import settings
from ipam_allocator.database import DatabaseManager, db_manager
from ipam_allocator.database.ipam_indexes import REGIONS_COLLECTION
from ipam_allocator.managers.address_space import HOST_SLOTS_PER_REGION, Y_SLOTS_PER_X, AddressSpace
from ipam_allocator.managers.ipam_audit_manager import AuditTrail
from ipam_allocator.managers.ipam_exceptions import PersistenceError, RegionNotFound, ValidationError
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.managers.redis_manager import RedisManager, redis_manager
from ipam_allocator.managers.region_allocator import region_utilization_view
from ipam_allocator.utils.ipam_atomic import parse_object_id
from ipam_allocator.utils.ipam_validation import compute_utilization

logger = get_logger(prefix="[UtilizationTracker]")

FORECAST_RESOURCE_TYPES = ("global", "country", "region")
SEVERITY_THRESHOLDS = (("critical", 30), ("high", 90), ("medium", 180))
NET_EFFECT = {"create": 1, "release": -1, "retire": -1}


def classify_severity(days: Optional[float]) -> str:
    if days is None:
        return "low"
    for severity, limit in SEVERITY_THRESHOLDS:
        if days < limit:
            return severity
    return "low"


def daily_growth_rate(entries: List[Dict[str, Any]], window_days: int, now: datetime) -> float:
    """
    Slope of the least-squares line through cumulative daily net allocations.

    Day 0 is the oldest day of the window and day ``window_days - 1`` is today.
    """
    first_day = (now - timedelta(days=window_days - 1)).date()
    daily = [0] * window_days
    for entry in entries:
        timestamp = entry["timestamp"]
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        index = (timestamp.astimezone(timezone.utc).date() - first_day).days
        if 0 <= index < window_days:
            daily[index] += NET_EFFECT.get(entry["action_type"], 0)

    cumulative = []
    total = 0
    for net in daily:
        total += net
        cumulative.append(total)
    slope, _ = statistics.linear_regression(range(window_days), cumulative)
    return slope


class UtilizationTracker:
    """Capacity and utilization views over regions and hosts."""

    def __init__(
        self,
        db_manager_instance: Optional[DatabaseManager] = None,
        address_space: Optional[AddressSpace] = None,
        redis_manager_instance: Optional[RedisManager] = None,
        audit_trail: Optional[AuditTrail] = None,
    ) -> None:
        self.db_manager = db_manager_instance or db_manager
        self.address_space = address_space or AddressSpace()
        self.redis_manager = redis_manager_instance or redis_manager
        self.audit = audit_trail or AuditTrail(self.db_manager)
        self.cache_ttl = settings.IPAM_UTILIZATION_CACHE_TTL
        self.window_days = settings.IPAM_FORECAST_WINDOW_DAYS
        self.logger = logger

    @property
    def regions(self):
        return self.db_manager.get_collection(REGIONS_COLLECTION)

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.cache_ttl <= 0:
            return None
        try:
            cached = await self.redis_manager.get(key)
        except (RedisError, OSError) as e:
            self.logger.warning("Cache error: operation=cache_get key=%s error=%s", key, e)
            return None
        if isinstance(cached, dict):
            self.logger.debug("Cache hit: key=%s", key)
            return cached
        return None

    async def _cache_set(self, key: str, value: Dict[str, Any]) -> None:
        if self.cache_ttl <= 0:
            return
        try:
            await self.redis_manager.set_with_expiry(key, value, self.cache_ttl)
        except (RedisError, OSError) as e:
            self.logger.warning("Cache error: operation=cache_set key=%s error=%s", key, e)

    async def _active_regions(self, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        full_query = {"status": "Active", **(query or {})}
        start_time = self.db_manager.log_query_start(REGIONS_COLLECTION, "find", full_query)
        try:
            docs = await self.regions.find(
                full_query, {"country": 1, "continent": 1, "x_octet": 1, "y_octet": 1, "allocated_hosts": 1}
            ).to_list(length=None)
        except PyMongoError as e:
            self.db_manager.log_query_error(REGIONS_COLLECTION, "find", start_time, e, full_query)
            raise PersistenceError("Failed to read region utilization", "utilization", e) from e
        self.db_manager.log_query_success(REGIONS_COLLECTION, "find", start_time, len(docs))
        return docs

    # ------------------------------------------------------------------
    # Utilization
    # ------------------------------------------------------------------

    async def region_utilization(self, region_id: str) -> Dict[str, Any]:
        oid = parse_object_id(region_id)
        region = await self.regions.find_one({"_id": oid}) if oid else None
        if region is None:
            raise RegionNotFound(f"Region {region_id} not found", str(region_id))
        return region_utilization_view(region)

    async def country_utilization(self, country_name: str) -> Dict[str, Any]:
        country = self.address_space.get_country(country_name)
        cache_key = f"ipam:utilization:country:{country.name}"
        cached = await self._cache_get(cache_key)
        if cached:
            return cached

        regions = await self._active_regions({"country": country.name})
        per_x: Dict[int, int] = {}
        for region in regions:
            per_x[region["x_octet"]] = per_x.get(region["x_octet"], 0) + 1
        total_capacity = 0 if country.is_reserved else country.total_region_slots
        allocated = len(regions)
        result = {
            "country": country.name,
            "continent": country.continent,
            "x_start": country.x_start,
            "x_end": country.x_end,
            "is_reserved": country.is_reserved,
            "allocated_regions": allocated,
            "total_capacity": total_capacity,
            "available": max(0, total_capacity - allocated),
            "percentage": compute_utilization(allocated, total_capacity),
            "allocated_hosts": sum(r.get("allocated_hosts", 0) for r in regions),
            "x_breakdown": [
                {
                    "x_octet": x,
                    "allocated": per_x.get(x, 0),
                    "available": Y_SLOTS_PER_X - per_x.get(x, 0),
                    "percentage": compute_utilization(per_x.get(x, 0), Y_SLOTS_PER_X),
                }
                for x in range(country.x_start, country.x_end + 1)
            ],
        }
        await self._cache_set(cache_key, result)
        return result

    async def global_capacity_snapshot(self) -> Dict[str, Any]:
        """
        Address-space totals. Reserved countries are excluded from country and capacity
        counts; host capacity is 254 per Active region.
        """
        cache_key = "ipam:utilization:global"
        cached = await self._cache_get(cache_key)
        if cached:
            return cached

        countries = self.address_space.list_countries(include_reserved=False)
        regions = await self._active_regions()
        total_regions_capacity = sum(c.total_region_slots for c in countries)
        allocated_regions = len(regions)
        allocated_hosts = sum(r.get("allocated_hosts", 0) for r in regions)
        total_hosts_capacity = allocated_regions * HOST_SLOTS_PER_REGION
        result = {
            "total_countries": len(countries),
            "allocated_countries": len({r["country"] for r in regions}),
            "total_regions_capacity": total_regions_capacity,
            "allocated_regions": allocated_regions,
            "total_hosts_capacity": total_hosts_capacity,
            "allocated_hosts": allocated_hosts,
            "region_utilization_percent": compute_utilization(allocated_regions, total_regions_capacity),
            "host_utilization_percent": compute_utilization(allocated_hosts, total_hosts_capacity),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._cache_set(cache_key, result)
        return result

    async def continent_capacity(self) -> List[Dict[str, Any]]:
        regions = await self._active_regions()
        result = []
        for continent in self.address_space.list_continents():
            countries = self.address_space.list_countries(continent=continent, include_reserved=False)
            if not countries:
                continue
            names = {c.name for c in countries}
            in_continent = [r for r in regions if r["country"] in names]
            capacity = sum(c.total_region_slots for c in countries)
            result.append(
                {
                    "continent": continent,
                    "countries": len(countries),
                    "total_capacity": capacity,
                    "allocated_regions": len(in_continent),
                    "allocated_hosts": sum(r.get("allocated_hosts", 0) for r in in_continent),
                    "percentage": compute_utilization(len(in_continent), capacity),
                }
            )
        return result

    async def top_countries(self, limit: int = 10) -> List[Dict[str, Any]]:
        if not isinstance(limit, int) or not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100", "limit", limit)
        regions = await self._active_regions()
        counts: Dict[str, Dict[str, int]] = {}
        for region in regions:
            stats = counts.setdefault(region["country"], {"regions": 0, "hosts": 0})
            stats["regions"] += 1
            stats["hosts"] += region.get("allocated_hosts", 0)

        ranked = []
        for name, stats in counts.items():
            country = self.address_space.get_country(name)
            ranked.append(
                {
                    "country": country.name,
                    "continent": country.continent,
                    "allocated_regions": stats["regions"],
                    "allocated_hosts": stats["hosts"],
                    "percentage": compute_utilization(stats["regions"], country.total_region_slots),
                }
            )
        ranked.sort(key=lambda item: (-item["allocated_regions"], -item["allocated_hosts"], item["country"]))
        return ranked[:limit]

    # ------------------------------------------------------------------
    # Forecast
    # ------------------------------------------------------------------

    async def forecast(self, resource_type: str, resource_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Estimate days until the resource runs out of slots.

        Region slots are forecast for ``global`` and ``country``; host slots for ``region``.
        The growth rate is the least-squares slope of cumulative daily net allocations
        (create minus release/retire) over the trailing window.
        """
        if resource_type not in FORECAST_RESOURCE_TYPES:
            raise ValidationError(
                f"resource_type must be one of {', '.join(FORECAST_RESOURCE_TYPES)}", "resource_type", resource_type
            )
        if resource_type != "global" and not resource_id:
            raise ValidationError(f"resource_id is required for {resource_type} forecasts", "resource_id", resource_id)

        if resource_type == "global":
            snapshot = await self.global_capacity_snapshot()
            capacity, allocated = snapshot["total_regions_capacity"], snapshot["allocated_regions"]
            audit_query: Dict[str, Any] = {"resource_type": "region"}
            resource_id = None
        elif resource_type == "country":
            usage = await self.country_utilization(resource_id)
            capacity, allocated = usage["total_capacity"], usage["allocated_regions"]
            resource_id = usage["country"]
            audit_query = {"resource_type": "region", "metadata.country": resource_id}
        else:
            usage = await self.region_utilization(resource_id)
            capacity, allocated = usage["total"], usage["allocated"]
            resource_id = usage["region_id"]
            audit_query = {"resource_type": "host", "metadata.region_id": resource_id}

        cache_key = f"ipam:forecast:{resource_type}:{resource_id or 'all'}"
        cached = await self._cache_get(cache_key)
        if cached:
            return cached

        now = datetime.now(timezone.utc)
        since = datetime.combine((now - timedelta(days=self.window_days - 1)).date(), datetime.min.time(), timezone.utc)
        audit_query["action_type"] = {"$in": list(NET_EFFECT)}
        entries = await self.audit.entries_since(since, audit_query)
        rate = daily_growth_rate(entries, self.window_days, now)
        remaining = max(0, capacity - allocated)

        days: Optional[float]
        if capacity == 0:
            # reserved block, nothing allocatable
            days = None
            severity = "low"
        elif remaining == 0:
            days = 0.0
            severity = "critical"
        elif rate <= 0:
            days = None
            severity = "low"
        else:
            days = round(remaining / rate, 1)
            severity = classify_severity(days)

        if capacity == 0:
            recommendation = "Reserved address block. No allocatable capacity to forecast."
        elif days is None:
            recommendation = "No net allocation growth detected. Capacity is stable."
        elif severity == "critical":
            recommendation = f"Critical: capacity will be exhausted in approximately {days:g} days. Immediate action required."
        elif severity in ("high", "medium"):
            recommendation = f"Warning: capacity will be exhausted in approximately {days:g} days. Plan expansion."
        else:
            recommendation = f"Capacity is healthy. Estimated {days:g} days until exhaustion."

        result = {
            "resource_type": resource_type,
            "resource_id": resource_id,
            "capacity": capacity,
            "allocated": allocated,
            "remaining": remaining,
            "utilization_percent": compute_utilization(allocated, capacity),
            "daily_growth_rate": round(rate, 4),
            "estimated_exhaustion_days": days,
            "estimated_exhaustion_date": (now + timedelta(days=days)).isoformat() if days is not None else None,
            "severity": severity,
            "recommendation": recommendation,
            "data_points": len(entries),
            "window_days": self.window_days,
        }
        self.logger.info(
            "Forecast computed: operation=forecast resource_type=%s resource_id=%s rate=%.4f days=%s severity=%s",
            resource_type,
            resource_id,
            rate,
            days,
            severity,
        )
        await self._cache_set(cache_key, result)
        return result
