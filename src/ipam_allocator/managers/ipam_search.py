"""
Unified search across regions and hosts.

Text filters (``ip_address``, ``hostname``, ``region``, ``query``) are case-insensitive
partial matches; ``country``, ``continent``, ``status`` and ``owner`` are exact. A filter
that has no meaning for one resource type (a hostname for a region) excludes that type
from the results. Results from both collections are merged newest first.
"""

import re
import time
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from ipam_allocator.database import DatabaseManager, db_manager
from ipam_allocator.database.ipam_indexes import HOSTS_COLLECTION, REGIONS_COLLECTION
from ipam_allocator.managers.address_space import AddressSpace
from ipam_allocator.managers.host_allocator import HOST_RELEASED, serialize_host
from ipam_allocator.managers.ipam_exceptions import PersistenceError, ValidationError
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.managers.region_allocator import REGION_ACTIVE, REGION_RETIRED, serialize_region
from ipam_allocator.utils.ipam_atomic import parse_object_id
from ipam_allocator.utils.ipam_validation import IPAMValidation, build_pagination

logger = get_logger(prefix="[AllocationSearch]")

SEARCH_FILTERS = ("ip_address", "hostname", "country", "continent", "region", "status", "owner", "query")
SEARCH_RESOURCE_TYPES = ("region", "host")
# Regions and hosts share "Active".
SEARCH_STATUSES = (REGION_ACTIVE, REGION_RETIRED, HOST_RELEASED)

REGION_QUERY_FIELDS = ("region_name", "cidr", "country", "owner", "description")
HOST_QUERY_FIELDS = ("hostname", "ip_address", "owner", "purpose", "device_type")

NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


def _contains(value: str) -> Dict[str, str]:
    return {"$regex": re.escape(value), "$options": "i"}


def _region_result(doc: Dict[str, Any]) -> Dict[str, Any]:
    region = serialize_region(doc)
    return {
        "type": "region",
        "id": region["region_id"],
        "name": region["region_name"],
        "ip_address": None,
        "cidr": region["cidr"],
        "status": region["status"],
        "continent": region["continent"],
        "country": region["country"],
        "region": region["region_name"],
        "owner": region.get("owner"),
        "created_at": region.get("created_at"),
        "region_data": region,
    }


def _host_result(doc: Dict[str, Any], region_names: Dict[str, str]) -> Dict[str, Any]:
    host = serialize_host(doc)
    return {
        "type": "host",
        "id": host["host_id"],
        "name": host["hostname"],
        "ip_address": host["ip_address"],
        "cidr": f"10.{host['x_octet']}.{host['y_octet']}.0/24",
        "status": host["status"],
        "continent": host.get("continent"),
        "country": host["country"],
        "region": region_names.get(host["region_id"]),
        "owner": host.get("owner"),
        "created_at": host.get("created_at"),
        "host": host,
    }


class AllocationSearch:
    """Read-only search over ``ipam_regions`` and ``ipam_hosts``."""

    def __init__(
        self, db_manager_instance: Optional[DatabaseManager] = None, address_space: Optional[AddressSpace] = None
    ) -> None:
        self.db_manager = db_manager_instance or db_manager
        self.address_space = address_space or AddressSpace()
        self.logger = logger

    def _normalize(self, filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
        normalized: Dict[str, str] = {}
        for key, value in (filters or {}).items():
            if key not in SEARCH_FILTERS:
                raise ValidationError(f"Unknown search filter '{key}'", key, value)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValidationError(f"Search filter '{key}' must be a string", key, value)
            if value.strip():
                normalized[key] = value.strip()
        if "country" in normalized:
            normalized["country"] = self.address_space.get_country(normalized["country"]).name
        if "status" in normalized and normalized["status"] not in SEARCH_STATUSES:
            raise ValidationError(
                f"status must be one of {', '.join(SEARCH_STATUSES)}",
                "status",
                normalized["status"],
            )
        return normalized

    async def _region_ids_named(self, fragment: str) -> List[str]:
        regions = self.db_manager.get_collection(REGIONS_COLLECTION)
        docs = await regions.find({"region_name": _contains(fragment)}, {"_id": 1}).to_list(length=None)
        return [str(doc["_id"]) for doc in docs]

    async def _build_queries(self, filters: Dict[str, str], resource_type: Optional[str]) -> List[Tuple[str, Dict]]:
        plans: List[Tuple[str, Dict[str, Any]]] = []
        exact = {key: filters[key] for key in ("country", "continent", "status", "owner") if key in filters}

        if resource_type in (None, "region") and "hostname" not in filters:
            query: Dict[str, Any] = dict(exact)
            if "region" in filters:
                query["region_name"] = _contains(filters["region"])
            if "ip_address" in filters:
                query["cidr"] = _contains(filters["ip_address"])
            if "query" in filters:
                query["$or"] = [{field: _contains(filters["query"])} for field in REGION_QUERY_FIELDS]
            plans.append((REGIONS_COLLECTION, query))

        if resource_type in (None, "host"):
            query = dict(exact)
            if "hostname" in filters:
                query["hostname"] = _contains(filters["hostname"])
            if "ip_address" in filters:
                query["ip_address"] = _contains(filters["ip_address"])
            if "region" in filters:
                query["region_id"] = {"$in": await self._region_ids_named(filters["region"])}
            if "query" in filters:
                query["$or"] = [{field: _contains(filters["query"])} for field in HOST_QUERY_FIELDS]
            plans.append((HOSTS_COLLECTION, query))
        return plans

    async def _region_names(self, host_docs: List[Dict[str, Any]]) -> Dict[str, str]:
        oids = [oid for oid in {parse_object_id(doc["region_id"]) for doc in host_docs} if oid is not None]
        if not oids:
            return {}
        regions = self.db_manager.get_collection(REGIONS_COLLECTION)
        docs = await regions.find({"_id": {"$in": oids}}, {"region_name": 1}).to_list(length=None)
        return {str(doc["_id"]): doc["region_name"] for doc in docs}

    async def search(
        self,
        filters: Optional[Dict[str, Any]] = None,
        resource_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """
        Search regions and hosts.

        Args:
            filters: any of ip_address, hostname, country, continent, region, status, owner, query
            resource_type: restrict results to "region" or "host"
            page: 1-based page number
            page_size: 1-100 results per page

        Returns:
            Dict with ``results`` (typed search results), ``total_count``,
            ``filters_applied`` and ``pagination``

        Raises:
            ValidationError: unknown filter, bad status, bad resource_type or pagination
            CountryNotFound: the country filter names no known country
            PersistenceError: storage failure
        """
        IPAMValidation.require_page(page, page_size)
        if resource_type is not None and resource_type not in SEARCH_RESOURCE_TYPES:
            raise ValidationError(
                f"resource_type must be one of {', '.join(SEARCH_RESOURCE_TYPES)}", "resource_type", resource_type
            )
        applied = self._normalize(filters)
        start_time = time.time()

        # Each collection contributes at most page * page_size candidates to the merged window.
        window = page * page_size
        total_count = 0
        candidates: List[Tuple[str, Dict[str, Any]]] = []
        try:
            for collection_name, query in await self._build_queries(applied, resource_type):
                collection = self.db_manager.get_collection(collection_name)
                query_start = self.db_manager.log_query_start(collection_name, "search", query)
                total_count += await collection.count_documents(query)
                docs = await collection.find(query).sort(NEWEST_FIRST).limit(window).to_list(length=window)
                self.db_manager.log_query_success(collection_name, "search", query_start, len(docs))
                candidates.extend((collection_name, doc) for doc in docs)

            candidates.sort(key=lambda item: (item[1].get("created_at"), item[1]["_id"]), reverse=True)
            page_docs = candidates[(page - 1) * page_size : window]
            region_names = await self._region_names([doc for name, doc in page_docs if name == HOSTS_COLLECTION])
        except PyMongoError as e:
            self.logger.error("Search failed: filters=%s error=%s", applied, e, exc_info=True)
            raise PersistenceError("Failed to search allocations", "search", e) from e

        results = [
            _region_result(doc) if name == REGIONS_COLLECTION else _host_result(doc, region_names)
            for name, doc in page_docs
        ]
        self.logger.info(
            "operation=search filters=%s resource_type=%s total=%d returned=%d duration=%.3fs",
            applied,
            resource_type,
            total_count,
            len(results),
            time.time() - start_time,
        )
        return {
            "results": results,
            "total_count": total_count,
            "filters_applied": applied,
            "pagination": build_pagination(page, page_size, total_count),
        }
