"""
IPAM REST API Routes.

Thin HTTP surface over IPAMManager for the hierarchical 10.X.Y.Z allocator.

Endpoints are organized into logical groups:
- Country endpoints
- Region management endpoints
- Host management endpoints
- Comment endpoints
- Search endpoint
- IP interpretation endpoint
- Utilization, analytics and forecast endpoints
- Audit history endpoints
- Health check endpoint
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ipam_allocator.managers.ipam_exceptions import IPAMError
from ipam_allocator.managers.ipam_manager import IPAMManager
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.models.ipam_models import (
    BatchHostCreateRequest,
    BulkReleaseRequest,
    HostCreateRequest,
    HostUpdateRequest,
    IPAMHTTPError,
    PaginatedResponse,
    RegionCreateRequest,
    RegionUpdateRequest,
)
from ipam_allocator.routes.ipam.dependencies import get_actor, get_ipam_manager
from ipam_allocator.routes.ipam.utils import to_http_exception

logger = get_logger(prefix="[IPAM Routes]")

router = APIRouter(prefix="/ipam", tags=["IPAM"])

ERROR_RESPONSES = {
    400: {"model": IPAMHTTPError, "description": "Validation error"},
    404: {"model": IPAMHTTPError, "description": "Country, region or host not found"},
    409: {"model": IPAMHTTPError, "description": "Capacity exhausted, invalid state or concurrent allocation"},
    503: {"model": IPAMHTTPError, "description": "Storage unavailable; nothing was changed"},
}


# ============================================================================
# Health Check Endpoint
# ============================================================================


@router.get("/health", summary="IPAM health check")
async def health(manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    result = await manager.health_check()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


# ============================================================================
# Country Endpoints
# ============================================================================


@router.get("/countries", summary="List countries and their X octet ranges", tags=["IPAM - Countries"])
async def list_countries(
    continent: Optional[str] = Query(None, description="Filter by continent"),
    manager: IPAMManager = Depends(get_ipam_manager),
) -> List[Dict[str, Any]]:
    return manager.list_countries(continent=continent)


@router.get("/countries/{country}", summary="Get country details", responses=ERROR_RESPONSES, tags=["IPAM - Countries"])
async def get_country(country: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return manager.get_country(country)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get(
    "/countries/{country}/utilization",
    summary="Region utilization of a country",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Countries"],
)
async def get_country_utilization(country: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.utilization.country_utilization(country)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get(
    "/countries/{country}/next-available",
    summary="Preview the next /24 that would be allocated",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Countries"],
)
async def preview_next_region(country: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.next_available_region(country)
    except IPAMError as e:
        raise to_http_exception(e)


# ============================================================================
# Region Management Endpoints
# ============================================================================


@router.post(
    "/regions",
    status_code=status.HTTP_201_CREATED,
    summary="Allocate a /24 region",
    description="""
    Allocate the next free 10.X.Y.0/24 block in the requested country.

    X is scanned ascending through the country's range and Y ascending within each X;
    the first unoccupied pair is taken.
    """,
    responses=ERROR_RESPONSES,
    tags=["IPAM - Regions"],
)
async def create_region(
    payload: RegionCreateRequest,
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.create_region(
            actor,
            payload.country,
            payload.region_name,
            description=payload.description,
            owner=payload.owner,
            tags=payload.tags,
        )
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/regions", response_model=PaginatedResponse, summary="List regions", tags=["IPAM - Regions"])
async def list_regions(
    country: Optional[str] = Query(None),
    continent: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    owner: Optional[str] = Query(None),
    page: int = Query(1),
    page_size: int = Query(50),
    manager: IPAMManager = Depends(get_ipam_manager),
) -> Dict[str, Any]:
    filters = {"country": country, "continent": continent, "status": status_filter, "owner": owner}
    try:
        return await manager.regions.list(filters, page, page_size)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/regions/{region_id}", summary="Get region", responses=ERROR_RESPONSES, tags=["IPAM - Regions"])
async def get_region(region_id: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.regions.get(region_id)
    except IPAMError as e:
        raise to_http_exception(e)


@router.patch("/regions/{region_id}", summary="Update region metadata", responses=ERROR_RESPONSES, tags=["IPAM - Regions"])
async def update_region(
    region_id: str,
    payload: RegionUpdateRequest,
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.update_region(actor, region_id, payload.model_dump(exclude_unset=True))
    except IPAMError as e:
        raise to_http_exception(e)


@router.delete(
    "/regions/{region_id}",
    summary="Retire a region",
    description="Retire a region. With cascade=true all of its active hosts are released in the same atomic unit.",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Regions"],
)
async def retire_region(
    region_id: str,
    reason: str = Query("", description="Mandatory reason recorded in the audit trail"),
    cascade: bool = Query(False),
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.retire_region(actor, region_id, reason, cascade=cascade)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get(
    "/regions/{region_id}/utilization", summary="Host utilization of a region", responses=ERROR_RESPONSES, tags=["IPAM - Regions"]
)
async def get_region_utilization(region_id: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.regions.utilization(region_id)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get(
    "/regions/{region_id}/next-available",
    summary="Preview the next host address that would be allocated",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Regions"],
)
async def preview_next_host(region_id: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.next_available_host(region_id)
    except IPAMError as e:
        raise to_http_exception(e)


# ============================================================================
# Host Management Endpoints
# ============================================================================


@router.post(
    "/hosts",
    status_code=status.HTTP_201_CREATED,
    summary="Allocate a host address",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Hosts"],
)
async def create_host(
    payload: HostCreateRequest,
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.create_host(
            actor,
            payload.region_id,
            payload.hostname,
            device_type=payload.device_type,
            owner=payload.owner,
            purpose=payload.purpose,
            tags=payload.tags,
        )
    except IPAMError as e:
        raise to_http_exception(e)


@router.post(
    "/hosts/batch",
    status_code=status.HTTP_201_CREATED,
    summary="Allocate up to 100 hosts atomically",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Hosts"],
)
async def batch_create_hosts(
    payload: BatchHostCreateRequest,
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.batch_create_hosts(
            actor,
            payload.region_id,
            payload.count,
            payload.hostname_prefix,
            device_type=payload.device_type,
            owner=payload.owner,
            purpose=payload.purpose,
            tags=payload.tags,
        )
    except IPAMError as e:
        raise to_http_exception(e)


@router.post(
    "/hosts/bulk-release",
    summary="Release several hosts; each release succeeds or fails on its own",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Hosts"],
)
async def bulk_release_hosts(
    payload: BulkReleaseRequest,
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.bulk_release_hosts(actor, payload.host_ids, payload.reason)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/hosts", response_model=PaginatedResponse, summary="List hosts", tags=["IPAM - Hosts"])
async def list_hosts(
    region_id: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    owner: Optional[str] = Query(None),
    device_type: Optional[str] = Query(None),
    hostname: Optional[str] = Query(None),
    page: int = Query(1),
    page_size: int = Query(50),
    manager: IPAMManager = Depends(get_ipam_manager),
) -> Dict[str, Any]:
    filters = {
        "region_id": region_id,
        "status": status_filter,
        "owner": owner,
        "device_type": device_type,
        "hostname": hostname,
    }
    try:
        return await manager.hosts.list(filters, page, page_size)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/hosts/{host_id}", summary="Get host", responses=ERROR_RESPONSES, tags=["IPAM - Hosts"])
async def get_host(host_id: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.hosts.get(host_id)
    except IPAMError as e:
        raise to_http_exception(e)


@router.patch("/hosts/{host_id}", summary="Update host metadata", responses=ERROR_RESPONSES, tags=["IPAM - Hosts"])
async def update_host(
    host_id: str,
    payload: HostUpdateRequest,
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.update_host(actor, host_id, payload.model_dump(exclude_unset=True))
    except IPAMError as e:
        raise to_http_exception(e)


@router.delete("/hosts/{host_id}", summary="Release a host", responses=ERROR_RESPONSES, tags=["IPAM - Hosts"])
async def release_host(
    host_id: str,
    reason: str = Query("", description="Mandatory reason recorded in the audit trail"),
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.release_host(actor, host_id, reason)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get(
    "/hosts/by-ip/{ip_address}", summary="Get the active host at an address", responses=ERROR_RESPONSES, tags=["IPAM - Hosts"]
)
async def get_host_by_ip(ip_address: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.get_host_by_ip(ip_address)
    except IPAMError as e:
        raise to_http_exception(e)


# ============================================================================
# Comment Endpoints
# ============================================================================


@router.get(
    "/regions/{region_id}/comments", summary="Get region comments", responses=ERROR_RESPONSES, tags=["IPAM - Comments"]
)
async def get_region_comments(region_id: str, manager: IPAMManager = Depends(get_ipam_manager)) -> List[Dict[str, Any]]:
    try:
        return await manager.list_region_comments(region_id)
    except IPAMError as e:
        raise to_http_exception(e)


@router.post(
    "/regions/{region_id}/comments",
    status_code=status.HTTP_201_CREATED,
    summary="Add comment to region",
    description="Append an immutable comment to a region's history.",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Comments"],
)
async def add_region_comment(
    region_id: str,
    comment_text: str = Query(..., description="Comment text (max 2000 characters)"),
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.add_region_comment(actor, region_id, comment_text)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/hosts/{host_id}/comments", summary="Get host comments", responses=ERROR_RESPONSES, tags=["IPAM - Comments"])
async def get_host_comments(host_id: str, manager: IPAMManager = Depends(get_ipam_manager)) -> List[Dict[str, Any]]:
    try:
        return await manager.list_host_comments(host_id)
    except IPAMError as e:
        raise to_http_exception(e)


@router.post(
    "/hosts/{host_id}/comments",
    status_code=status.HTTP_201_CREATED,
    summary="Add comment to host",
    description="Append an immutable comment to a host's history.",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Comments"],
)
async def add_host_comment(
    host_id: str,
    comment_text: str = Query(..., description="Comment text (max 2000 characters)"),
    manager: IPAMManager = Depends(get_ipam_manager),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    try:
        return await manager.add_host_comment(actor, host_id, comment_text)
    except IPAMError as e:
        raise to_http_exception(e)


# ============================================================================
# Search Endpoint
# ============================================================================


@router.get(
    "/search",
    summary="Search regions and hosts",
    description="""
    Search allocations across regions and hosts.

    ip_address, hostname, region and query are case-insensitive partial matches;
    country, continent, status and owner must match exactly. Results are newest first.
    """,
    responses=ERROR_RESPONSES,
    tags=["IPAM - Search"],
)
async def search_allocations(
    ip_address: Optional[str] = Query(None, description="IP address or CIDR fragment"),
    hostname: Optional[str] = Query(None, description="Hostname (partial match)"),
    country: Optional[str] = Query(None),
    continent: Optional[str] = Query(None),
    region: Optional[str] = Query(None, description="Region name (partial match)"),
    status_filter: Optional[str] = Query(None, alias="status"),
    owner: Optional[str] = Query(None),
    query: Optional[str] = Query(None, description="Free-text match over names, addresses and owners"),
    resource_type: Optional[str] = Query(None, alias="type", description="Restrict to 'region' or 'host'"),
    page: int = Query(1),
    page_size: int = Query(50),
    manager: IPAMManager = Depends(get_ipam_manager),
) -> Dict[str, Any]:
    filters = {
        "ip_address": ip_address,
        "hostname": hostname,
        "country": country,
        "continent": continent,
        "region": region,
        "status": status_filter,
        "owner": owner,
        "query": query,
    }
    try:
        return await manager.search(filters, resource_type=resource_type, page=page, page_size=page_size)
    except IPAMError as e:
        raise to_http_exception(e)


# ============================================================================
# IP Interpretation Endpoint
# ============================================================================


@router.get("/interpret/{ip_address}", summary="Resolve an address down the hierarchy", responses=ERROR_RESPONSES)
async def interpret_ip(ip_address: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.interpret_ip_address(ip_address)
    except IPAMError as e:
        raise to_http_exception(e)


# ============================================================================
# Utilization, Analytics and Forecast Endpoints
# ============================================================================


@router.get("/utilization/global", summary="Global capacity snapshot", tags=["IPAM - Analytics"])
async def global_utilization(manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.utilization.global_capacity_snapshot()
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/analytics/continent-capacity", summary="Capacity per continent", tags=["IPAM - Analytics"])
async def continent_capacity(manager: IPAMManager = Depends(get_ipam_manager)) -> List[Dict[str, Any]]:
    try:
        return await manager.utilization.continent_capacity()
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/analytics/top-countries", summary="Countries with the most allocated regions", tags=["IPAM - Analytics"])
async def top_countries(
    limit: int = Query(10), manager: IPAMManager = Depends(get_ipam_manager)
) -> List[Dict[str, Any]]:
    try:
        return await manager.utilization.top_countries(limit)
    except IPAMError as e:
        raise to_http_exception(e)


@router.get(
    "/forecast/{resource_type}",
    summary="Estimate days until exhaustion",
    responses=ERROR_RESPONSES,
    tags=["IPAM - Analytics"],
)
async def forecast(
    resource_type: str,
    resource_id: Optional[str] = Query(None, description="Country name or region id"),
    manager: IPAMManager = Depends(get_ipam_manager),
) -> Dict[str, Any]:
    try:
        return await manager.utilization.forecast(resource_type, resource_id)
    except IPAMError as e:
        raise to_http_exception(e)


# ============================================================================
# Audit History Endpoints
# ============================================================================


@router.get("/audit", response_model=PaginatedResponse, summary="Query the audit trail", tags=["IPAM - Audit"])
async def audit_history(
    action_type: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    user: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1),
    page_size: int = Query(50),
    manager: IPAMManager = Depends(get_ipam_manager),
) -> Dict[str, Any]:
    try:
        return await manager.audit.query(
            action_type=action_type,
            resource_type=resource_type,
            user=user,
            start_date=start_date,
            end_date=end_date,
            resource_id=resource_id,
            country=country,
            page=page,
            page_size=page_size,
        )
    except IPAMError as e:
        raise to_http_exception(e)


@router.get("/audit/{audit_id}", summary="Get one audit entry", responses=ERROR_RESPONSES, tags=["IPAM - Audit"])
async def get_audit_entry(audit_id: str, manager: IPAMManager = Depends(get_ipam_manager)) -> Dict[str, Any]:
    try:
        return await manager.audit.get_entry(audit_id)
    except IPAMError as e:
        raise to_http_exception(e)
