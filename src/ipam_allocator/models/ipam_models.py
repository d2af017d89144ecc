"""
Pydantic request and response models for the IPAM HTTP layer.

Domain rules (hostname pattern, reason, reserved countries, batch limits) are enforced by
the allocators so the same errors surface whether the allocator is called directly or
over HTTP; the models only shape and trim the payloads.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _strip_optional(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


# Request Models - Region Management
class RegionCreateRequest(BaseModel):
    """Request model for creating a new region allocation."""

    country: str = Field(..., description="Country whose X range the /24 is taken from")
    region_name: str = Field(..., description="Human-readable region name")
    description: Optional[str] = Field(None, max_length=500, description="Optional region description")
    owner: Optional[str] = Field(None, max_length=100, description="Team or owner identifier")
    tags: Optional[Dict[str, str]] = Field(None, description="Key-value tags for organization")

    @field_validator("country")
    @classmethod
    def validate_country(cls, v):
        return v.strip()

    @field_validator("description", "owner")
    @classmethod
    def strip_optional(cls, v):
        return _strip_optional(v)


class RegionUpdateRequest(BaseModel):
    """Only descriptive fields are editable; address fields are rejected by the allocator."""

    model_config = {"extra": "allow"}

    region_name: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    owner: Optional[str] = Field(None, max_length=100)
    tags: Optional[Dict[str, str]] = None


# Request Models - Host Management
class HostCreateRequest(BaseModel):
    region_id: str = Field(..., description="Active region to allocate in")
    hostname: str = Field(..., description="2-100 characters of letters, digits, '-', '_' or '.'")
    device_type: Optional[str] = Field(None, max_length=50)
    owner: Optional[str] = Field(None, max_length=100)
    purpose: Optional[str] = Field(None, max_length=500)
    tags: Optional[Dict[str, str]] = None

    @field_validator("device_type", "owner", "purpose")
    @classmethod
    def strip_optional(cls, v):
        return _strip_optional(v)


class HostUpdateRequest(BaseModel):
    model_config = {"extra": "allow"}

    hostname: Optional[str] = None
    device_type: Optional[str] = Field(None, max_length=50)
    owner: Optional[str] = Field(None, max_length=100)
    purpose: Optional[str] = Field(None, max_length=500)
    tags: Optional[Dict[str, str]] = None


class BatchHostCreateRequest(BaseModel):
    """Request model for allocating up to 100 hosts in one atomic batch."""

    region_id: str
    count: int = Field(..., description="Number of hosts to allocate (1-100)")
    hostname_prefix: str = Field(..., description="Hosts are named {prefix}-01, {prefix}-02, ...")
    device_type: Optional[str] = Field(None, max_length=50)
    owner: Optional[str] = Field(None, max_length=100)
    purpose: Optional[str] = Field(None, max_length=500)
    tags: Optional[Dict[str, str]] = None


class BulkReleaseRequest(BaseModel):
    host_ids: List[str] = Field(..., description="Hosts to release (1-100)")
    reason: str = Field(..., description="Reason recorded on every release")


# Response Models
class PaginationMetadata(BaseModel):
    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PaginatedResponse(BaseModel):
    results: List[Dict[str, Any]]
    pagination: PaginationMetadata


class IPAMErrorResponse(BaseModel):
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class IPAMHTTPError(BaseModel):
    """Body of every IPAM error response; FastAPI nests the payload under ``detail``."""

    detail: IPAMErrorResponse
