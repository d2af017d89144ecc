"""Exception hierarchy raised by the IPAM components."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class IPAMError(Exception):
    """Base IPAM exception with enhanced context."""

    def __init__(self, message: str, error_code: str = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "IPAM_ERROR"
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class CapacityExhausted(IPAMError):
    """Address space capacity exhausted."""

    def __init__(self, message: str, resource_type: str = None, capacity: int = None, allocated: int = None):
        super().__init__(
            message,
            "CAPACITY_EXHAUSTED",
            {"resource_type": resource_type, "capacity": capacity, "allocated": allocated},
        )


class NotFound(IPAMError):
    """Referenced entity does not exist."""

    def __init__(self, message: str, error_code: str = "NOT_FOUND", context: Dict[str, Any] = None):
        super().__init__(message, error_code, context)


class CountryNotFound(NotFound):
    """Country does not exist in the address space."""

    def __init__(self, message: str, country: Any = None):
        super().__init__(message, "COUNTRY_NOT_FOUND", {"country": country})


class RegionNotFound(NotFound):
    def __init__(self, message: str, region_id: str = None):
        super().__init__(message, "REGION_NOT_FOUND", {"region_id": region_id})


class HostNotFound(NotFound):
    def __init__(self, message: str, host_id: str = None):
        super().__init__(message, "HOST_NOT_FOUND", {"host_id": host_id})


class AuditEntryNotFound(NotFound):
    def __init__(self, message: str, audit_id: str = None):
        super().__init__(message, "AUDIT_ENTRY_NOT_FOUND", {"audit_id": audit_id})


class InvalidState(IPAMError):
    """Operation not permitted in the resource's current status."""

    def __init__(self, message: str, resource_type: str = None, resource_id: str = None, status: str = None):
        super().__init__(
            message,
            "INVALID_STATE",
            {"resource_type": resource_type, "resource_id": resource_id, "status": status},
        )


class RegionInactive(IPAMError):
    """Host operation targeted a region that is not Active."""

    def __init__(self, message: str, region_id: str = None, status: str = None):
        super().__init__(message, "REGION_INACTIVE", {"region_id": region_id, "status": status})


class ValidationError(IPAMError):
    """Input validation failed."""

    def __init__(self, message: str, field: str = None, value: Any = None, error_code: str = "VALIDATION_ERROR"):
        super().__init__(
            message, error_code, {"field": field, "value": str(value) if value is not None else None}
        )


class InvalidHostname(ValidationError):
    def __init__(self, message: str, value: Any = None):
        super().__init__(message, "hostname", value, error_code="INVALID_HOSTNAME")


class ConcurrencyConflict(IPAMError):
    """Another writer claimed the slot between selection and insert."""

    def __init__(self, message: str, resource_type: str = None, identifier: Optional[str] = None):
        super().__init__(
            message, "CONCURRENCY_CONFLICT", {"resource_type": resource_type, "identifier": identifier}
        )


class PersistenceError(IPAMError):
    """Storage (including the audit store) failed; the operation was not applied."""

    def __init__(self, message: str, operation: str = None, cause: Exception = None):
        super().__init__(
            message,
            "PERSISTENCE_ERROR",
            {"operation": operation, "cause": f"{type(cause).__name__}: {cause}" if cause else None},
        )
