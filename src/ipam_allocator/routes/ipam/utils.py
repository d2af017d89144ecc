"""
IPAM route utility functions: error formatting and IPAM error -> HTTP status mapping.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from ipam_allocator.managers.ipam_exceptions import (
    CapacityExhausted,
    ConcurrencyConflict,
    InvalidState,
    IPAMError,
    NotFound,
    PersistenceError,
    RegionInactive,
    ValidationError,
)
from ipam_allocator.managers.logging_manager import get_logger

logger = get_logger(prefix="[IPAM Utils]")

STATUS_BY_ERROR = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (CapacityExhausted, status.HTTP_409_CONFLICT),
    (InvalidState, status.HTTP_409_CONFLICT),
    (RegionInactive, status.HTTP_409_CONFLICT),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def format_error_response(error_code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Format error response.

    Args:
        error_code: Error code identifier
        message: Human-readable error message
        details: Optional additional error details
    """
    response = {
        "error": error_code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        response["details"] = details
    return response


def status_for_error(error: IPAMError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: IPAMError) -> HTTPException:
    status_code = status_for_error(error)
    if status_code >= 500:
        logger.error("IPAM request failed: error_code=%s error=%s", error.error_code, error, exc_info=error)
    else:
        logger.info("IPAM request rejected: status=%d error_code=%s error=%s", status_code, error.error_code, error)
    return HTTPException(
        status_code=status_code,
        detail=format_error_response(error.error_code, str(error), error.context),
    )
