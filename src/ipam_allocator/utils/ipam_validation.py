"""
Validation utilities for the IPAM allocator.

Validators return ``(is_valid, error_message)`` tuples; the ``require_*`` helpers raise the
matching IPAM exception so allocators can validate in one line.
"""

import ipaddress
import re
from typing import Any, Dict, List, Optional, Tuple

from ipam_allocator.managers.ipam_exceptions import InvalidHostname, ValidationError


class IPAMValidation:
    """Centralized IPAM validation utilities."""

    HOSTNAME_PATTERN = re.compile(r"^[a-zA-Z0-9\-_.]{2,100}$")
    HOSTNAME_PREFIX_PATTERN = re.compile(r"^[a-zA-Z0-9\-_]{2,}$")
    TAG_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
    TAG_VALUE_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\s\.]*$")

    PRIVATE_10_NETWORK = ipaddress.ip_network("10.0.0.0/8")

    MAX_REGION_NAME_LENGTH = 100
    MAX_TAGS = 50
    MAX_TAG_KEY_LENGTH = 100
    MAX_TAG_VALUE_LENGTH = 500
    MAX_BATCH_SIZE = 100
    MAX_BULK_RELEASE = 100

    @staticmethod
    def validate_ip_format(ip_address: str) -> Tuple[bool, Optional[str]]:
        """
        Validate IP address is in 10.0.0.0/8 private address space.

        Examples:
            >>> IPAMValidation.validate_ip_format("10.5.23.45")
            (True, None)
            >>> IPAMValidation.validate_ip_format("192.168.1.1")
            (False, 'IP address must be in 10.0.0.0/8 private address space')
        """
        try:
            ip = ipaddress.IPv4Address(str(ip_address).strip())
        except ValueError:
            return False, "Invalid IP address format"
        if ip not in IPAMValidation.PRIVATE_10_NETWORK:
            return False, "IP address must be in 10.0.0.0/8 private address space"
        return True, None

    @staticmethod
    def parse_ip(ip_address: str) -> Tuple[int, int, int]:
        """Split a 10.X.Y.Z address into its (X, Y, Z) octets or raise ValidationError."""
        is_valid, error = IPAMValidation.validate_ip_format(ip_address)
        if not is_valid:
            raise ValidationError(error, "ip_address", ip_address)
        _, x, y, z = (int(part) for part in str(ipaddress.IPv4Address(str(ip_address).strip())).split("."))
        return x, y, z

    @staticmethod
    def validate_octet_range(octet_value: int, octet_type: str) -> Tuple[bool, Optional[str]]:
        """
        Validate octet value is within valid range for its type.

        X and Y octets: 0-255. Z octet: 1-254 (network and broadcast excluded).
        """
        octet_type = octet_type.upper()
        if octet_type not in ("X", "Y", "Z"):
            return False, f"Invalid octet type: {octet_type}. Must be X, Y, or Z"
        if not isinstance(octet_value, int) or isinstance(octet_value, bool):
            return False, f"{octet_type} octet must be an integer"
        if octet_type == "Z":
            if octet_value < 1 or octet_value > 254:
                return False, "Z octet must be between 1 and 254 (excluding network and broadcast addresses)"
            return True, None
        if octet_value < 0 or octet_value > 255:
            return False, f"{octet_type} octet must be between 0 and 255"
        return True, None

    @staticmethod
    def validate_hostname(hostname: Any) -> Tuple[bool, Optional[str]]:
        if not isinstance(hostname, str) or not IPAMValidation.HOSTNAME_PATTERN.fullmatch(hostname):
            return False, "Hostname must be 2-100 characters of letters, digits, '-', '_' or '.'"
        return True, None

    @staticmethod
    def validate_hostname_prefix(prefix: Any) -> Tuple[bool, Optional[str]]:
        if not isinstance(prefix, str) or not IPAMValidation.HOSTNAME_PREFIX_PATTERN.fullmatch(prefix):
            return False, "Hostname prefix must be at least 2 characters of letters, digits, '-' or '_'"
        return True, None

    @staticmethod
    def validate_tag_format(tags: Dict[str, str]) -> Tuple[bool, List[str]]:
        """
        Validate tag keys and values follow naming conventions.

        Validation Rules:
            - Tag keys: alphanumeric, underscore, hyphen only (max 100 chars)
            - Tag values: alphanumeric, underscore, hyphen, space, dot (max 500 chars)
            - Max tags per resource: 50
        """
        errors: List[str] = []
        if not isinstance(tags, dict):
            return False, ["Tags must be a dictionary"]
        if len(tags) > IPAMValidation.MAX_TAGS:
            errors.append(f"Too many tags: {len(tags)}. Maximum allowed is {IPAMValidation.MAX_TAGS}")
        for key, value in tags.items():
            if not isinstance(key, str) or not IPAMValidation.TAG_KEY_PATTERN.fullmatch(key):
                errors.append(f"Tag key '{key}' contains invalid characters")
            elif len(key) > IPAMValidation.MAX_TAG_KEY_LENGTH:
                errors.append(f"Tag key '{key}' exceeds {IPAMValidation.MAX_TAG_KEY_LENGTH} characters")
            if not isinstance(value, str) or not IPAMValidation.TAG_VALUE_PATTERN.fullmatch(value):
                errors.append(f"Tag value for '{key}' contains invalid characters")
            elif len(value) > IPAMValidation.MAX_TAG_VALUE_LENGTH:
                errors.append(f"Tag value for '{key}' exceeds {IPAMValidation.MAX_TAG_VALUE_LENGTH} characters")
        return not errors, errors

    # --- raising helpers used by the allocators ---

    @staticmethod
    def require_hostname(hostname: Any) -> str:
        is_valid, error = IPAMValidation.validate_hostname(hostname)
        if not is_valid:
            raise InvalidHostname(error, hostname)
        return hostname

    @staticmethod
    def require_hostname_prefix(prefix: Any) -> str:
        is_valid, error = IPAMValidation.validate_hostname_prefix(prefix)
        if not is_valid:
            raise ValidationError(error, "hostname_prefix", prefix)
        return prefix

    @staticmethod
    def require_reason(reason: Any) -> str:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("A non-empty reason is required", "reason", reason)
        return reason.strip()

    @staticmethod
    def require_region_name(name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Region name must not be empty", "region_name", name)
        name = name.strip()
        if len(name) > IPAMValidation.MAX_REGION_NAME_LENGTH:
            raise ValidationError(
                f"Region name exceeds {IPAMValidation.MAX_REGION_NAME_LENGTH} characters", "region_name", name
            )
        return name

    @staticmethod
    def require_tags(tags: Optional[Dict[str, str]]) -> Dict[str, str]:
        if tags is None:
            return {}
        is_valid, errors = IPAMValidation.validate_tag_format(tags)
        if not is_valid:
            raise ValidationError("; ".join(errors), "tags", tags)
        return dict(tags)

    @staticmethod
    def require_page(page: int, page_size: int, max_page_size: int = 100) -> None:
        if not isinstance(page, int) or page < 1:
            raise ValidationError("page must be a positive integer", "page", page)
        if not isinstance(page_size, int) or not 1 <= page_size <= max_page_size:
            raise ValidationError(f"page_size must be between 1 and {max_page_size}", "page_size", page_size)


def compute_utilization(allocated: int, total: int) -> float:
    """Percentage of `total` in use, rounded to 2 decimals and clamped to 0..100."""
    if total <= 0:
        return 0.0
    return round(min(100.0, max(0.0, allocated * 100.0 / total)), 2)


def build_pagination(page: int, page_size: int, total_count: int) -> Dict[str, Any]:
    total_pages = (total_count + page_size - 1) // page_size if total_count else 0
    return {
        "page": page,
        "page_size": page_size,
        "total_count": total_count,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
