"""
FastAPI dependencies for the IPAM routes.

The allocator has no authentication of its own: the acting user recorded in the audit
trail is taken from the ``X-IPAM-User`` header and defaults to IPAM_DEFAULT_ACTOR.
"""

from typing import Optional

from fastapi import Header

from ipam_allocator.config import settings
from ipam_allocator.managers.ipam_manager import IPAMManager
from ipam_allocator.managers.ipam_manager import get_ipam_manager as _get_ipam_manager


def get_ipam_manager() -> IPAMManager:
    """Dependency returning the process-wide manager; overridden in tests."""
    return _get_ipam_manager()


def get_actor(x_ipam_user: Optional[str] = Header(None)) -> str:
    actor = (x_ipam_user or "").strip()
    return actor or settings.IPAM_DEFAULT_ACTOR
