"""
IPAM (IP Address Management) routes module.

REST endpoints for hierarchical IP allocation following the 10.X.Y.Z structure.
"""

from ipam_allocator.routes.ipam.routes import router

__all__ = ["router"]
