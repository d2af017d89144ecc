"""Utility modules for the IPAM allocator."""
