"""Hierarchical IPv4 address allocator for the 10.0.0.0/8 private space."""

__version__ = "1.0.0"
