"""Database package for the IPAM allocator."""

from ipam_allocator.database.manager import AtomicStep, DatabaseManager, db_manager

__all__ = ["AtomicStep", "DatabaseManager", "db_manager"]
