"""Managers implementing address space, allocation, utilization and audit concerns."""
