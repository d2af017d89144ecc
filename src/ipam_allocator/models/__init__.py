"""Pydantic models for the IPAM HTTP layer."""
