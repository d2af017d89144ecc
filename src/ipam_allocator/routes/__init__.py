"""HTTP routes for the IPAM allocator."""
