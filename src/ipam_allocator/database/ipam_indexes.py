"""
Database indexes for IPAM collections.

The partial unique indexes are what keep two processes from handing out the same /24 or
the same host address: only Active documents participate, so retired regions and
released hosts never block reuse of their slot.
"""

from typing import Optional

from pymongo.errors import PyMongoError

from ipam_allocator.database.manager import DatabaseManager, db_manager
from ipam_allocator.managers.logging_manager import get_logger

logger = get_logger(prefix="[IPAMIndexes]")

REGIONS_COLLECTION = "ipam_regions"
HOSTS_COLLECTION = "ipam_hosts"
AUDIT_COLLECTION = "ipam_audit_history"
COMMENTS_COLLECTION = "ipam_comments"

ACTIVE_ONLY = {"status": "Active"}

IPAM_INDEXES = [
    # IPAM regions collection indexes
    {
        "collection": REGIONS_COLLECTION,
        "index": [("x_octet", 1), ("y_octet", 1)],
        "options": {"name": "active_xy_unique_idx", "unique": True, "partialFilterExpression": ACTIVE_ONLY},
    },
    {
        "collection": REGIONS_COLLECTION,
        "index": [("country", 1), ("status", 1)],
        "options": {"name": "country_status_idx"},
    },
    {
        "collection": REGIONS_COLLECTION,
        "index": [("x_octet", 1), ("status", 1)],
        "options": {"name": "x_status_idx"},
    },
    {
        "collection": REGIONS_COLLECTION,
        "index": [("owner", 1)],
        "options": {"name": "owner_idx"},
    },
    {
        "collection": REGIONS_COLLECTION,
        "index": [("created_at", -1)],
        "options": {"name": "created_idx"},
    },
    # IPAM hosts collection indexes
    {
        "collection": HOSTS_COLLECTION,
        "index": [("region_id", 1), ("z_octet", 1)],
        "options": {"name": "active_region_z_unique_idx", "unique": True, "partialFilterExpression": ACTIVE_ONLY},
    },
    {
        "collection": HOSTS_COLLECTION,
        "index": [("x_octet", 1), ("y_octet", 1), ("z_octet", 1)],
        "options": {"name": "active_xyz_unique_idx", "unique": True, "partialFilterExpression": ACTIVE_ONLY},
    },
    {
        "collection": HOSTS_COLLECTION,
        "index": [("region_id", 1), ("status", 1)],
        "options": {"name": "region_status_idx"},
    },
    {
        "collection": HOSTS_COLLECTION,
        "index": [("ip_address", 1), ("status", 1)],
        "options": {"name": "ip_status_idx"},
    },
    {
        "collection": HOSTS_COLLECTION,
        "index": [("hostname", 1)],
        "options": {"name": "hostname_idx"},
    },
    # IPAM audit history indexes
    {
        "collection": AUDIT_COLLECTION,
        "index": [("timestamp", -1)],
        "options": {"name": "timestamp_idx"},
    },
    {
        "collection": AUDIT_COLLECTION,
        "index": [("resource_type", 1), ("resource_id", 1), ("timestamp", -1)],
        "options": {"name": "resource_timestamp_idx"},
    },
    {
        "collection": AUDIT_COLLECTION,
        "index": [("action_type", 1), ("timestamp", -1)],
        "options": {"name": "action_timestamp_idx"},
    },
    {
        "collection": AUDIT_COLLECTION,
        "index": [("user", 1), ("timestamp", -1)],
        "options": {"name": "user_timestamp_idx"},
    },
    {
        "collection": AUDIT_COLLECTION,
        "index": [("metadata.country", 1), ("timestamp", -1)],
        "options": {"name": "country_timestamp_idx"},
    },
    # IPAM comments indexes
    {
        "collection": COMMENTS_COLLECTION,
        "index": [("resource_type", 1), ("resource_id", 1), ("created_at", -1)],
        "options": {"name": "resource_created_idx"},
    },
]


async def create_ipam_indexes(database: Optional[DatabaseManager] = None) -> bool:
    """
    Create all IPAM indexes.

    Returns:
        bool: True if every index was created or already existed, False otherwise
    """
    database = database or db_manager
    logger.info("Creating IPAM indexes...")
    created_count = 0
    failed_count = 0

    for index_spec in IPAM_INDEXES:
        collection_name = index_spec["collection"]
        options = index_spec.get("options", {})
        index_name = options.get("name", "unnamed")
        try:
            collection = database.get_collection(collection_name)
            await collection.create_index(index_spec["index"], **options)
            created_count += 1
            logger.debug("Created index %s on collection %s", index_name, collection_name)
        except PyMongoError as e:
            failed_count += 1
            logger.warning("Failed to create index %s on collection %s: %s", index_name, collection_name, e)

    logger.info(
        "IPAM index creation completed: %d/%d indexes created, %d failed",
        created_count,
        len(IPAM_INDEXES),
        failed_count,
    )
    return failed_count == 0
