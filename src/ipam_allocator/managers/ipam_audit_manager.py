"""
Append-only audit trail for IPAM state changes.

Every region/host mutation writes its audit entries through ``record_step`` as part of the
same atomic unit as the mutation itself, so a failing audit store aborts the mutation.
Entries are never updated; the only delete is the compensation of an entry written by an
atomic unit that failed later on a storage without transactions.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from ipam_allocator.config import settings
from ipam_allocator.database import AtomicStep, DatabaseManager, db_manager
from ipam_allocator.database.ipam_indexes import AUDIT_COLLECTION
from ipam_allocator.managers.ipam_exceptions import AuditEntryNotFound, PersistenceError, ValidationError
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.utils.ipam_validation import IPAMValidation, build_pagination

logger = get_logger(prefix="[IPAMAudit]")

ACTION_TYPES = ("create", "update", "release", "retire")
RESOURCE_TYPES = ("region", "host", "country")


def _to_plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    return value


def field_changes(before: Dict[str, Any], after: Dict[str, Any], fields) -> List[Dict[str, Any]]:
    """Ordered list of {field, old_value, new_value} for the fields whose value differs."""
    changes = []
    for field in fields:
        if field in after and before.get(field) != after[field]:
            changes.append({"field": field, "old_value": before.get(field), "new_value": after[field]})
    return changes


class AuditTrail:
    """Records and queries entries of the ``ipam_audit_history`` collection."""

    def __init__(self, db_manager_instance: Optional[DatabaseManager] = None) -> None:
        self.db_manager = db_manager_instance or db_manager
        self.logger = logger

    @property
    def collection(self):
        return self.db_manager.get_collection(AUDIT_COLLECTION)

    def build_entry(
        self,
        user: str,
        action_type: str,
        resource_type: str,
        resource_id: Any,
        resource_name: Optional[str] = None,
        reason: Optional[str] = None,
        changes: Optional[List[Dict[str, Any]]] = None,
        snapshot: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        cidr: Optional[str] = None,
        ip_address: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if action_type not in ACTION_TYPES:
            raise ValidationError(f"Unknown audit action {action_type}", "action_type", action_type)
        if resource_type not in RESOURCE_TYPES:
            raise ValidationError(f"Unknown audit resource type {resource_type}", "resource_type", resource_type)
        return {
            "_id": ObjectId(),
            "action_type": action_type,
            "resource_type": resource_type,
            "resource_id": str(resource_id),
            "resource_name": resource_name,
            "user": user,
            "timestamp": timestamp or datetime.now(timezone.utc),
            "reason": reason,
            "changes": _to_plain(changes or []),
            "metadata": _to_plain(metadata or {}),
            "snapshot": _to_plain(snapshot or {}),
            "cidr": cidr,
            "ip_address": ip_address,
        }

    async def record(self, entry: Dict[str, Any], session=None) -> str:
        """Insert one entry; storage failures surface as PersistenceError."""
        start_time = self.db_manager.log_query_start(
            AUDIT_COLLECTION, "insert_one", {"action_type": entry["action_type"], "resource_id": entry["resource_id"]}
        )
        try:
            await self.collection.insert_one(entry, session=session)
        except PyMongoError as e:
            self.db_manager.log_query_error(AUDIT_COLLECTION, "insert_one", start_time, e)
            raise PersistenceError("Failed to record audit entry", f"audit_{entry['action_type']}", e) from e
        self.db_manager.log_query_success(AUDIT_COLLECTION, "insert_one", start_time, 1)
        self.logger.debug(
            "Audit event logged: %s %s for %s by %s",
            entry["action_type"],
            entry["resource_type"],
            entry["resource_id"],
            entry["user"],
        )
        return str(entry["_id"])

    def record_step(self, entry: Dict[str, Any]) -> AtomicStep:
        async def apply(session):
            return await self.record(entry, session=session)

        async def undo():
            await self.collection.delete_one({"_id": entry["_id"]})

        return AtomicStep(f"audit {entry['action_type']} {entry['resource_type']} {entry['resource_id']}", apply, undo)

    async def query(
        self,
        action_type: Optional[str] = None,
        resource_type: Optional[str] = None,
        user: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        resource_id: Optional[str] = None,
        country: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """
        Filtered, newest-first page of audit entries.

        Returns:
            Dict containing ``results`` and ``pagination`` (page, page_size, total_count,
            total_pages, has_next, has_prev).

        Raises:
            ValidationError: on an unknown action/resource type, an inverted date range or
                paging out of range.
        """
        IPAMValidation.require_page(page, page_size, settings.IPAM_AUDIT_MAX_PAGE_SIZE)
        if action_type is not None and action_type not in ACTION_TYPES:
            raise ValidationError(f"Unknown audit action {action_type}", "action_type", action_type)
        if resource_type is not None and resource_type not in RESOURCE_TYPES:
            raise ValidationError(f"Unknown audit resource type {resource_type}", "resource_type", resource_type)
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date", "start_date", start_date)

        query: Dict[str, Any] = {}
        if action_type:
            query["action_type"] = action_type
        if resource_type:
            query["resource_type"] = resource_type
        if user:
            query["user"] = user
        if resource_id:
            query["resource_id"] = str(resource_id)
        if country:
            query["metadata.country"] = country
        if start_date or end_date:
            query["timestamp"] = {}
            if start_date:
                query["timestamp"]["$gte"] = start_date
            if end_date:
                query["timestamp"]["$lte"] = end_date

        start_time = self.db_manager.log_query_start(AUDIT_COLLECTION, "find", query)
        try:
            total_count = await self.collection.count_documents(query)
            cursor = (
                self.collection.find(query).sort([("timestamp", -1), ("_id", -1)]).skip((page - 1) * page_size).limit(page_size)
            )
            entries = await cursor.to_list(length=page_size)
        except PyMongoError as e:
            self.db_manager.log_query_error(AUDIT_COLLECTION, "find", start_time, e, query)
            raise PersistenceError("Failed to query audit history", "audit_query", e) from e
        self.db_manager.log_query_success(AUDIT_COLLECTION, "find", start_time, len(entries))

        return {
            "results": [self.serialize(entry) for entry in entries],
            "pagination": build_pagination(page, page_size, total_count),
        }

    async def get_entry(self, audit_id: str) -> Dict[str, Any]:
        try:
            oid = ObjectId(audit_id)
        except (InvalidId, TypeError) as e:
            raise AuditEntryNotFound(f"Audit entry {audit_id} not found", audit_id) from e
        entry = await self.collection.find_one({"_id": oid})
        if entry is None:
            raise AuditEntryNotFound(f"Audit entry {audit_id} not found", audit_id)
        return self.serialize(entry)

    async def entries_since(self, since: datetime, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Raw entries at or after `since` matching `query`, oldest first."""
        full_query = dict(query)
        full_query["timestamp"] = {"$gte": since}
        start_time = self.db_manager.log_query_start(AUDIT_COLLECTION, "find", full_query)
        try:
            entries = await self.collection.find(full_query).sort("timestamp", 1).to_list(length=None)
        except PyMongoError as e:
            self.db_manager.log_query_error(AUDIT_COLLECTION, "find", start_time, e, full_query)
            raise PersistenceError("Failed to read audit history", "audit_window", e) from e
        self.db_manager.log_query_success(AUDIT_COLLECTION, "find", start_time, len(entries))
        return entries

    @staticmethod
    def serialize(entry: Dict[str, Any]) -> Dict[str, Any]:
        result = {k: v for k, v in entry.items() if k != "_id"}
        result["audit_id"] = str(entry["_id"])
        return result
