"""
Free-text comments attached to regions and hosts.

Comments are append-only: they are never edited or deleted, and retiring a region or
releasing a host keeps its comment history readable. Existence of the commented resource
is checked by the caller.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import PyMongoError

from ipam_allocator.database import DatabaseManager, db_manager
from ipam_allocator.database.ipam_indexes import COMMENTS_COLLECTION
from ipam_allocator.managers.ipam_exceptions import PersistenceError, ValidationError
from ipam_allocator.managers.logging_manager import get_logger

logger = get_logger(prefix="[IPAMComments]")

COMMENT_RESOURCE_TYPES = ("region", "host")
MAX_COMMENT_LENGTH = 2000


def serialize_comment(doc: Dict[str, Any]) -> Dict[str, Any]:
    result = {k: v for k, v in doc.items() if k != "_id"}
    result["comment_id"] = str(doc["_id"])
    return result


class CommentLog:
    """Stores comments in the ``ipam_comments`` collection."""

    def __init__(self, db_manager_instance: Optional[DatabaseManager] = None) -> None:
        self.db_manager = db_manager_instance or db_manager
        self.logger = logger

    @property
    def collection(self):
        return self.db_manager.get_collection(COMMENTS_COLLECTION)

    @staticmethod
    def _require_resource_type(resource_type: str) -> None:
        if resource_type not in COMMENT_RESOURCE_TYPES:
            raise ValidationError(
                f"resource_type must be one of {', '.join(COMMENT_RESOURCE_TYPES)}", "resource_type", resource_type
            )

    async def add(self, user: str, resource_type: str, resource_id: str, comment_text: Any) -> Dict[str, Any]:
        """
        Append a comment.

        Raises:
            ValidationError: blank text, text over 2000 characters or unknown resource type
            PersistenceError: the insert failed
        """
        self._require_resource_type(resource_type)
        if not isinstance(comment_text, str) or not comment_text.strip():
            raise ValidationError("Comment text cannot be empty", "comment_text", comment_text)
        comment_text = comment_text.strip()
        if len(comment_text) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                f"Comment text exceeds {MAX_COMMENT_LENGTH} characters", "comment_text", len(comment_text)
            )

        doc = {
            "_id": ObjectId(),
            "resource_type": resource_type,
            "resource_id": str(resource_id),
            "user": user,
            "comment_text": comment_text,
            "created_at": datetime.now(timezone.utc),
        }
        start_time = self.db_manager.log_query_start(
            COMMENTS_COLLECTION, "insert_one", {"resource_type": resource_type, "resource_id": doc["resource_id"]}
        )
        try:
            await self.collection.insert_one(doc)
        except PyMongoError as e:
            self.db_manager.log_query_error(COMMENTS_COLLECTION, "insert_one", start_time, e)
            raise PersistenceError("Failed to add comment", "add_comment", e) from e
        self.db_manager.log_query_success(COMMENTS_COLLECTION, "insert_one", start_time, 1)
        self.logger.info(
            "operation=add_comment user=%s resource=%s/%s length=%d",
            user,
            resource_type,
            doc["resource_id"],
            len(comment_text),
        )
        return serialize_comment(doc)

    async def list(self, resource_type: str, resource_id: str) -> List[Dict[str, Any]]:
        """Comments on one resource, newest first."""
        self._require_resource_type(resource_type)
        query = {"resource_type": resource_type, "resource_id": str(resource_id)}
        start_time = self.db_manager.log_query_start(COMMENTS_COLLECTION, "find", query)
        try:
            docs = await self.collection.find(query).sort([("created_at", -1), ("_id", -1)]).to_list(length=None)
        except PyMongoError as e:
            self.db_manager.log_query_error(COMMENTS_COLLECTION, "find", start_time, e, query)
            raise PersistenceError("Failed to list comments", "list_comments", e) from e
        self.db_manager.log_query_success(COMMENTS_COLLECTION, "find", start_time, len(docs))
        return [serialize_comment(d) for d in docs]
