"""Committing IPAM atomic units and translating storage errors into IPAM errors."""

from typing import Any, List, Optional, Sequence

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure, PyMongoError

from ipam_allocator.database import AtomicStep, DatabaseManager
from ipam_allocator.managers.ipam_exceptions import ConcurrencyConflict, IPAMError, PersistenceError
from ipam_allocator.managers.logging_manager import get_logger

logger = get_logger(prefix="[IPAMAtomic]")

DUPLICATE_KEY_CODE = 11000
WRITE_CONFLICT_CODE = 112


def is_duplicate_key(error: PyMongoError) -> bool:
    if isinstance(error, DuplicateKeyError):
        return True
    if isinstance(error, BulkWriteError):
        return any(e.get("code") == DUPLICATE_KEY_CODE for e in error.details.get("writeErrors", []))
    return False


def is_write_conflict(error: PyMongoError) -> bool:
    """A transaction lost a race on the same document or index key."""
    if isinstance(error, OperationFailure) and error.code == WRITE_CONFLICT_CODE:
        return True
    return error.has_error_label("TransientTransactionError")


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


async def commit_atomic(
    db: DatabaseManager,
    steps: Sequence[AtomicStep],
    operation: str,
    resource_type: str,
    identifier: Optional[str] = None,
) -> List[Any]:
    """
    Run `steps` as one atomic unit.

    Raises:
        ConcurrencyConflict: a partial unique index rejected the write, or a transaction
            lost a write conflict (another writer won the slot).
        PersistenceError: any other storage failure.
        IPAMError: re-raised unchanged when a step detected a domain condition.
    """
    try:
        return await db.run_atomic(steps, operation)
    except IPAMError:
        raise
    except PyMongoError as e:
        if not (is_duplicate_key(e) or is_write_conflict(e)):
            logger.error(
                "Storage failure: operation=%s resource=%s identifier=%s error=%s", operation, resource_type, identifier, e
            )
            raise PersistenceError(f"Failed to persist {operation}", operation, e) from e
        logger.warning(
            "Concurrent conflict: operation=%s resource=%s identifier=%s error=%s", operation, resource_type, identifier, e
        )
        raise ConcurrencyConflict(
            f"{resource_type} slot {identifier} was claimed concurrently", resource_type, identifier
        ) from e
