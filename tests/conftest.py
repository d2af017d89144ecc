"""
Pytest configuration for the IPAM allocator tests.

Provides an in-memory stand-in for the Motor database that honours the production
index specifications (including the partial unique indexes), yields to the event loop
on every operation so concurrent allocations interleave, and supports injecting
storage failures.
"""

import asyncio
import copy
import re
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

from bson import ObjectId
import pytest
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError
from pymongo.results import DeleteResult, InsertManyResult, InsertOneResult, UpdateResult

from ipam_allocator.database import DatabaseManager
from ipam_allocator.database.ipam_indexes import create_ipam_indexes
from ipam_allocator.managers.address_space import AddressSpace
from ipam_allocator.managers.ipam_manager import IPAMManager

_MISSING = object()


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def _unset_path(doc: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.get(part, {})
    doc.pop(parts[-1], None)


def _compare(value: Any, op: str, arg: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    if op == "$lt":
        return value < arg
    return value <= arg


def _match_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            plain = None if value is _MISSING else value
            if op == "$in":
                ok = plain in arg
            elif op == "$nin":
                ok = plain not in arg
            elif op == "$ne":
                ok = plain != arg
            elif op == "$exists":
                ok = (value is not _MISSING) == bool(arg)
            elif op in ("$gt", "$gte", "$lt", "$lte"):
                ok = _compare(value, op, arg)
            elif op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                ok = isinstance(plain, str) and re.search(arg, plain, flags) is not None
            elif op == "$options":
                ok = True
            else:
                raise NotImplementedError(op)
            if not ok:
                return False
        return True
    if value is _MISSING:
        return condition is None
    if isinstance(value, list) and not isinstance(condition, list):
        return condition in value
    return value == condition


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif not _match_condition(_get_path(doc, key), condition):
            return False
    return True


def _sort_key(doc: Dict[str, Any], field: str) -> Tuple[int, Any]:
    # Missing and null values sort lowest, as in MongoDB.
    value = _get_path(doc, field)
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=None):
        keys = key if isinstance(key, list) else [(key, direction or 1)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: _sort_key(d, field), reverse=order == -1)
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _window(self) -> List[Dict[str, Any]]:
        docs = self._docs[self._skip :]
        return docs[: self._limit] if self._limit else docs

    async def to_list(self, length: Optional[int] = None):
        await asyncio.sleep(0)
        docs = self._window()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Subset of AsyncIOMotorCollection used by the allocator."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.indexes: List[Dict[str, Any]] = []
        self._failures: Dict[str, Tuple[int, Exception]] = {}

    # --- failure injection ---

    def fail_on(self, operation: str, after: int = 0, error: Optional[Exception] = None) -> None:
        """Raise `error` once from `operation` after `after` calls have succeeded."""
        self._failures[operation] = (after, error or PyMongoError(f"injected {operation} failure"))

    async def _enter(self, operation: str) -> None:
        await asyncio.sleep(0)
        if operation in self._failures:
            remaining, error = self._failures[operation]
            if remaining <= 0:
                del self._failures[operation]
                raise error
            self._failures[operation] = (remaining - 1, error)

    # --- indexes ---

    async def create_index(self, keys, **options):
        await asyncio.sleep(0)
        self.indexes.append({"keys": [k for k, _ in keys], **options})
        return options.get("name")

    def _check_unique(self, candidate: Dict[str, Any]) -> None:
        for index in self.indexes:
            if not index.get("unique"):
                continue
            partial = index.get("partialFilterExpression")
            if partial and not matches(candidate, partial):
                continue
            key = tuple(_get_path(candidate, f) for f in index["keys"])
            for doc in self.docs:
                if doc["_id"] == candidate["_id"]:
                    continue
                if partial and not matches(doc, partial):
                    continue
                if tuple(_get_path(doc, f) for f in index["keys"]) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {index.get('name')}", 11000
                    )

    # --- reads ---

    def find(self, query: Optional[Dict[str, Any]] = None, projection=None, session=None) -> FakeCursor:
        if "find" in self._failures:
            raise self._failures.pop("find")[1]
        return FakeCursor([copy.deepcopy(d) for d in self.docs if matches(d, query)])

    async def find_one(self, query: Optional[Dict[str, Any]] = None, projection=None, session=None):
        await self._enter("find_one")
        for doc in self.docs:
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def count_documents(self, query: Dict[str, Any], session=None) -> int:
        await self._enter("count_documents")
        return sum(1 for d in self.docs if matches(d, query))

    # --- writes ---

    async def insert_one(self, doc: Dict[str, Any], session=None):
        await self._enter("insert_one")
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc)
        self.docs.append(copy.deepcopy(doc))
        return InsertOneResult(doc["_id"], True)

    async def insert_many(self, docs: List[Dict[str, Any]], ordered: bool = True, session=None):
        await self._enter("insert_many")
        inserted = []
        for index, doc in enumerate(docs):
            doc.setdefault("_id", ObjectId())
            try:
                self._check_unique(doc)
            except DuplicateKeyError as e:
                raise BulkWriteError(
                    {"writeErrors": [{"index": index, "code": 11000, "errmsg": str(e)}], "nInserted": len(inserted)}
                ) from e
            self.docs.append(copy.deepcopy(doc))
            inserted.append(doc["_id"])
        return InsertManyResult(inserted, True)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], session=None):
        await self._enter("update_one")
        for position, doc in enumerate(self.docs):
            if not matches(doc, query):
                continue
            updated = copy.deepcopy(doc)
            for path, value in update.get("$set", {}).items():
                _set_path(updated, path, value)
            for path, delta in update.get("$inc", {}).items():
                current = _get_path(updated, path)
                _set_path(updated, path, (0 if current is _MISSING else current) + delta)
            for path in update.get("$unset", {}):
                _unset_path(updated, path)
            self._check_unique(updated)
            self.docs[position] = updated
            return UpdateResult({"n": 1, "nModified": int(updated != doc)}, True)
        return UpdateResult({"n": 0, "nModified": 0}, True)

    async def delete_one(self, query: Dict[str, Any], session=None):
        await self._enter("delete_one")
        for position, doc in enumerate(self.docs):
            if matches(doc, query):
                del self.docs[position]
                return DeleteResult({"n": 1}, True)
        return DeleteResult({"n": 0}, True)

    async def delete_many(self, query: Dict[str, Any], session=None):
        await self._enter("delete_many")
        before = len(self.docs)
        self.docs = [d for d in self.docs if not matches(d, query)]
        return DeleteResult({"n": before - len(self.docs)}, True)


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def db(fake_db):
    """Real DatabaseManager bound to the in-memory database, without transactions."""
    manager = DatabaseManager()
    manager.database = fake_db
    manager.transactions_supported = False
    return manager


@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set_with_expiry = AsyncMock()
    redis.health_check = AsyncMock(return_value=True)
    return redis


@pytest.fixture
async def ipam(db, mock_redis):
    await create_ipam_indexes(db)
    return IPAMManager(db_manager_instance=db, redis_manager_instance=mock_redis, address_space=AddressSpace())


@pytest.fixture
def regions(fake_db):
    return fake_db["ipam_regions"]


@pytest.fixture
def hosts(fake_db):
    return fake_db["ipam_hosts"]


@pytest.fixture
def audit_log(fake_db):
    return fake_db["ipam_audit_history"]


@pytest.fixture
def comments(fake_db):
    return fake_db["ipam_comments"]
