"""Database module for the IPAM allocator."""

import asyncio
from dataclasses import dataclass
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError, ServerSelectionTimeoutError

from ipam_allocator.config import settings
from ipam_allocator.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")


@dataclass
class AtomicStep:
    """One write of a multi-document state change.

    `apply` receives the transaction session (None outside a transaction).
    `undo` reverses the write and is only used when transactions are unavailable.
    """

    description: str
    apply: Callable[[Optional[Any]], Awaitable[Any]]
    undo: Optional[Callable[[], Awaitable[Any]]] = None


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3
        # Set after connect(); True when connected to a replica-set or mongos that supports transactions
        self.transactions_supported: Optional[bool] = None

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)

                if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
                    connection_string = (
                        f"mongodb://{settings.MONGODB_USERNAME}:"
                        f"{settings.MONGODB_PASSWORD.get_secret_value()}@"
                        f"{settings.MONGODB_URL.replace('mongodb://', '')}"
                    )
                    db_logger.debug("Using authenticated connection to MongoDB")
                else:
                    connection_string = settings.MONGODB_URL
                    db_logger.debug("Using unauthenticated connection to MongoDB")

                db_logger.info(
                    "MongoDB connection config - URL: %s, Database: %s, ServerTimeout: %dms, ConnTimeout: %dms",
                    settings.MONGODB_URL,
                    settings.MONGODB_DATABASE,
                    settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    settings.MONGODB_CONNECTION_TIMEOUT,
                )

                self.client = AsyncIOMotorClient(
                    connection_string,
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    maxPoolSize=50,
                    minPoolSize=5,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start

                # Replica set (setName) or mongos (msg == 'isdbgrid') -> transactions supported
                try:
                    hello = await self.client.admin.command({"hello": 1})
                    self.transactions_supported = bool(hello.get("setName") or hello.get("msg") == "isdbgrid")
                except OperationFailure:
                    self.transactions_supported = False

                total_duration = time.time() - start_time
                perf_logger.info(
                    "MongoDB connection established successfully in %.3fs (ping: %.3fs)", total_duration, ping_duration
                )
                db_logger.info(
                    "Successfully connected to MongoDB database: %s (transactions_supported=%s)",
                    settings.MONGODB_DATABASE,
                    self.transactions_supported,
                )
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                attempt_duration = time.time() - attempt_start
                perf_logger.warning("Connection attempt %d failed after %.3fs", attempt + 1, attempt_duration)
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client:
            self.client.close()
            self.client = None
            self.database = None
            db_logger.info("Successfully disconnected from MongoDB")
        else:
            db_logger.warning("Disconnect called but no active MongoDB connection found")

    async def health_check(self) -> bool:
        """Check database connection health"""
        start_time = time.time()
        try:
            if self.client is None:
                health_logger.warning("Health check failed: No database client available")
                return False
            await self.client.admin.command("ping")
            perf_logger.debug("Database health check completed in %.3fs", time.time() - start_time)
            return True
        except PyMongoError as e:
            perf_logger.warning("Database health check failed after %.3fs", time.time() - start_time)
            health_logger.error("Database health check failed: %s", e)
            return False

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a collection from the database"""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def run_atomic(self, steps: Sequence[AtomicStep], operation: str) -> List[Any]:
        """Apply every step or none of them.

        Inside a MongoDB transaction when the deployment supports one. Otherwise the
        steps run in order and, when one fails, the undo of every completed step runs
        in reverse order before the original error is re-raised.

        Returns:
            The result of each step's apply, in order.
        """
        start_time = time.time()
        if self.transactions_supported and self.client is not None:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    results = [await step.apply(session) for step in steps]
            perf_logger.debug(
                "Atomic %s committed %d steps in a transaction in %.3fs", operation, len(steps), time.time() - start_time
            )
            return results

        completed: List[AtomicStep] = []
        results = []
        try:
            for step in steps:
                results.append(await step.apply(None))
                completed.append(step)
        except Exception as e:
            db_logger.warning(
                "Atomic %s failed at step %d/%d (%s): %s; compensating %d completed steps",
                operation,
                len(completed) + 1,
                len(steps),
                steps[len(completed)].description,
                e,
                len(completed),
            )
            await self._compensate(completed, operation)
            raise
        perf_logger.debug(
            "Atomic %s applied %d steps without a transaction in %.3fs", operation, len(steps), time.time() - start_time
        )
        return results

    async def _compensate(self, completed: List[AtomicStep], operation: str) -> None:
        for step in reversed(completed):
            if step.undo is None:
                continue
            try:
                await step.undo()
            except Exception as undo_error:
                db_logger.error(
                    "Compensation for %s failed while undoing '%s': %s",
                    operation,
                    step.description,
                    undo_error,
                    exc_info=True,
                )

    def log_query_start(
        self, collection_name: str, operation: str, query: Optional[Dict] = None, options: Optional[Dict] = None
    ) -> float:
        """Log the start of a database query and return start time for performance tracking"""
        start_time = time.time()
        safe_query = self._sanitize_query_for_logging(query) if query else {}
        safe_options = self._sanitize_query_for_logging(options) if options else {}
        db_logger.debug(
            "Starting %s operation on collection '%s' - Query: %s, Options: %s",
            operation,
            collection_name,
            safe_query,
            safe_options,
        )
        return start_time

    def log_query_success(
        self,
        collection_name: str,
        operation: str,
        start_time: float,
        result_count: Optional[int] = None,
        result_info: Optional[str] = None,
    ):
        """Log successful completion of a database query with performance metrics"""
        duration = time.time() - start_time
        if result_count is not None:
            perf_logger.info(
                "%s on '%s' completed successfully in %.3fs - %d records",
                operation,
                collection_name,
                duration,
                result_count,
            )
        else:
            perf_logger.info("%s on '%s' completed successfully in %.3fs", operation, collection_name, duration)
        if result_info:
            db_logger.debug("Additional result info for %s on '%s': %s", operation, collection_name, result_info)

    def log_query_error(
        self, collection_name: str, operation: str, start_time: float, error: Exception, query: Optional[Dict] = None
    ):
        """Log database query errors with context and performance metrics"""
        duration = time.time() - start_time
        safe_query = self._sanitize_query_for_logging(query) if query else {}
        perf_logger.error("%s on '%s' failed after %.3fs", operation, collection_name, duration)
        db_logger.error(
            "%s operation failed on collection '%s' after %.3fs - Error: %s, Query: %s",
            operation,
            collection_name,
            duration,
            error,
            safe_query,
        )

    def _sanitize_query_for_logging(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Truncate bulky values (snapshots, change lists) before they reach the log"""
        if not isinstance(query, dict):
            return {}
        sanitized: Dict[str, Any] = {}
        for key, value in query.items():
            if isinstance(value, dict):
                sanitized[key] = self._sanitize_query_for_logging(value)
            elif isinstance(value, list) and len(value) > 10:
                sanitized[key] = f"[{len(value)} items]"
            else:
                sanitized[key] = value
        return sanitized


db_manager = DatabaseManager()
