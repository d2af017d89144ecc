"""
Main FastAPI application module for the IPAM allocator.

The lifespan connects MongoDB, ensures the IPAM indexes (the partial unique indexes are
required for cross-process allocation safety) and closes connections on shutdown.
"""

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI
import uvicorn

from ipam_allocator.config import settings
from ipam_allocator.database import db_manager
from ipam_allocator.database.ipam_indexes import create_ipam_indexes
from ipam_allocator.managers.logging_manager import get_logger
from ipam_allocator.managers.redis_manager import redis_manager
from ipam_allocator.routes.ipam import router as ipam_router

logger = get_logger(prefix="[Main]")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Connect storage on startup and release it on shutdown."""
    startup_start_time = time.time()
    logger.info("Initiating database connection...")
    await db_manager.connect()

    logger.info("Creating/verifying IPAM indexes...")
    if not await create_ipam_indexes(db_manager):
        logger.warning("Some IPAM indexes could not be created; cross-process allocation safety is degraded")

    logger.info("IPAM allocator startup completed in %.3fs", time.time() - startup_start_time)
    try:
        yield
    finally:
        logger.info("Shutting down IPAM allocator...")
        await redis_manager.close()
        await db_manager.disconnect()


app = FastAPI(
    title="IPAM Allocator API",
    description="""
    ## IPAM Allocator API

    Hierarchical allocation of the private 10.0.0.0/8 space:
    Global > Continent > Country (X range) > Region (10.X.Y.0/24) > Host (10.X.Y.Z).

    ### Features
    - Deterministic /24 and host allocation with configurable slot reuse
    - Atomic batch allocation and cascade retirement
    - Utilization snapshots and exhaustion forecasts
    - Append-only audit trail of every change
    """,
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "IPAM - Countries", "description": "Static continent/country address partition"},
        {"name": "IPAM - Regions", "description": "/24 region allocation and retirement"},
        {"name": "IPAM - Hosts", "description": "Host address allocation and release"},
        {"name": "IPAM - Analytics", "description": "Utilization and forecasting"},
        {"name": "IPAM - Audit", "description": "Audit history"},
    ],
)
app.include_router(ipam_router)


def run() -> None:
    """Console entry point."""
    uvicorn.run("ipam_allocator.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)


if __name__ == "__main__":
    run()
