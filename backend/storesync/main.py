import asyncio
import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storesync.config import settings
from storesync.models_sqlalchemy import Base, SessionLocal, engine
from storesync.models_sqlalchemy import models, sync_jobs  # noqa: F401  (register tables)
from storesync.routers import sync, sync_jobs as sync_jobs_router, webhooks
from storesync.services.container import build_services
from storesync.utils.logger import logger
from storesync.workers import run_job_cleanup_worker_loop

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

app = FastAPI(title="Store Sync API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router)
app.include_router(sync_jobs_router.router)
app.include_router(webhooks.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Store Sync API starting up...")

    if settings.DATABASE_URL.startswith("sqlite"):
        logger.info("Using SQLite database - creating tables if missing")
        Base.metadata.create_all(bind=engine)
    else:
        logger.info("Using PostgreSQL database - schema is managed by Alembic")

    services = build_services(SessionLocal)
    app.state.services = services
    paused = services.jobs.recover_orphaned_jobs()
    if paused:
        logger.warning(f"Paused {paused} sync jobs left running by a previous process")

    app.state.cleanup_task = asyncio.create_task(run_job_cleanup_worker_loop(SessionLocal))
    logger.info(f"Remote store configured: {services.client.is_configured()}")


@app.on_event("shutdown")
async def shutdown_event():
    cleanup_task = getattr(app.state, "cleanup_task", None)
    if cleanup_task is not None:
        cleanup_task.cancel()
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.jobs.shutdown()
    logger.info("Store Sync API stopped")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}
