"""Sync Service - FastAPI application."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shared.config import AppConfig, get_env, load_config
from shared.db_models import get_kind_spec, row_to_dict
from shared.db_operations import RecordStore
from shared.encryption import EncryptionService
from shared.errors import ActionError
from services.sync_service.coordinator import SyncCoordinator, build_coordinator
from services.sync_service.read_state import ReadStateService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
store: Optional[RecordStore] = None
encryption_service: Optional[EncryptionService] = None
app_config: Optional[AppConfig] = None
coordinator: Optional[SyncCoordinator] = None
read_state_service: Optional[ReadStateService] = None
reload_lock = asyncio.Lock()


def _load_app_config() -> AppConfig:
    return load_config(encryption_service=encryption_service)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global store, encryption_service, app_config, coordinator, read_state_service

    logger.info("Sync Service starting up...")

    store = RecordStore()
    store.create_tables()
    logger.info(f"Record store initialized at {store.database_url}")

    if get_env("CONFIG_ENCRYPTION_KEY"):
        encryption_service = EncryptionService()
        logger.info("Encryption service initialized")

    app_config = _load_app_config()
    coordinator = build_coordinator(app_config, store)
    read_state_service = ReadStateService(store, coordinator.adapters)
    await coordinator.start()

    yield

    # Cleanup
    await coordinator.stop()
    store.close()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Mission Control Sync Service",
    description="Synchronizes calendar, Shortcut, GitHub, Todoist and Figma into one local store",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.exception_handler(ActionError)
async def action_error_handler(request: Request, exc: ActionError):
    """Failed user actions are reported inline so the user can retry."""
    logger.warning(f"Action failed on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY if exc.retryable else status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": str(exc),
            "retryable": exc.retryable
        }
    )


def _source_statuses() -> dict:
    return {name: source.to_dict() for name, source in coordinator.status().items()}


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with store.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "scheduler_running": coordinator.running,
        "dependencies": {
            "database": "up" if db_healthy else "down"
        },
        "sources": _source_statuses()
    }


@app.get("/api/data", status_code=status.HTTP_200_OK)
async def get_dashboard_data():
    """
    Everything the dashboard shows, with per-source freshness.

    Sources whose latest run failed are flagged stale; their records are the
    ones from the last successful run.
    """
    return {
        "configured": bool(app_config and app_config.is_configured),
        "data": store.get_dashboard_data(),
        "sources": _source_statuses()
    }


@app.get("/api/records/{kind}", status_code=status.HTTP_200_OK)
async def get_records(kind: str):
    """Current committed snapshot of one record kind."""
    try:
        get_kind_spec(kind)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown record kind: {kind}"
        )
    records = store.get_records(kind)
    return {
        "kind": kind,
        "count": len(records),
        "records": [row_to_dict(row) for row in records]
    }


class SyncTriggerResponse(BaseModel):
    """Response model for a manual sync trigger."""
    results: List[dict]


@app.post("/api/sync/{source}", response_model=SyncTriggerResponse, status_code=status.HTTP_200_OK)
async def trigger_sync(source: str):
    """
    Sync one source now, or every configured source with ``all``.

    Returns once the run completes; a source that is already syncing returns
    the result of the run in flight.
    """
    logger.info(f"Manual sync requested for {source}")
    if source == "all":
        results = await coordinator.trigger_all()
    else:
        try:
            results = [await coordinator.trigger(source)]
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Unknown source: {source}"
            )
    return SyncTriggerResponse(results=[result.to_dict() for result in results])


@app.get("/api/sync/status", status_code=status.HTTP_200_OK)
async def get_sync_status():
    """Last success, last error and in-flight flag per source."""
    return {
        "scheduler_running": coordinator.running,
        "sources": _source_statuses()
    }


class ActionResponse(BaseModel):
    """Response model for user actions."""
    success: bool
    removed: Optional[int] = None


@app.post(
    "/api/notifications/{kind}/{notification_id}/dismiss",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK
)
async def dismiss_notification(kind: str, notification_id: str):
    """Mark one notification read at its source, then hide it."""
    await read_state_service.dismiss(kind, notification_id)
    return ActionResponse(success=True, removed=1)


@app.post(
    "/api/notifications/{kind}/dismiss-all",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK
)
async def dismiss_all_notifications(kind: str):
    """Mark every notification of a kind read at its source, then hide them."""
    removed = await read_state_service.dismiss_all(kind)
    return ActionResponse(success=True, removed=removed)


@app.post("/api/tasks/{task_id}/complete", response_model=ActionResponse, status_code=status.HTTP_200_OK)
async def complete_task(task_id: str):
    """Complete a task at its source, then hide it."""
    await read_state_service.complete_task(task_id)
    return ActionResponse(success=True, removed=1)


@app.post("/internal/config/reload", status_code=status.HTTP_200_OK)
async def reload_config():
    """
    Reload the configuration file and restart every schedule.

    A new coordinator is built for the new configuration and swapped in
    first, so requests arriving during the reload never reach the old
    adapters. The old one is then stopped (in-flight runs finish first)
    before the new one starts.
    """
    global app_config, coordinator, read_state_service

    async with reload_lock:
        new_config = _load_app_config()
        new_coordinator = build_coordinator(new_config, store)
        old_coordinator = coordinator

        app_config = new_config
        coordinator = new_coordinator
        read_state_service = ReadStateService(store, new_coordinator.adapters)

        await old_coordinator.stop()
        await new_coordinator.start()

    logger.info(f"Configuration reloaded, enabled sources: {new_coordinator.enabled_sources}")
    return {
        "status": "reloaded",
        "enabled_sources": new_coordinator.enabled_sources
    }


if __name__ == "__main__":
    import uvicorn

    port = int(get_env("SYNC_SERVICE_PORT", "1337"))
    uvicorn.run(app, host="0.0.0.0", port=port)
