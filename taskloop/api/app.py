"""
API_APP
=======

FastAPI admin API for taskloop.

Endpoints:
    GET    /health                    Health check
    GET    /version                   Version information
    GET    /resources                 Resource report (limits, metrics, alerts, trends)
    GET    /resources/stress          Whether the system is under stress
    PATCH  /resources/limits          Update resource limits
    GET    /scheduler/stats           Processed execution counts (?store_id=)
    GET    /scheduler/ticks           Last tick result per store
    POST   /scheduler/cleanup         Delete old processed-execution claims

Usage:
    uvicorn taskloop.api.app:app --port 8400
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .. import __version__
from ..config.loader import GlobalConfig, load_global_config
from ..monitor import ResourceMonitor
from ..scheduler.scheduler import TaskScheduler
from ..scheduler.tracker import ProcessedExecutionTracker

logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str


class StressResponse(BaseModel):
    under_stress: bool


class LimitsUpdateRequest(BaseModel):
    """Partial resource limit update; omitted fields keep their value."""
    max_concurrent_llm_calls: Optional[int] = Field(None, ge=1)
    max_queued_messages: Optional[int] = Field(None, ge=0)
    max_conversations_per_store: Optional[int] = Field(None, ge=0)
    max_memory_usage_mb: Optional[int] = Field(None, ge=1)
    max_cpu_usage_percent: Optional[int] = Field(None, ge=1, le=100)
    message_rate_limit: Optional[int] = Field(None, ge=0)
    llm_call_timeout_ms: Optional[int] = Field(None, ge=1)


class CleanupRequest(BaseModel):
    max_age_days: Optional[float] = None


class CleanupResponse(BaseModel):
    deleted: int
    max_age_days: float


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    scheduler: Optional[TaskScheduler] = None,
    monitor: Optional[ResourceMonitor] = None,
    config: Optional[GlobalConfig] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Missing collaborators are built lazily from the global config on first
    use, so importing this module has no side effects. Whatever the app built
    itself is released on shutdown; injected objects belong to the caller.
    Scheduler stats and cleanup only need the processed-execution tracker, so
    no LLM provider is created here.
    """
    _config = config or (scheduler.config if scheduler else None)
    _monitor = monitor
    _tracker: Optional[ProcessedExecutionTracker] = scheduler.tracker if scheduler else None
    owned: dict = {}

    def get_config() -> GlobalConfig:
        nonlocal _config
        if _config is None:
            _config = load_global_config()
        return _config

    def get_monitor() -> ResourceMonitor:
        nonlocal _monitor
        if _monitor is None:
            _monitor = ResourceMonitor(get_config().resources)
            owned["monitor"] = _monitor
        return _monitor

    def get_tracker() -> ProcessedExecutionTracker:
        nonlocal _tracker
        if _tracker is None:
            _tracker = ProcessedExecutionTracker(get_config().scheduler.data_path)
            _tracker.initialize()
            owned["tracker"] = _tracker
        return _tracker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if "monitor" in owned:
            owned.pop("monitor").destroy()
        if "tracker" in owned:
            owned.pop("tracker").close()
        logger.info("taskloop API shut down")

    app = FastAPI(
        title="taskloop API",
        description="Admin API for the taskloop orchestrator",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ========================================================================
    # SYSTEM
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/version", tags=["System"])
    async def get_version():
        return {
            "name": "taskloop",
            "version": __version__,
            "description": "Agent task-execution orchestrator",
        }

    # ========================================================================
    # RESOURCES
    # ========================================================================

    @app.get("/resources", tags=["Resources"])
    def get_resources():
        """Current limits, metrics, recent alerts and trends."""
        return get_monitor().get_resource_report().to_dict()

    @app.get("/resources/stress", response_model=StressResponse, tags=["Resources"])
    def get_stress():
        return StressResponse(under_stress=get_monitor().is_system_under_stress())

    @app.patch("/resources/limits", tags=["Resources"])
    def update_limits(request: LimitsUpdateRequest):
        changes = request.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="No limits given")
        try:
            limits = get_monitor().update_limits(**changes)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return limits.to_dict()

    # ========================================================================
    # SCHEDULER
    # ========================================================================

    @app.get("/scheduler/stats", tags=["Scheduler"])
    def get_scheduler_stats(store_id: Optional[str] = Query(None)):
        return get_tracker().get_stats(store_id)

    @app.get("/scheduler/ticks", tags=["Scheduler"])
    def get_scheduler_ticks():
        """Last tick per store, when a scheduler runs in this process."""
        return scheduler.get_last_ticks() if scheduler is not None else {}

    @app.post("/scheduler/cleanup", response_model=CleanupResponse, tags=["Scheduler"])
    def cleanup_executions(request: CleanupRequest):
        """Delete processed-execution claims older than max_age_days (config default)."""
        max_age_days = request.max_age_days
        if max_age_days is None:
            max_age_days = get_config().scheduler.cleanup_max_age_days
        deleted = get_tracker().cleanup(max_age_days)
        logger.info(f"Cleanup via API removed {deleted} processed executions")
        return CleanupResponse(deleted=deleted, max_age_days=max_age_days)

    return app


# ============================================================================
# APPLICATION INSTANCE
# ============================================================================

app = create_app()


# ============================================================================
# MAIN
# ============================================================================

def main(host: Optional[str] = None, port: Optional[int] = None):
    """Run the API server."""
    api_config = load_global_config().api
    host = host or api_config.host
    port = port or api_config.port
    logger.info(f"Starting taskloop API on http://{host}:{port} (docs at /docs)")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
