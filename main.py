from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from config.settings import get_environment_info, get_settings, validate_startup
from errors.handlers import REQUEST_ID_HEADER, register_exception_handlers
from health.service import HealthMonitor
from session.initializer import (
    ActiveStoreHandle,
    initialize_session_store,
    shutdown_session_store,
)
from telemetry.service import initialize_telemetry, set_request_id

logger = logging.getLogger(__name__)

SERVICE_NAME = "Session Store Service"
SERVICE_VERSION = "1.0.0"

# Load settings from centralized configuration
settings = get_settings()

# Initialize telemetry service for structured logging and metrics
telemetry_service = initialize_telemetry(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the session store handle at startup and release it at shutdown."""
    logger.info(f"Starting {SERVICE_NAME}...", extra={"extra_data": get_environment_info()})

    # A bad configuration is the only thing allowed to stop startup
    store_config = validate_startup()

    handle = await initialize_session_store(store_config)
    if handle.connection_manager is not None:
        telemetry_service.observe_connection(handle.connection_manager)

    monitor = HealthMonitor(handle, poll_interval=settings.health_poll_interval)
    if settings.health_poll_interval > 0:
        monitor.start()

    app.state.session_store = handle
    app.state.health_monitor = monitor

    yield

    logger.info(f"Shutting down {SERVICE_NAME}...")
    await monitor.stop()
    await shutdown_session_store(handle)


app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)

# Register exception handlers for structured error responses
register_exception_handlers(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Propagate or assign an X-Request-ID for log correlation."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:16]}"
    request.state.request_id = request_id
    set_request_id(request_id)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def get_session_store(request: Request) -> ActiveStoreHandle:
    """Dependency returning the process-wide session store handle."""
    return request.app.state.session_store


def get_health_monitor(request: Request) -> HealthMonitor:
    """Dependency returning the session store health monitor."""
    return request.app.state.health_monitor


@app.get("/health")
async def health(monitor: HealthMonitor = Depends(get_health_monitor)):
    """Basic health check - the service is accepting requests."""
    result = await monitor.check_health()
    return {
        "status": result["status"],
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": result["timestamp"]
    }


@app.get("/health/live")
async def health_live(monitor: HealthMonitor = Depends(get_health_monitor)):
    """
    Liveness check endpoint.

    Returns 200 OK while the process is running, regardless of the session store.
    """
    return await monitor.check_liveness()


@app.get("/health/ready")
async def health_ready(monitor: HealthMonitor = Depends(get_health_monitor)):
    """
    Readiness check endpoint.

    Returns 200 when sessions can be served (including from the fallback
    store, reported as "degraded") and 503 when they cannot.
    """
    status = await monitor.check_readiness()
    status_code = 503 if status.status == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=status.to_dict())


@app.get("/health/sessions")
async def session_stats(store: ActiveStoreHandle = Depends(get_session_store)):
    """Connection health and session counts for the active store."""
    snapshot = await store.stats()
    return snapshot.to_dict()


@app.post("/health/sessions/cleanup")
async def session_cleanup(store: ActiveStoreHandle = Depends(get_session_store)):
    """
    Run a cleanup pass on the active store.

    Raises StoreUnavailable (503) while Redis is unreachable.
    """
    report = await store.cleanup()
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn
    import os
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level=settings.log_level.lower())
