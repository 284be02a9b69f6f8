"""
FastAPI main application for the crop health backend.

Endpoints:
- GET /health - Service health check
- GET|POST /satellite/health - Crop health insight for an AOI (cached)
- GET|POST /satellite/ingest - Scene catalog search, persisted as a snapshot
- GET /satellite/ingest?action=history - Stored ingest snapshots
"""

import time
import traceback
from datetime import date
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .aoi_resolver import resolve_aoi
from .api_models import (
    IngestData,
    IngestEnvelope,
    IngestHistoryData,
    ServiceHealthResponse,
    ServiceStatus,
)
from .config import DEFAULT_INGEST_MAX_CLOUD_COVER, DEFAULT_MAX_RESULTS, settings
from .database import check_database_health, create_tables
from .errors import SatelliteServiceError, ValidationError
from .logger_config import configure_root_logger, get_logger
from .orchestrator import MAX_RESULTS_LIMIT, HealthOrchestrator, HealthRequest
from .profile_store import ProfileStore
from .scene_catalog import search_scenes
from .snapshot_store import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT, SnapshotStore
from .token_broker import TokenBroker, token_broker
from .utils import get_param, parse_bool, parse_int, parse_number, utcnow

# Configure logging
configure_root_logger()
logger = get_logger("main_api")

# Create FastAPI app
app = FastAPI(
    title="Crop Health Satellite API",
    description="Sentinel-2 crop health insights with cached, fallback-aware analysis",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Dependencies ==============

_orchestrator: Optional[HealthOrchestrator] = None


def get_orchestrator() -> HealthOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = HealthOrchestrator()
    return _orchestrator


def get_snapshot_store() -> SnapshotStore:
    return SnapshotStore()


def get_profile_store() -> ProfileStore:
    return ProfileStore()


def get_token_broker() -> TokenBroker:
    return token_broker


async def collect_params(request: Request) -> Dict[str, Any]:
    """Query parameters, overridden by a JSON object body on POST."""
    params: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        raw = await request.body()
        if raw.strip():
            try:
                body = await request.json()
            except ValueError:
                raise ValidationError("Request body must be a JSON object")
            if not isinstance(body, dict):
                raise ValidationError("Request body must be a JSON object")
            params.update(body)
    return params


def parse_date_param(params: Dict[str, Any], key: str) -> Optional[date]:
    raw = (get_param(params, key) or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        raise ValidationError(f"{key} must be an ISO date (YYYY-MM-DD), got '{raw}'")


# ============== Middleware ==============

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with method, path, latency, and status."""
    start_time = time.time()

    # Get client IP
    client_ip = request.client.host if request.client else "unknown"

    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        latency_ms = (time.time() - start_time) * 1000

        logger.info(
            f"{request.method} {request.url.path} - "
            f"client={client_ip} status={status_code} latency={latency_ms:.2f}ms"
        )

    return response


# ============== Startup/Shutdown ==============

@app.on_event("startup")
async def startup_event():
    """Initialize database and log startup."""
    logger.info("Starting Crop Health API...")
    await create_tables()

    # Log configuration warnings
    for w in settings.validate():
        logger.warning(f"Config warning: {w}")

    logger.info("Crop Health API started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean shutdown."""
    logger.info("Shutting down Crop Health API...")


# ============== Health Check ==============

@app.get("/health")
async def health_check(broker: TokenBroker = Depends(get_token_broker)):
    """
    Health check for the database and the CDSE token endpoint.
    Missing CDSE credentials count as degraded: sample scenes are still served.
    """
    logger.info("Performing health check...")
    services = []

    # Database
    start = time.time()
    db_ok, db_err = await check_database_health()
    services.append(ServiceStatus(
        name="database",
        status="healthy" if db_ok else "unhealthy",
        latency_ms=(time.time() - start) * 1000,
        message=db_err,
        last_checked=utcnow()
    ))

    # CDSE OAuth
    start = time.time()
    try:
        await broker.get_token()
        cdse_status, cdse_err = "healthy", None
    except SatelliteServiceError as e:
        cdse_status = "degraded" if e.status_code == 503 else "unhealthy"
        cdse_err = str(e)
    services.append(ServiceStatus(
        name="cdse_sentinel_hub",
        status=cdse_status,
        latency_ms=(time.time() - start) * 1000,
        message=cdse_err,
        last_checked=utcnow()
    ))

    if not db_ok:
        overall_status = "unhealthy"
    elif any(s.status != "healthy" for s in services):
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    response = ServiceHealthResponse(status=overall_status, services=services, timestamp=utcnow())
    return response.model_dump(mode="json", by_alias=True)


# ============== Satellite Health ==============

@app.api_route("/satellite/health", methods=["GET", "POST"])
async def satellite_health(
    request: Request,
    orchestrator: HealthOrchestrator = Depends(get_orchestrator),
):
    """
    Crop health insight for the resolved AOI.

    Served from cache while fresh; falls back to sample scenes or stale
    cache when the provider is unavailable.
    """
    health_request = HealthRequest.from_params(await collect_params(request))
    status_code, envelope = await orchestrator.run(health_request)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json", by_alias=True))


# ============== Satellite Ingest ==============

@app.api_route("/satellite/ingest", methods=["GET", "POST"])
async def satellite_ingest(
    request: Request,
    snapshot_store: SnapshotStore = Depends(get_snapshot_store),
    profile_store: ProfileStore = Depends(get_profile_store),
):
    """Catalog search for the resolved AOI, or snapshot history with action=history."""
    params = await collect_params(request)
    user_id = (get_param(params, "userId") or "").strip() or None

    if (get_param(params, "action") or "").strip().lower() == "history":
        limit = parse_int(get_param(params, "limit"), DEFAULT_HISTORY_LIMIT, "limit", 1, MAX_HISTORY_LIMIT)
        history = await snapshot_store.history(
            user_id=user_id,
            aoi_id=(get_param(params, "aoiId") or "").strip() or None,
            limit=limit,
        )
        envelope = IngestEnvelope(success=True, data=IngestHistoryData(history=history), error=None)
        return envelope.model_dump(mode="json", by_alias=True)

    start_date = parse_date_param(params, "startDate")
    end_date = parse_date_param(params, "endDate")
    if start_date and end_date and start_date > end_date:
        raise ValidationError("startDate must not be after endDate")

    max_cloud_cover = parse_number(
        get_param(params, "maxCloudCover"), DEFAULT_INGEST_MAX_CLOUD_COVER, "maxCloudCover", 0, 100
    )
    max_results = parse_int(get_param(params, "maxResults"), DEFAULT_MAX_RESULTS, "maxResults", 1, MAX_RESULTS_LIMIT)
    allow_fallback = parse_bool(get_param(params, "allowFallback"), True, "allowFallback")

    resolved = await resolve_aoi(
        user_id=user_id,
        query_bbox=get_param(params, "bbox"),
        aoi_id=get_param(params, "aoiId"),
        aoi_name=get_param(params, "aoiName"),
        profile_store=profile_store,
    )

    result = await search_scenes(
        aoi=resolved.aoi,
        start_date=start_date,
        end_date=end_date,
        max_cloud_cover=max_cloud_cover,
        max_results=max_results,
        allow_fallback=allow_fallback,
    )

    snapshot_id = None
    try:
        snapshot_id = await snapshot_store.save(result, user_id=user_id)
    except SQLAlchemyError as e:
        logger.error(f"Failed to persist ingest snapshot for aoi={resolved.aoi.id}: {e}")

    envelope = IngestEnvelope(
        success=True,
        data=IngestData(ingest=result, persisted_snapshot_id=snapshot_id),
        error=None,
    )
    return envelope.model_dump(mode="json", by_alias=True)


# ============== Error Handlers ==============

@app.exception_handler(SatelliteServiceError)
async def satellite_error_handler(request: Request, exc: SatelliteServiceError):
    """Typed pipeline errors map to their status code inside the usual envelope."""
    logger.warning(f"{type(exc).__name__} in {request.url.path}: {exc}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "data": None, "error": exc.message}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler to ensure consistent error responses."""
    logger.error(f"Unhandled exception in {request.url.path}: {exc}\n{traceback.format_exc()}")

    return JSONResponse(
        status_code=500,
        content={"success": False, "data": None, "error": "Internal server error"}
    )
