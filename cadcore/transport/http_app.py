# cadcore/transport/http_app.py
"""
HTTP surface of the dispatch core.

Route handlers stay thin: parse the request, call one component, return
its snapshot.  Every rejection is a DispatchError and is mapped to JSON
by one exception handler, carrying the current record where there is one.

    /api/cad/{units,calls,bolos,backup,tactical}          POST create, GET list
    /api/cad/{family}/{id}                                 GET one
    /api/cad/{family}/{id}/transition                      POST {action, params}
    /api/cad/events?viewer=&after=                         polling feed
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cadcore.config import settings
from cadcore.core.domain import DISPATCHERS, ListQuery
from cadcore.core.errors import DispatchError, DispatchValidationError
from cadcore.core.service import DispatchCore, build_dispatch_core
from cadcore.infra.bolo_sweeper import BoloExpirySweeper
from cadcore.infra.db_async import close_pool, init_pool
from cadcore.infra.event_feed import InMemoryEventFeed
from cadcore.infra.health_checks_async import build_health_checker
from cadcore.infra.http_client import close_all_sessions
from cadcore.infra.logging_config import LogContext, get_logger, setup_logging
from cadcore.infra.memory_store import InMemoryEntityStore
from cadcore.infra.metrics import get_metrics_collector
from cadcore.infra.pg_entity_store_async import AsyncPostgresEntityStore
from cadcore.infra.pg_event_feed_async import AsyncPostgresEventFeed
from cadcore.infra.schema_validator import validate_schema_version
from cadcore.infra.webhook_transport import WebhookFanoutTransport
from cadcore.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from cadcore.transport.schemas import (
    BackupIn,
    BoloIn,
    CallIn,
    NoteIn,
    PageIn,
    TacticalIn,
    TransitionIn,
    UnitIn,
    feed_page_size,
    list_query,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_core(request: Request) -> DispatchCore:
    """Get the wired dispatch core from app state"""
    return request.app.state.core


def get_actor(request: Request) -> str:
    """Every mutation is attributed; the gateway in front sets the header."""
    actor = (request.headers.get(settings.actor_header) or "").strip()
    if not actor:
        raise DispatchValidationError(f"{settings.actor_header} header is required")
    return actor


def snapshot_of(core: DispatchCore, family: str, entity: Any) -> dict[str, Any]:
    if family == "bolos":
        return core.bolos.snapshot(entity)
    return entity.snapshot()


# ============================================================================
# LIFESPAN
# ============================================================================

async def _open_backend() -> tuple[Any, Any]:
    if not settings.uses_postgres:
        logger.info("Persistence backend: memory (single process)")
        return InMemoryEntityStore(), InMemoryEventFeed()

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    # Migrations are run separately: python -m cadcore.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}", extra=schema_result)
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m cadcore.infra.migrate",
            exc_info=True,
        )
        await close_pool()
        raise

    return AsyncPostgresEntityStore(), AsyncPostgresEventFeed()


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting dispatch core: env={settings.app_env}, backend={settings.persistence_backend}")

    store, feed = await _open_backend()

    transports = []
    webhook = WebhookFanoutTransport.from_settings()
    if webhook is not None:
        transports.append(webhook)
        logger.info("Webhook fanout enabled")

    core = build_dispatch_core(
        store,
        feed=feed,
        transports=transports,
        conflict_retries=settings.transition_conflict_retries,
    )
    fastapi_app.state.core = core
    fastapi_app.state.health_checker = build_health_checker(settings.uses_postgres)

    sweeper = None
    if settings.bolo_sweep_enabled:
        sweeper = BoloExpirySweeper(core.bolos)
        await sweeper.start()
    else:
        logger.info("BOLO sweeper skipped (bolo_sweep_enabled=false)")
    fastapi_app.state.sweeper = sweeper

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if sweeper is not None:
        await sweeper.stop()

    await close_all_sessions()

    if settings.uses_postgres:
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="CAD Dispatch Core",
    description="Unit status, calls, BOLOs, backup requests and tactical callouts",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", settings.actor_header],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Typed rejection -> status code + {error, detail, current}"""
    log_ctx = LogContext(logger, request_id=getattr(request.state, "request_id", None))
    if exc.status_code >= 500:
        log_ctx.error(f"Dispatch error: {exc.code}: {exc.detail}")
    else:
        log_ctx.info(f"Rejected: {exc.code}: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "http_error", "detail": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    detail = "Internal server error" if settings.is_production else f"{exc.__class__.__name__}: {exc}"
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "detail": detail},
    )


# ============================================================================
# HEALTH / METRICS
# ============================================================================

@app.get("/health")
def health():
    """Liveness: the process is up. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(request: Request):
    """Readiness: the database of record answers (postgres backend only)."""
    result = await request.app.state.health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


@app.get("/health/detailed")
async def detailed_health(request: Request):
    return await request.app.state.health_checker.run_checks(include_non_critical=True)


@app.get("/metrics")
def metrics():
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="metrics disabled")
    return get_metrics_collector().get_metrics()


# ============================================================================
# CREATE
# ============================================================================

@app.post("/api/cad/units", status_code=201)
async def create_unit(body: UnitIn, core: DispatchCore = Depends(get_core), actor: str = Depends(get_actor)):
    unit = await core.units.register_unit(
        body.callsign, body.department, actor,
        tactical_team=body.tactical_team, location=body.location,
    )
    return unit.snapshot()


@app.post("/api/cad/calls", status_code=201)
async def create_call(body: CallIn, core: DispatchCore = Depends(get_core), actor: str = Depends(get_actor)):
    call = await core.calls.create_call(
        body.type, body.priority, body.location, actor,
        description=body.description, postal=body.postal,
        caller=body.caller, caller_phone=body.caller_phone,
    )
    return call.snapshot()


@app.post("/api/cad/bolos", status_code=201)
async def create_bolo(body: BoloIn, core: DispatchCore = Depends(get_core), actor: str = Depends(get_actor)):
    bolo = await core.bolos.create(
        body.subject_type, body.priority, body.description, actor, body.expires_at,
        title=body.title,
        person_name=body.person_name,
        person_description=body.person_description,
        vehicle_plate=body.vehicle_plate,
        vehicle_model=body.vehicle_model,
        vehicle_color=body.vehicle_color,
    )
    return core.bolos.snapshot(bolo)


@app.post("/api/cad/backup", status_code=201)
async def create_backup_request(body: BackupIn, core: DispatchCore = Depends(get_core), actor: str = Depends(get_actor)):
    backup = await core.backup.request(
        body.unit, body.department, body.location, body.urgency, body.reason,
        body.linked_call_id, actor=actor,
    )
    return backup.snapshot()


@app.post("/api/cad/tactical", status_code=201)
async def activate_callout(body: TacticalIn, core: DispatchCore = Depends(get_core), actor: str = Depends(get_actor)):
    callout = await core.tactical.activate(
        body.team, body.incident_type, body.location, body.priority,
        body.briefing, body.staging_area, actor, call_id=body.call_id,
    )
    return callout.snapshot()


# ============================================================================
# FAMILY-SPECIFIC OPERATIONS
# (declared before the generic /{family}/{id} routes so they match first)
# ============================================================================

@app.get("/api/cad/events")
async def poll_events(
    viewer: str = Query(default=DISPATCHERS, min_length=1),
    after: int = Query(default=0, ge=0),
    limit: int = Depends(feed_page_size),
    core: DispatchCore = Depends(get_core),
):
    """Events newer than ``after`` addressed to ``viewer`` (a unit id or "dispatchers")."""
    events = await core.feed.poll(viewer, after=after, limit=limit)
    oldest_seq = await core.feed.oldest_seq()
    return {
        "events": [e.to_dict() for e in events],
        "latest_seq": await core.feed.latest_seq(),
        "oldest_seq": oldest_seq,
        # Events between the cursor and the window were dropped; reload state.
        "resync": after + 1 < oldest_seq,
        "poll_interval_hint_seconds": settings.poll_interval_hint_seconds,
    }


@app.get("/api/cad/units/eligible")
async def eligible_units(
    department: str,
    include_offline: bool = False,
    core: DispatchCore = Depends(get_core),
):
    units = await core.units.find_eligible(department, exclude_offline=not include_offline)
    return {"units": [u.snapshot() for u in units]}


@app.get("/api/cad/units/{unit_id}/history")
async def unit_history(
    unit_id: str,
    limit: int | None = Query(default=None, ge=1, le=1000),
    core: DispatchCore = Depends(get_core),
):
    entries = await core.units.history(unit_id, limit=limit or settings.unit_history_default_limit)
    return {"history": [e.snapshot() for e in entries]}


@app.post("/api/cad/calls/{call_id}/notes", status_code=201)
async def add_call_note(
    call_id: str,
    body: NoteIn,
    core: DispatchCore = Depends(get_core),
    actor: str = Depends(get_actor),
):
    call = await core.calls.add_note(call_id, body.content, actor)
    return call.snapshot()


@app.post("/api/cad/bolos/sweep")
async def sweep_bolos(core: DispatchCore = Depends(get_core), actor: str = Depends(get_actor)):
    announced = await core.bolos.sweep_expired(actor=actor)
    return {"announced": announced}


@app.get("/api/cad/backup/open")
async def open_backup_requests(department: str | None = None, core: DispatchCore = Depends(get_core)):
    requests = await core.backup.list_open(department)
    return {"items": [r.snapshot() for r in requests]}


@app.post("/api/cad/tactical/page")
async def page_team(body: PageIn, core: DispatchCore = Depends(get_core), actor: str = Depends(get_actor)):
    event = await core.tactical.page(body.team, actor, body.message)
    return event.to_dict()


# ============================================================================
# GENERIC READ / TRANSITION
# ============================================================================

@app.get("/api/cad/{family}")
async def list_entities(
    family: str,
    query: ListQuery = Depends(list_query),
    core: DispatchCore = Depends(get_core),
):
    registry = core.registry(family)
    items = await registry.list(query)
    return {"items": [snapshot_of(core, family, item) for item in items]}


@app.get("/api/cad/{family}/{entity_id}")
async def get_entity(family: str, entity_id: str, core: DispatchCore = Depends(get_core)):
    registry = core.registry(family)
    return snapshot_of(core, family, await registry.get(entity_id))


@app.post("/api/cad/{family}/{entity_id}/transition")
async def transition_entity(
    family: str,
    entity_id: str,
    body: TransitionIn,
    core: DispatchCore = Depends(get_core),
    actor: str = Depends(get_actor),
):
    registry = core.registry(family)
    reserved = {"action", "actor"} & set(body.params)
    if reserved:
        raise DispatchValidationError(f"params may not contain: {', '.join(sorted(reserved))}")
    entity = await registry.transition(entity_id, body.action, actor, **body.params)
    return snapshot_of(core, family, entity)
