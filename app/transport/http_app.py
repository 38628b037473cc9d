# app/transport/http_app.py
"""
HTTP application for cleaner dispatch.

Security layers:
1. Public: health probes and the Telegram webhook (secret-token validated)
2. Cron: periodic sweeps (CRON_SECRET, header or query)
3. Cleaner links: start / mark-done authorised by a signed job token
4. Protected: landlord/admin API (ADMIN_TOKEN bearer)
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.core.dispatch.errors import DispatchError
from app.core.dispatch.models import (
    AssignRequest,
    CreateCleanerRequest,
    CreateJobRequest,
    CreateLandlordRequest,
    CreatePropertyRequest,
    JobTokenRequest,
    ReviewRequest,
    SetPropertyCleanersRequest,
    SetWebhookRequest,
    attempt_to_dict,
    cleaner_to_dict,
    dispatch_to_dict,
    job_to_dict,
    landlord_to_dict,
    link_to_dict,
    property_to_dict,
    review_to_dict,
)
from app.core.dispatch.services import DispatchServices, build_from_settings
from app.infra.db_async import close_pool, init_pool
from app.infra.http_client import close_all_sessions
from app.infra.logging_config import get_logger, setup_logging
from app.infra.memory_dispatch_repo import InMemoryDispatchRepository
from app.infra.metrics import get_metrics_collector
from app.infra.notification_channels import get_notification_channel
from app.infra.pg_dispatch_repo_async import get_dispatch_repo
from app.infra.schema_validator import validate_schema_version
from app.transport import telegram_sender
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from app.transport.security import check_configured_tokens, require_admin_auth, require_cron_secret
from app.transport.telegram_webhook import telegram_webhook_handler

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_services(request: Request) -> DispatchServices:
    """Get dispatch services from app state"""
    return request.app.state.services


# ============================================================================
# LIFESPAN
# ============================================================================

async def _build_repository():
    if settings.store_backend == "memory":
        logger.warning("STORE_BACKEND=memory: dispatch state lives in this process only")
        return InMemoryDispatchRepository()

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}", extra=schema_result)
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m app.infra.migrate",
            exc_info=True
        )
        raise
    return get_dispatch_repo()


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting application: env={settings.app_env}, store={settings.store_backend}")

    check_configured_tokens()

    repo = await _build_repository()
    channel = get_notification_channel()
    fastapi_app.state.services = build_from_settings(repo, channel)

    logger.info(
        f"Dispatch ready: response_window={settings.response_window_minutes}min, "
        f"job_links={'on' if fastapi_app.state.services.links.enabled else 'off'}"
    )
    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")
    await close_all_sessions()
    if settings.store_backend == "postgres":
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Cleaner Dispatch",
    description="Offers cleaning jobs to cleaners over Telegram, one at a time",
    version="1.0.0",
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
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Typed core errors carry their own status code"""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}", extra={"status_code": exc.status_code})
    else:
        logger.info(f"Request rejected ({exc.status_code}): {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed input is a 400 like every other validation failure"""
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(problems) or "Invalid request"})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(services: DispatchServices = Depends(get_services)):
    """Readiness probe: the store answers."""
    try:
        ok = await services.repo.ping()
    except Exception:
        logger.error("Readiness check failed", exc_info=True)
        ok = False

    if not ok:
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.post("/webhooks/telegram")
async def webhook_telegram(request: Request, services: DispatchServices = Depends(get_services)):
    """
    Telegram Bot API webhook endpoint - PUBLIC but VALIDATED.

    Security:
    - X-Telegram-Bot-Api-Secret-Token validation (if configured)
    - Offer tokens are single-use; replays resolve as "already answered"
    """
    return await telegram_webhook_handler(request, services)


# ============================================================================
# CRON ENDPOINTS (CRON_SECRET)
# ============================================================================

@app.api_route("/cron/dispatch-timeout", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def cron_dispatch_timeout(services: DispatchServices = Depends(get_services)):
    """Expire unanswered offers and move their jobs to the next cleaner."""
    result = await services.resolver.sweep_timeouts()
    return {
        "ok": True,
        "timed_out": result.timed_out,
        "jobs_checked": result.jobs_checked,
        "dispatched": result.dispatched,
    }


@app.api_route("/cron/send-reminders", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def cron_send_reminders(services: DispatchServices = Depends(get_services)):
    """Remind assigned cleaners of upcoming jobs."""
    result = await services.jobs.send_due_reminders()
    return {"ok": True, "reminders_sent": result.reminders_sent, "jobs_checked": result.jobs_checked}


# ============================================================================
# CLEANER LINK ENDPOINTS (signed job token)
# ============================================================================

@app.get("/job/{job_id}")
async def cleaner_job_view(job_id: str, token: str, services: DispatchServices = Depends(get_services)):
    """What the cleaner's job link opens."""
    job = await services.jobs.view_for_cleaner(job_id, token)
    return {"job": job_to_dict(job)}


@app.post("/api/jobs/{job_id}/start")
async def start_job(job_id: str, payload: JobTokenRequest, services: DispatchServices = Depends(get_services)):
    job = await services.jobs.start_job(job_id, payload.token)
    return {"job": job_to_dict(job)}


@app.post("/api/jobs/{job_id}/mark-done")
async def mark_job_done(job_id: str, payload: JobTokenRequest, services: DispatchServices = Depends(get_services)):
    job = await services.jobs.mark_done(job_id, payload.token)
    return {"job": job_to_dict(job)}


# ============================================================================
# ADMIN / LANDLORD API (ADMIN_TOKEN)
# ============================================================================

@app.post("/api/landlords", status_code=201, dependencies=[Depends(require_admin_auth)])
async def create_landlord(payload: CreateLandlordRequest, services: DispatchServices = Depends(get_services)):
    landlord = await services.directory.create_landlord(payload)
    return {"landlord": landlord_to_dict(landlord), "start_payload": f"landlord_{landlord.id}"}


@app.post("/api/properties", status_code=201, dependencies=[Depends(require_admin_auth)])
async def create_property(payload: CreatePropertyRequest, services: DispatchServices = Depends(get_services)):
    prop = await services.directory.create_property(payload)
    return {"property": property_to_dict(prop)}


@app.post("/api/cleaners", status_code=201, dependencies=[Depends(require_admin_auth)])
async def create_cleaner(payload: CreateCleanerRequest, services: DispatchServices = Depends(get_services)):
    cleaner = await services.directory.create_cleaner(payload)
    return {"cleaner": cleaner_to_dict(cleaner), "start_payload": f"cleaner_{cleaner.id}"}


@app.put("/api/properties/{property_id}/cleaners", dependencies=[Depends(require_admin_auth)])
async def set_property_cleaners(
    property_id: str,
    payload: SetPropertyCleanersRequest,
    services: DispatchServices = Depends(get_services),
):
    links = await services.directory.set_property_cleaners(property_id, payload)
    return {"property_id": property_id, "cleaners": [link_to_dict(link) for link in links]}


@app.post("/api/jobs", status_code=201, dependencies=[Depends(require_admin_auth)])
async def create_job(payload: CreateJobRequest, services: DispatchServices = Depends(get_services)):
    result = await services.jobs.create_job(payload)
    return {
        "job": job_to_dict(result.job),
        "dispatch": dispatch_to_dict(result.dispatch),
        "dispatch_error": result.dispatch_error,
    }


@app.get("/api/jobs/{job_id}", dependencies=[Depends(require_admin_auth)])
async def get_job(job_id: str, services: DispatchServices = Depends(get_services)):
    job = await services.jobs.get_job(job_id)
    review = await services.jobs.get_review(job_id)
    return {"job": job_to_dict(job), "review": review_to_dict(review)}


@app.get("/api/jobs/{job_id}/attempts", dependencies=[Depends(require_admin_auth)])
async def list_job_attempts(job_id: str, services: DispatchServices = Depends(get_services)):
    attempts = await services.jobs.list_attempts(job_id)
    return {"job_id": job_id, "attempts": [attempt_to_dict(a) for a in attempts]}


@app.post("/api/jobs/{job_id}/dispatch", dependencies=[Depends(require_admin_auth)])
async def dispatch_job(job_id: str, services: DispatchServices = Depends(get_services)):
    result = await services.jobs.dispatch(job_id)
    return dispatch_to_dict(result)


@app.post("/api/jobs/{job_id}/assign", dependencies=[Depends(require_admin_auth)])
async def assign_job(job_id: str, payload: AssignRequest, services: DispatchServices = Depends(get_services)):
    job = await services.jobs.assign_directly(job_id, payload.cleaner_id)
    return {"job": job_to_dict(job)}


@app.post("/api/jobs/{job_id}/cancel", dependencies=[Depends(require_admin_auth)])
async def cancel_job(job_id: str, services: DispatchServices = Depends(get_services)):
    result = await services.jobs.cancel_job(job_id)
    return {"job": job_to_dict(result.job), "cancelled_offers": len(result.cancelled)}


@app.post("/api/jobs/{job_id}/send-reminder", dependencies=[Depends(require_admin_auth)])
async def send_job_reminder(job_id: str, services: DispatchServices = Depends(get_services)):
    job = await services.jobs.send_reminder(job_id)
    return {"ok": True, "job": job_to_dict(job)}


@app.post("/api/jobs/{job_id}/review", dependencies=[Depends(require_admin_auth)])
async def review_job(job_id: str, payload: ReviewRequest, services: DispatchServices = Depends(get_services)):
    job = await services.jobs.review_job(job_id, payload)
    return {"job": job_to_dict(job)}


@app.get("/metrics", dependencies=[Depends(require_admin_auth)])
def metrics():
    """In-process counters and histograms"""
    return get_metrics_collector().get_metrics()


@app.post("/admin/telegram/set-webhook", dependencies=[Depends(require_admin_auth)])
async def admin_set_telegram_webhook(payload: SetWebhookRequest):
    """Point the bot at this service's /webhooks/telegram."""
    if not settings.telegram_enabled:
        raise HTTPException(status_code=503, detail="Telegram bot is not configured")

    try:
        await telegram_sender.set_webhook(payload.url, secret_token=settings.telegram_webhook_secret)
    except telegram_sender.TelegramSendError as exc:
        logger.error(f"setWebhook failed: {exc}")
        raise HTTPException(status_code=502, detail="Telegram rejected the webhook")

    logger.info("Telegram webhook registered")
    return {"ok": True, "url": payload.url, "secret_token": bool(settings.telegram_webhook_secret)}


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"], include_in_schema=False)
async def catch_all(path: str):
    """Generic 404 without revealing information."""
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
