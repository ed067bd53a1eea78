from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.cors import CORSMiddleware

from .config import Settings, load_settings
from .context import AppContext, build_context, get_context
from .db import Clock, utc_now
from .logging_utils import configure_logging
from .metrics import BLOCKED_REQUESTS_TOTAL, CONTENT_TYPE_LATEST, REQUESTS_TOTAL, STORE_ERRORS_TOTAL, generate_latest
from .routers.admin import router as admin_router
from .routers.analytics import router as analytics_router
from .routers.registrations import REGISTRATION_PATH, router as registrations_router
from .schemas import HONEYPOT_FIELD
from .security import client_ip

load_dotenv()
logger = logging.getLogger("regdesk.app")

BLOCKED_DETAIL = "Too many requests. Please try again later."


def _validation_fields(exc: RequestValidationError) -> list[str]:
    fields = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        fields.append(loc[-1] if loc else "unknown")
    return fields


def create_app(settings: Optional[Settings] = None, clock: Clock = utc_now) -> FastAPI:
    settings = settings or load_settings()
    settings.validate()
    configure_logging(settings.log_level)

    ctx = build_context(settings, clock=clock)
    app = FastAPI(title="Regdesk API", version="1.0.0", debug=settings.debug)
    app.state.ctx = ctx

    @app.on_event("startup")
    async def startup_event() -> None:
        ctx.db.check_connection()
        ctx.db.init_schema()
        ctx.scheduler.start()
        logger.info(
            "Backend startup complete",
            extra={"event": "startup", "db_backend": ctx.db.backend},
        )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await ctx.scheduler.stop()
        ctx.close()
        logger.info("Backend shutdown complete", extra={"event": "shutdown"})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_guard_middleware(request: Request, call_next):
        path = request.url.path
        method = request.method
        ip = client_ip(request)

        try:
            status = ctx.blocks.is_blocked(ip)
        except SQLAlchemyError:
            # Blocklist outage must not take the whole site down.
            STORE_ERRORS_TOTAL.labels(component="ip_blocks").inc()
            logger.exception("Block check failed", extra={"event": "block_check_error", "ip": ip, "path": path})
            status = None

        if status is not None and status.blocked:
            BLOCKED_REQUESTS_TOTAL.inc()
            logger.warning(
                "Blocked IP rejected",
                extra={"event": "blocked_request", "ip": ip, "path": path, "method": method},
            )
            REQUESTS_TOTAL.labels(method=method, path=path, status="429").inc()
            return JSONResponse(status_code=429, content={"detail": BLOCKED_DETAIL})

        if not ctx.http_limiter.allow(f"http:{ip}", settings.rate_limit_requests_per_min, 60):
            REQUESTS_TOTAL.labels(method=method, path=path, status="429").inc()
            return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})

        response = await call_next(request)
        REQUESTS_TOTAL.labels(method=method, path=path, status=str(response.status_code)).inc()
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        if request.url.path == REGISTRATION_PATH:
            body = exc.body if isinstance(exc.body, dict) else {}
            if body.get(HONEYPOT_FIELD):
                ip = client_ip(request)
                try:
                    ctx.audit.security_event(
                        ip,
                        "honeypot_filled",
                        path=REGISTRATION_PATH,
                        user_agent=request.headers.get("user-agent"),
                    )
                except SQLAlchemyError:
                    logger.exception("Failed to persist honeypot event", extra={"event": "audit_store_error", "ip": ip})
                return JSONResponse(status_code=400, content={"detail": "Something went wrong. Please try again."})
            try:
                ctx.analytics.record_form_errors(_validation_fields(exc))
            except SQLAlchemyError:
                logger.exception("Failed to track form errors", extra={"event": "analytics_store_error"})

        return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})

    @app.get("/health")
    async def healthcheck(ctx: AppContext = Depends(get_context)) -> dict[str, str]:
        try:
            ctx.db.check_connection()
        except SQLAlchemyError as exc:
            logger.exception("Health check failed", extra={"event": "health_failed"})
            raise HTTPException(status_code=503, detail="Database unavailable") from exc
        return {"status": "ok", "ts": datetime.now(timezone.utc).isoformat()}

    @app.get("/metrics")
    async def metrics() -> Response:
        if not settings.enable_prometheus_metrics:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(registrations_router)
    app.include_router(analytics_router)
    app.include_router(admin_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    run_settings = app.state.ctx.settings
    uvicorn.run("regdesk.main:app", host="0.0.0.0", port=run_settings.port, reload=run_settings.debug)
