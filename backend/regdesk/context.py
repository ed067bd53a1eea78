from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING

from fastapi import Request

from .abuse import AbuseEscalationTracker
from .audit import AuditLog
from .blocklist import BlockGate
from .config import Settings
from .db import Clock, Database, utc_now
from .rate_limit import RateLimitGate, SlidingWindowLimiter

if TYPE_CHECKING:
    from .analytics import AnalyticsService
    from .registrations import RegistrationService
    from .scheduler import MaintenanceScheduler

logger = logging.getLogger("regdesk.context")


@dataclass
class AppContext:
    """Everything a request handler needs, built once per application."""

    settings: Settings
    clock: Clock
    db: Database
    gate: RateLimitGate
    blocks: BlockGate
    tracker: AbuseEscalationTracker
    audit: AuditLog
    http_limiter: SlidingWindowLimiter = field(default_factory=SlidingWindowLimiter)
    analytics_limiter: SlidingWindowLimiter = field(default_factory=SlidingWindowLimiter)
    analytics: "AnalyticsService" = field(init=False)
    registrations: "RegistrationService" = field(init=False)
    scheduler: "MaintenanceScheduler" = field(init=False)

    def close(self) -> None:
        self.db.dispose()


def build_context(settings: Settings, clock: Clock = utc_now) -> AppContext:
    from .analytics import AnalyticsService
    from .registrations import RegistrationService
    from .scheduler import MaintenanceScheduler

    db = Database(settings)
    blocks = BlockGate(db, clock=clock)
    ctx = AppContext(
        settings=settings,
        clock=clock,
        db=db,
        gate=RateLimitGate(db, clock=clock),
        blocks=blocks,
        tracker=AbuseEscalationTracker(
            blocks,
            max_attempts=settings.max_suspicious_attempts,
            block_minutes=settings.ip_block_minutes,
            ttl_seconds=settings.suspicious_attempt_ttl_seconds,
            clock=clock,
        ),
        audit=AuditLog(db),
    )
    ctx.analytics = AnalyticsService(db, clock=clock)
    ctx.registrations = RegistrationService(ctx)
    ctx.scheduler = MaintenanceScheduler(ctx)
    logger.info("Application context built", extra={"event": "context_built", "db_backend": db.backend})
    return ctx


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx
