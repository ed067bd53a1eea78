from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import timedelta
import logging
import math
from threading import Lock
import time
from typing import Optional

from sqlalchemy import case, delete
from sqlalchemy.exc import SQLAlchemyError

from .db import Clock, Database, as_utc, utc_now
from .metrics import RATE_LIMIT_DENIALS_TOTAL, STORE_ERRORS_TOTAL
from .models import RateLimit

logger = logging.getLogger("regdesk.gate")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: Optional[int] = None
    store_error: bool = False


class RateLimitGate:
    """Fixed-window request counter persisted in the ``rate_limits`` table.

    Windows reset at discrete boundaries, so a burst straddling a boundary can
    admit up to twice ``max_requests`` in a short span. The whole
    check-and-update runs as a single ``INSERT ... ON CONFLICT DO UPDATE``
    statement, which keeps concurrent requests for one key from losing updates.
    Denied requests still bump ``count`` but leave ``last_request`` alone.
    """

    def __init__(self, db: Database, clock: Clock = utc_now) -> None:
        self.db = db
        self._clock = clock
        self._table = RateLimit.__table__

    def check(
        self,
        key: str,
        max_requests: int,
        window_seconds: float,
        *,
        fail_open: bool,
    ) -> RateLimitDecision:
        """Count one request against ``key`` and decide whether it may proceed.

        ``fail_open`` is mandatory: when the store is unreachable the caller's
        policy decides the outcome, and the failure is logged either way.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        now = as_utc(self._clock())
        try:
            row = self._upsert(key, max_requests, window_seconds, now)
        except SQLAlchemyError:
            STORE_ERRORS_TOTAL.labels(component="rate_limit").inc()
            logger.exception(
                "Rate limit store unavailable",
                extra={
                    "event": "rate_limit_store_error",
                    "key": key,
                    "reason": "fail_open" if fail_open else "fail_closed",
                },
            )
            if fail_open:
                return RateLimitDecision(allowed=True, remaining=0, store_error=True)
            return RateLimitDecision(allowed=False, remaining=0, store_error=True)

        # Denied requests are counted too, so the window is exhausted exactly when count passes the limit.
        if row["count"] <= max_requests:
            return RateLimitDecision(allowed=True, remaining=max(0, max_requests - row["count"]))

        elapsed = (now - as_utc(row["window_start"])).total_seconds()
        retry_after = max(1, math.ceil(window_seconds - elapsed))
        scope = key.split(":", 1)[0]
        RATE_LIMIT_DENIALS_TOTAL.labels(scope=scope).inc()
        logger.info(
            "Rate limit exceeded",
            extra={"event": "rate_limit_denied", "key": key, "scope": scope},
        )
        return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=retry_after)

    def _upsert(self, key: str, max_requests: int, window_seconds: float, now):
        table = self._table
        cutoff = now - timedelta(seconds=window_seconds)
        expired = table.c.window_start <= cutoff
        exhausted = table.c.count >= max_requests

        stmt = self.db.insert(table).values(key=key, count=1, window_start=now, last_request=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.key],
            set_={
                "count": case((expired, 1), else_=table.c.count + 1),
                "window_start": case((expired, now), else_=table.c.window_start),
                "last_request": case((expired, now), (exhausted, table.c.last_request), else_=now),
            },
        ).returning(table.c.count, table.c.window_start, table.c.last_request)

        with self.db.session() as session:
            return session.execute(stmt).mappings().one()

    def usage(self, key: str) -> Optional[RateLimit]:
        with self.db.session() as session:
            return session.get(RateLimit, key)

    def cleanup(self, retention_seconds: float) -> int:
        """Drop windows that started before the retention horizon; a missing row is a fresh window."""
        cutoff = as_utc(self._clock()) - timedelta(seconds=retention_seconds)
        with self.db.session() as session:
            result = session.execute(delete(RateLimit).where(RateLimit.window_start < cutoff))
        removed = result.rowcount or 0
        if removed:
            logger.info(
                "Expired rate limit windows removed",
                extra={"event": "rate_limit_cleanup", "attempts": removed},
            )
        return removed


class SlidingWindowLimiter:
    """In-process sliding window used for cheap per-IP request throttling."""

    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, key: str, max_events: int, period_seconds: int) -> bool:
        now = time.monotonic()
        window_start = now - period_seconds
        with self._lock:
            events = self._events[key]
            while events and events[0] < window_start:
                events.popleft()

            if len(events) >= max_events:
                return False

            events.append(now)
            return True

    def prune(self, period_seconds: int) -> int:
        """Forget keys with no events inside the window."""
        window_start = time.monotonic() - period_seconds
        with self._lock:
            idle = [key for key, events in self._events.items() if not events or events[-1] < window_start]
            for key in idle:
                del self._events[key]
        return len(idle)
