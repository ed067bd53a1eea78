from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from threading import Lock

from sqlalchemy.exc import SQLAlchemyError

from .blocklist import BlockGate
from .db import Clock, as_utc, utc_now
from .metrics import STORE_ERRORS_TOTAL

logger = logging.getLogger("regdesk.abuse")

ESCALATION_REASON = "too_many_failed_admin_attempts"


@dataclass
class AttemptRecord:
    count: int
    last_attempt: datetime


class AbuseEscalationTracker:
    """Counts failed admin authentications per IP and escalates to a durable block.

    Counters live in process memory only and start empty after a restart; the
    block they produce is what persists. Only failed admin-key checks feed
    this tracker.
    """

    def __init__(
        self,
        blocks: BlockGate,
        max_attempts: int = 5,
        block_minutes: int = 30,
        ttl_seconds: int = 3600,
        clock: Clock = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.blocks = blocks
        self.max_attempts = max_attempts
        self.block_minutes = block_minutes
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._attempts: dict[str, AttemptRecord] = {}
        self._lock = Lock()

    def record_failure(self, ip: str) -> bool:
        """Return True when this failure pushed the IP over the threshold and it was blocked."""
        now = as_utc(self._clock())
        with self._lock:
            record = self._attempts.get(ip)
            if record is None:
                record = AttemptRecord(count=0, last_attempt=now)
                self._attempts[ip] = record
            record.count += 1
            record.last_attempt = now
            count = record.count

        logger.warning(
            "Suspicious attempt recorded",
            extra={"event": "suspicious_attempt", "ip": ip, "attempts": count},
        )

        if count < self.max_attempts:
            return False

        try:
            self.blocks.block(ip, self.block_minutes, reason=ESCALATION_REASON)
        except SQLAlchemyError:
            STORE_ERRORS_TOTAL.labels(component="ip_blocks").inc()
            logger.exception(
                "Failed to persist IP block",
                extra={"event": "ip_block_store_error", "ip": ip, "attempts": count},
            )
            return False
        return True

    def attempts(self, ip: str) -> int:
        with self._lock:
            record = self._attempts.get(ip)
            return record.count if record else 0

    def forget(self, ip: str) -> bool:
        with self._lock:
            return self._attempts.pop(ip, None) is not None

    def sweep(self) -> int:
        cutoff = as_utc(self._clock()) - timedelta(seconds=self.ttl_seconds)
        with self._lock:
            stale = [ip for ip, record in self._attempts.items() if record.last_attempt < cutoff]
            for ip in stale:
                del self._attempts[ip]
        if stale:
            logger.info("Stale suspicious attempts cleared", extra={"event": "abuse_sweep", "attempts": len(stale)})
        return len(stale)

    def snapshot(self) -> list[dict[str, object]]:
        with self._lock:
            items = [
                {"ip": ip, "count": record.count, "last_attempt": record.last_attempt.isoformat()}
                for ip, record in self._attempts.items()
            ]
        items.sort(key=lambda item: item["count"], reverse=True)
        return items
