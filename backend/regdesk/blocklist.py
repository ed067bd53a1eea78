from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Optional

from sqlalchemy import delete, select

from .db import Clock, Database, as_utc, utc_now
from .metrics import IP_BLOCKS_TOTAL
from .models import IPBlock

logger = logging.getLogger("regdesk.blocks")

DEFAULT_BLOCK_REASON = "too_many_suspicious_attempts"


@dataclass(frozen=True)
class BlockStatus:
    blocked: bool
    blocked_until: Optional[datetime] = None
    reason: Optional[str] = None
    attempts: Optional[int] = None


NOT_BLOCKED = BlockStatus(blocked=False)


class BlockGate:
    """Durable IP blocklist backed by the ``ip_blocks`` table.

    A block is active while ``now < blocked_until``. Expired rows are removed
    lazily the next time the IP is looked up, so the periodic sweep only keeps
    the table small.
    """

    def __init__(self, db: Database, clock: Clock = utc_now) -> None:
        self.db = db
        self._clock = clock

    def is_blocked(self, ip: str) -> BlockStatus:
        now = as_utc(self._clock())
        with self.db.session() as session:
            record = session.get(IPBlock, ip)
            if record is None:
                return NOT_BLOCKED

            blocked_until = as_utc(record.blocked_until)
            if blocked_until <= now:
                # Conditional delete: a concurrent re-block that already extended the row survives.
                # The loaded row holds a naive datetime on SQLite, so skip in-session evaluation.
                session.execute(
                    delete(IPBlock)
                    .where(IPBlock.ip == ip, IPBlock.blocked_until <= now)
                    .execution_options(synchronize_session=False)
                )
                logger.info("Expired IP block removed", extra={"event": "ip_block_expired", "ip": ip})
                return NOT_BLOCKED

            return BlockStatus(
                blocked=True,
                blocked_until=blocked_until,
                reason=record.reason,
                attempts=record.attempts,
            )

    def block(self, ip: str, minutes: int, reason: str = DEFAULT_BLOCK_REASON) -> BlockStatus:
        now = as_utc(self._clock())
        blocked_until = now + timedelta(minutes=minutes)
        table = IPBlock.__table__

        stmt = self.db.insert(table).values(
            ip=ip,
            blocked_at=now,
            blocked_until=blocked_until,
            reason=reason,
            attempts=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.ip],
            set_={
                "blocked_at": now,
                "blocked_until": blocked_until,
                "reason": reason,
                "attempts": table.c.attempts + 1,
            },
        ).returning(table.c.attempts)

        with self.db.session() as session:
            attempts = session.execute(stmt).scalar_one()

        IP_BLOCKS_TOTAL.inc()
        logger.warning(
            "IP temporarily blocked",
            extra={"event": "ip_blocked", "ip": ip, "reason": reason, "attempts": attempts},
        )
        return BlockStatus(blocked=True, blocked_until=blocked_until, reason=reason, attempts=attempts)

    def unblock(self, ip: str) -> bool:
        with self.db.session() as session:
            result = session.execute(delete(IPBlock).where(IPBlock.ip == ip))
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("IP unblocked", extra={"event": "ip_unblocked", "ip": ip})
        return removed

    def active_blocks(self) -> list[IPBlock]:
        now = as_utc(self._clock())
        with self.db.session() as session:
            return list(
                session.execute(
                    select(IPBlock).where(IPBlock.blocked_until > now).order_by(IPBlock.blocked_until.desc())
                ).scalars()
            )

    def cleanup_expired(self) -> int:
        now = as_utc(self._clock())
        with self.db.session() as session:
            result = session.execute(
                delete(IPBlock).where(IPBlock.blocked_until <= now).execution_options(synchronize_session=False)
            )
        removed = result.rowcount or 0
        if removed:
            logger.info("Expired IP blocks removed", extra={"event": "ip_block_cleanup", "attempts": removed})
        return removed
