from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import APIRouter, Depends, Query

from ..context import AppContext, get_context
from ..db import as_utc
from ..schemas import UnblockRequest, UnblockResponse
from ..security import AdminContext, require_admin

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger("regdesk.admin")


@router.get("/security")
async def security_overview(
    admin: AdminContext = Depends(require_admin),
    ctx: AppContext = Depends(get_context),
) -> dict[str, Any]:
    now = as_utc(ctx.clock())
    blocked = []
    for block in ctx.blocks.active_blocks():
        blocked_until = as_utc(block.blocked_until)
        blocked.append(
            {
                "ip": block.ip,
                "blocked_at": as_utc(block.blocked_at).isoformat(),
                "blocked_until": blocked_until.isoformat(),
                "remaining_minutes": max(0, math.ceil((blocked_until - now).total_seconds() / 60)),
                "reason": block.reason,
                "attempts": block.attempts,
            }
        )

    return {
        "success": True,
        "data": {
            "blocked_ips": blocked,
            "suspicious_attempts": ctx.tracker.snapshot(),
            "recent_security_events": ctx.audit.security_events(50),
            "config": {
                "block_duration_minutes": ctx.settings.ip_block_minutes,
                "max_attempts": ctx.settings.max_suspicious_attempts,
            },
        },
    }


@router.post("/security/unblock", response_model=UnblockResponse)
async def unblock_ip(
    payload: UnblockRequest,
    admin: AdminContext = Depends(require_admin),
    ctx: AppContext = Depends(get_context),
) -> UnblockResponse:
    was_blocked = ctx.blocks.unblock(payload.ip)
    ctx.tracker.forget(payload.ip)

    if not was_blocked:
        return UnblockResponse(unblocked=False, message=f"IP {payload.ip} was not blocked")

    ctx.audit.record(
        "ip_unblocked",
        entity_type="security",
        entity_id=payload.ip,
        ip=admin.ip,
        admin_key_hint=admin.key_hint,
    )
    logger.info("IP unblocked by admin", extra={"event": "admin_unblock", "ip": payload.ip})
    return UnblockResponse(unblocked=True, message=f"IP {payload.ip} unblocked")


@router.get("/logs")
async def admin_logs(
    limit: int = Query(default=100),
    admin: AdminContext = Depends(require_admin),
    ctx: AppContext = Depends(get_context),
) -> dict[str, Any]:
    limit = min(max(limit, 1), 500)
    return {"success": True, "data": ctx.audit.recent(limit)}
