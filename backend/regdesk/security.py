from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from .audit import key_hint
from .context import AppContext, get_context

logger = logging.getLogger("regdesk.security")

UNAUTHORIZED_DETAIL = "Unauthorized"


@dataclass(frozen=True)
class AdminContext:
    key_hint: Optional[str]
    ip: str


def client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def admin_key_matches(provided: Optional[str], expected: str) -> bool:
    """Compare fixed-length digests so timing does not leak the key length or prefix."""
    if not provided or not expected:
        return False
    provided_digest = hashlib.sha256(provided.encode("utf-8")).digest()
    expected_digest = hashlib.sha256(expected.encode("utf-8")).digest()
    return hmac.compare_digest(provided_digest, expected_digest)


async def extract_admin_key(request: Request, header_key: Optional[str]) -> Optional[str]:
    query_key = request.query_params.get("key")
    if query_key:
        return query_key

    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("key"), str) and body["key"]:
            return body["key"]

    return header_key or None


def _record_failed_attempt(ctx: AppContext, request: Request, ip: str) -> None:
    try:
        ctx.audit.security_event(
            ip,
            "invalid_admin_key",
            path=request.url.path,
            user_agent=request.headers.get("user-agent"),
        )
    except SQLAlchemyError:
        logger.exception("Failed to persist security event", extra={"event": "audit_store_error", "ip": ip})

    if not ctx.tracker.record_failure(ip):
        return

    try:
        ctx.audit.record(
            "ip_blocked",
            entity_type="security",
            entity_id=ip,
            ip=ip,
            new_value={"blocked_minutes": ctx.tracker.block_minutes, "reason": "invalid_admin_key"},
        )
    except SQLAlchemyError:
        logger.exception("Failed to persist IP block audit", extra={"event": "audit_store_error", "ip": ip})


async def require_admin(
    request: Request,
    ctx: AppContext = Depends(get_context),
    x_admin_key: Optional[str] = Header(default=None),
) -> AdminContext:
    ip = client_ip(request)
    provided = await extract_admin_key(request, x_admin_key)

    if not admin_key_matches(provided, ctx.settings.admin_key):
        _record_failed_attempt(ctx, request, ip)
        # Same response whether the key was missing, wrong, or just tripped a block.
        raise HTTPException(status_code=401, detail=UNAUTHORIZED_DETAIL)

    return AdminContext(key_hint=key_hint(provided), ip=ip)
