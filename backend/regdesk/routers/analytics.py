from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..context import AppContext, get_context
from ..metrics import RATE_LIMIT_DENIALS_TOTAL
from ..schemas import EventRequest, FormRequest, PageviewRequest, PuzzleRequest, TrackResponse
from ..security import AdminContext, client_ip, require_admin

router = APIRouter(prefix="/api/analytics", tags=["analytics"])
logger = logging.getLogger("regdesk.analytics")


def analytics_rate_limit(request: Request, ctx: AppContext = Depends(get_context)) -> None:
    ip = client_ip(request)
    if not ctx.analytics_limiter.allow(f"analytics:{ip}", ctx.settings.analytics_requests_per_min, 60):
        RATE_LIMIT_DENIALS_TOTAL.labels(scope="analytics").inc()
        raise HTTPException(status_code=429, detail="Too many requests")


@router.post("/pageview", response_model=TrackResponse, dependencies=[Depends(analytics_rate_limit)])
async def track_pageview(
    payload: PageviewRequest,
    request: Request,
    ctx: AppContext = Depends(get_context),
) -> TrackResponse:
    ctx.analytics.track_pageview(payload)
    ctx.analytics.track_session(client_ip(request), request.headers.get("user-agent", ""))
    return TrackResponse()


@router.post("/event", response_model=TrackResponse, dependencies=[Depends(analytics_rate_limit)])
async def track_event(payload: EventRequest, ctx: AppContext = Depends(get_context)) -> TrackResponse:
    ctx.analytics.track_event(payload)
    return TrackResponse()


@router.post("/puzzle", response_model=TrackResponse, dependencies=[Depends(analytics_rate_limit)])
async def track_puzzle(payload: PuzzleRequest, ctx: AppContext = Depends(get_context)) -> TrackResponse:
    ctx.analytics.track_puzzle(payload)
    return TrackResponse()


@router.post("/form", response_model=TrackResponse, dependencies=[Depends(analytics_rate_limit)])
async def track_form(payload: FormRequest, ctx: AppContext = Depends(get_context)) -> TrackResponse:
    ctx.analytics.track_form(payload)
    return TrackResponse()


@router.get("/dashboard")
async def dashboard(
    days: int = Query(default=30, ge=1, le=365),
    admin: AdminContext = Depends(require_admin),
    ctx: AppContext = Depends(get_context),
) -> dict[str, Any]:
    logger.info("Dashboard requested", extra={"event": "dashboard_viewed", "ip": admin.ip})
    return {"success": True, "data": ctx.analytics.dashboard_stats(days)}
