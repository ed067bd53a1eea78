from __future__ import annotations

from datetime import datetime, timedelta
import hashlib
import html
import json
import logging
import re
from typing import Any, Iterable, Optional

from sqlalchemy import Float, case, cast, distinct, func, select

from .db import Clock, Database, as_utc, utc_now
from .models import (
    AnalyticsEvent,
    AnalyticsForm,
    AnalyticsPageview,
    AnalyticsPuzzle,
    AnalyticsSession,
    Registration,
)
from .schemas import EventRequest, FormRequest, PageviewRequest, PuzzleRequest

logger = logging.getLogger("regdesk.analytics")

_TAG_RE = re.compile(r"<[^>]*>")
_UNSAFE_CHARS_RE = re.compile(r"[<>\"']")

PERFORMANCE_METRICS = ("LCP", "FID", "CLS")
LABEL_MAX_LENGTH = 256


def sanitize_input(value: Optional[str]) -> Optional[str]:
    """Strip markup and quote characters, then HTML-escape what is left."""
    if value is None:
        return None
    cleaned = _TAG_RE.sub("", value)
    cleaned = _UNSAFE_CHARS_RE.sub("", cleaned)
    return html.escape(cleaned.strip(), quote=True)


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None or len(value) <= limit:
        return value
    return value[:limit]


def anonymous_id(ip: str, user_agent: str, day: datetime) -> str:
    data = f"{ip}-{user_agent}-{day.date().isoformat()}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator * 100.0 / denominator, 1)


def _date_key(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return str(value)


class AnalyticsService:
    def __init__(self, db: Database, clock: Clock = utc_now) -> None:
        self.db = db
        self._clock = clock

    def _stamp(self, value: Optional[datetime]) -> datetime:
        if value is None:
            return as_utc(self._clock())
        return as_utc(value)

    def track_pageview(self, payload: PageviewRequest) -> None:
        with self.db.session() as session:
            session.add(
                AnalyticsPageview(
                    session_id=payload.session_id,
                    page=sanitize_input(payload.page) or "/",
                    referrer=sanitize_input(payload.referrer),
                    screen_width=payload.screen_width,
                    screen_height=payload.screen_height,
                    timestamp=self._stamp(payload.timestamp),
                )
            )

    def track_session(self, ip: str, user_agent: str) -> str:
        now = as_utc(self._clock())
        visitor_id = anonymous_id(ip, user_agent, now)
        table = AnalyticsSession.__table__
        stmt = self.db.insert(table).values(anonymous_id=visitor_id, first_seen=now, last_seen=now, pages_viewed=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.anonymous_id],
            set_={"last_seen": now, "pages_viewed": table.c.pages_viewed + 1},
        )
        with self.db.session() as session:
            session.execute(stmt)
        return visitor_id

    def track_event(self, payload: EventRequest) -> None:
        extra = dict(payload.model_extra or {})
        with self.db.session() as session:
            session.add(
                AnalyticsEvent(
                    session_id=payload.session_id,
                    category=sanitize_input(payload.category),
                    action=sanitize_input(payload.action),
                    label=_clip(sanitize_input(payload.label), LABEL_MAX_LENGTH),
                    value=payload.value,
                    metadata_json=json.dumps(extra, ensure_ascii=True, default=str) if extra else None,
                    timestamp=self._stamp(payload.timestamp),
                )
            )

    def track_puzzle(self, payload: PuzzleRequest) -> None:
        with self.db.session() as session:
            session.add(
                AnalyticsPuzzle(
                    session_id=payload.session_id,
                    action=payload.action,
                    completion_time=payload.completion_time,
                    total_clicks=payload.total_clicks,
                    timestamp=self._stamp(payload.timestamp),
                )
            )

    def track_form(self, payload: FormRequest) -> None:
        self.record_form_action(payload.action, field=payload.field, session_id=payload.session_id, timestamp=payload.timestamp)

    def record_form_action(
        self,
        action: str,
        *,
        field: Optional[str] = None,
        session_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        with self.db.session() as session:
            session.add(
                AnalyticsForm(
                    session_id=session_id,
                    action=action,
                    field=sanitize_input(field),
                    timestamp=self._stamp(timestamp),
                )
            )

    def record_form_errors(self, fields: Iterable[str]) -> int:
        now = as_utc(self._clock())
        rows = [AnalyticsForm(action="error", field=sanitize_input(name) or "unknown", timestamp=now) for name in fields]
        if not rows:
            return 0
        with self.db.session() as session:
            session.add_all(rows)
        logger.info("Form validation errors tracked", extra={"event": "form_errors", "fields": len(rows)})
        return len(rows)

    def dashboard_stats(self, days: int = 30) -> dict[str, Any]:
        now = as_utc(self._clock())
        since = now - timedelta(days=days)
        pv = AnalyticsPageview
        ev = AnalyticsEvent
        pz = AnalyticsPuzzle
        fm = AnalyticsForm

        with self.db.session() as session:
            by_page = session.execute(
                select(
                    pv.page,
                    func.count().label("views"),
                    func.count(distinct(pv.session_id)).label("unique_views"),
                )
                .where(pv.timestamp >= since)
                .group_by(pv.page)
                .order_by(func.count().desc())
            ).all()

            day_col = func.date(pv.timestamp)
            daily = session.execute(
                select(
                    day_col.label("day"),
                    func.count().label("pageviews"),
                    func.count(distinct(pv.session_id)).label("visitors"),
                )
                .where(pv.timestamp >= since)
                .group_by(day_col)
                .order_by(day_col.desc())
            ).all()

            top_events = session.execute(
                select(ev.category, ev.action, func.count().label("hits"))
                .where(ev.timestamp >= since)
                .group_by(ev.category, ev.action)
                .order_by(func.count().desc())
                .limit(50)
            ).all()

            recent_events = session.execute(
                select(ev.category, ev.action, ev.label, ev.timestamp)
                .where(ev.timestamp >= since)
                .order_by(ev.timestamp.desc())
                .limit(20)
            ).all()

            puzzle = session.execute(
                select(
                    func.coalesce(func.sum(case((pz.action == "start", 1), else_=0)), 0).label("started"),
                    func.coalesce(func.sum(case((pz.action == "complete", 1), else_=0)), 0).label("completed"),
                    func.avg(case((pz.action == "complete", pz.completion_time))).label("avg_time"),
                ).where(pz.timestamp >= since)
            ).one()

            form = session.execute(
                select(
                    func.coalesce(func.sum(case((fm.action == "start", 1), else_=0)), 0).label("started"),
                    func.coalesce(func.sum(case((fm.action == "submit", 1), else_=0)), 0).label("submitted"),
                    func.coalesce(func.sum(case((fm.action == "error", 1), else_=0)), 0).label("errors"),
                ).where(fm.timestamp >= since)
            ).one()

            errors_by_field = session.execute(
                select(fm.field, func.count().label("hits"))
                .where(fm.action == "error", fm.timestamp >= since)
                .group_by(fm.field)
                .order_by(func.count().desc())
            ).all()

            def distinct_sessions(model, *conditions) -> int:
                return session.execute(
                    select(func.count(distinct(model.session_id))).where(model.timestamp >= since, *conditions)
                ).scalar_one()

            funnel = {
                "page_load": distinct_sessions(pv),
                "puzzle_start": distinct_sessions(pz, pz.action == "start"),
                "puzzle_complete": distinct_sessions(pz, pz.action == "complete"),
                "form_start": distinct_sessions(fm, fm.action == "start"),
                "form_submit": distinct_sessions(fm, fm.action == "submit"),
            }

            engagement = session.execute(
                select(
                    func.avg(ev.value).label("average"),
                    func.max(ev.value).label("max"),
                    func.min(ev.value).label("min"),
                    func.count().label("total"),
                ).where(ev.category == "Engagement", ev.action == "Score", ev.timestamp >= since)
            ).one()

            scroll = session.execute(
                select(ev.label, func.count().label("hits"))
                .where(ev.category == "Engagement", ev.action == "Scroll Depth", ev.timestamp >= since)
                .group_by(ev.label)
            ).all()

            performance = session.execute(
                select(
                    ev.action,
                    func.avg(cast(ev.value, Float)).label("average"),
                    func.min(ev.value).label("min"),
                    func.max(ev.value).label("max"),
                )
                .where(ev.category == "Performance", ev.action.in_(PERFORMANCE_METRICS), ev.timestamp >= since)
                .group_by(ev.action)
            ).all()

            today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            sessions_total = session.execute(select(func.count()).select_from(AnalyticsSession)).scalar_one()
            sessions_today = session.execute(
                select(func.count()).select_from(AnalyticsSession).where(AnalyticsSession.first_seen >= today_start)
            ).scalar_one()

            registrations_total = session.execute(select(func.count()).select_from(Registration)).scalar_one()
            by_status = session.execute(
                select(Registration.status, func.count()).group_by(Registration.status)
            ).all()
            by_country = session.execute(
                select(Registration.team_country, func.count()).group_by(Registration.team_country)
            ).all()

        started = int(puzzle.started or 0)
        completed = int(puzzle.completed or 0)
        form_started = int(form.started or 0)
        form_submitted = int(form.submitted or 0)

        return {
            "days": days,
            "since": since.isoformat(),
            "pageviews": {
                "total": sum(row.views for row in by_page),
                "by_page": {row.page: row.views for row in by_page},
                "top_pages": [
                    {"page": row.page, "views": row.views, "unique_views": row.unique_views} for row in by_page[:10]
                ],
            },
            "daily": [
                {"date": _date_key(row.day), "pageviews": row.pageviews, "visitors": row.visitors} for row in daily
            ],
            "events": [{"category": row.category, "action": row.action, "count": row.hits} for row in top_events],
            "recent_events": [
                {
                    "category": row.category,
                    "action": row.action,
                    "label": row.label,
                    "timestamp": as_utc(row.timestamp).isoformat(),
                }
                for row in recent_events
            ],
            "puzzle": {
                "started": started,
                "completed": completed,
                "completion_rate": _rate(completed, started),
                "average_time_seconds": round(float(puzzle.avg_time) / 1000) if puzzle.avg_time is not None else None,
            },
            "form": {
                "started": form_started,
                "submitted": form_submitted,
                "errors": int(form.errors or 0),
                "conversion_rate": _rate(form_submitted, form_started),
                "errors_by_field": {row.field or "unknown": row.hits for row in errors_by_field},
            },
            "funnel": funnel,
            "engagement": {
                "average_score": float(engagement.average) if engagement.average is not None else None,
                "max_score": engagement.max,
                "min_score": engagement.min,
                "total": engagement.total,
            },
            "scroll_depth": sorted(
                ({"depth": row.label, "count": row.hits} for row in scroll),
                key=lambda item: _depth_order(item["depth"]),
            ),
            "performance": {
                row.action: {"average": row.average, "min": row.min, "max": row.max} for row in performance
            },
            "sessions": {"total": sessions_total, "today": sessions_today},
            "registrations": {
                "total": registrations_total,
                "by_status": {status: count for status, count in by_status},
                "by_country": {country: count for country, count in by_country},
            },
        }


def _depth_order(label: Optional[str]) -> int:
    try:
        return int((label or "").replace("%", "").strip())
    except ValueError:
        return 1_000
