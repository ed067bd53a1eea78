from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_registrations_status"),
        Index("ix_registrations_status", "status"),
        Index("ix_registrations_country", "team_country"),
        Index("ix_registrations_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    team_name: Mapped[str] = mapped_column(String(50), nullable=False)
    team_city: Mapped[str] = mapped_column(String(50), nullable=False)
    team_country: Mapped[str] = mapped_column(String(8), nullable=False)
    captain_first_name: Mapped[str] = mapped_column(String(30), nullable=False)
    captain_last_name: Mapped[str] = mapped_column(String(30), nullable=False)
    captain_email: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    captain_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    captain_birth_date: Mapped[date] = mapped_column(Date, nullable=False)
    from_province: Mapped[str] = mapped_column(String(3), nullable=False)
    players_count: Mapped[int] = mapped_column(Integer, nullable=False, default=11)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class RateLimit(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (Index("ix_rate_limits_window_start", "window_start"),)

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_request: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class IPBlock(Base):
    __tablename__ = "ip_blocks"
    __table_args__ = (Index("ix_ip_blocks_blocked_until", "blocked_until"),)

    ip: Mapped[str] = mapped_column(String(64), primary_key=True)
    blocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    blocked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str] = mapped_column(String(128), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class AdminLog(Base):
    __tablename__ = "admin_logs"
    __table_args__ = (
        Index("ix_admin_logs_action", "action"),
        Index("ix_admin_logs_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_key_hint: Mapped[str | None] = mapped_column(String(16), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalyticsPageview(Base):
    __tablename__ = "analytics_pageviews"
    __table_args__ = (
        Index("ix_pageviews_session_id", "session_id"),
        Index("ix_pageviews_timestamp", "timestamp"),
        Index("ix_pageviews_page", "page"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    page: Mapped[str] = mapped_column(String(256), nullable=False)
    referrer: Mapped[str | None] = mapped_column(String(512), nullable=True)
    screen_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    screen_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"
    __table_args__ = (
        Index("ix_events_session_id", "session_id"),
        Index("ix_events_category", "category"),
        Index("ix_events_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    label: Mapped[str | None] = mapped_column(String(256), nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalyticsPuzzle(Base):
    __tablename__ = "analytics_puzzle"
    __table_args__ = (
        CheckConstraint("action IN ('start', 'complete')", name="ck_analytics_puzzle_action"),
        Index("ix_puzzle_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    completion_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_clicks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalyticsForm(Base):
    __tablename__ = "analytics_form"
    __table_args__ = (
        CheckConstraint("action IN ('start', 'submit', 'error')", name="ck_analytics_form_action"),
        Index("ix_form_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    field: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalyticsSession(Base):
    __tablename__ = "analytics_sessions"
    __table_args__ = (Index("ix_sessions_first_seen", "first_seen"),)

    anonymous_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    first_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    pages_viewed: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
