"""initial schema for registrations, request gates, audit log, and analytics."""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "registrations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("team_name", sa.String(length=50), nullable=False),
        sa.Column("team_city", sa.String(length=50), nullable=False),
        sa.Column("team_country", sa.String(length=8), nullable=False),
        sa.Column("captain_first_name", sa.String(length=30), nullable=False),
        sa.Column("captain_last_name", sa.String(length=30), nullable=False),
        sa.Column("captain_email", sa.String(length=100), nullable=False),
        sa.Column("captain_phone", sa.String(length=20), nullable=False),
        sa.Column("captain_birth_date", sa.Date(), nullable=False),
        sa.Column("from_province", sa.String(length=3), nullable=False),
        sa.Column("players_count", sa.Integer(), nullable=False, server_default="11"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_registrations_status"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("captain_email"),
    )
    op.create_index("ix_registrations_status", "registrations", ["status"], unique=False)
    op.create_index("ix_registrations_country", "registrations", ["team_country"], unique=False)
    op.create_index("ix_registrations_created_at", "registrations", ["created_at"], unique=False)

    op.create_table(
        "rate_limits",
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_request", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_rate_limits_window_start", "rate_limits", ["window_start"], unique=False)

    op.create_table(
        "ip_blocks",
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("blocked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(length=128), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("ip"),
    )
    op.create_index("ix_ip_blocks_blocked_until", "ip_blocks", ["blocked_until"], unique=False)

    op.create_table(
        "admin_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("admin_key_hint", sa.String(length=16), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admin_logs_action", "admin_logs", ["action"], unique=False)
    op.create_index("ix_admin_logs_timestamp", "admin_logs", ["timestamp"], unique=False)

    op.create_table(
        "analytics_pageviews",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("page", sa.String(length=256), nullable=False),
        sa.Column("referrer", sa.String(length=512), nullable=True),
        sa.Column("screen_width", sa.Integer(), nullable=True),
        sa.Column("screen_height", sa.Integer(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pageviews_session_id", "analytics_pageviews", ["session_id"], unique=False)
    op.create_index("ix_pageviews_timestamp", "analytics_pageviews", ["timestamp"], unique=False)
    op.create_index("ix_pageviews_page", "analytics_pageviews", ["page"], unique=False)

    op.create_table(
        "analytics_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("label", sa.String(length=256), nullable=True),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_events_session_id", "analytics_events", ["session_id"], unique=False)
    op.create_index("ix_events_category", "analytics_events", ["category"], unique=False)
    op.create_index("ix_events_timestamp", "analytics_events", ["timestamp"], unique=False)

    op.create_table(
        "analytics_puzzle",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("completion_time", sa.Integer(), nullable=True),
        sa.Column("total_clicks", sa.Integer(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("action IN ('start', 'complete')", name="ck_analytics_puzzle_action"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_puzzle_timestamp", "analytics_puzzle", ["timestamp"], unique=False)

    op.create_table(
        "analytics_form",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("field", sa.String(length=64), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("action IN ('start', 'submit', 'error')", name="ck_analytics_form_action"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_form_timestamp", "analytics_form", ["timestamp"], unique=False)

    op.create_table(
        "analytics_sessions",
        sa.Column("anonymous_id", sa.String(length=32), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pages_viewed", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("anonymous_id"),
    )
    op.create_index("ix_sessions_first_seen", "analytics_sessions", ["first_seen"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sessions_first_seen", table_name="analytics_sessions")
    op.drop_table("analytics_sessions")
    op.drop_index("ix_form_timestamp", table_name="analytics_form")
    op.drop_table("analytics_form")
    op.drop_index("ix_puzzle_timestamp", table_name="analytics_puzzle")
    op.drop_table("analytics_puzzle")
    op.drop_index("ix_events_timestamp", table_name="analytics_events")
    op.drop_index("ix_events_category", table_name="analytics_events")
    op.drop_index("ix_events_session_id", table_name="analytics_events")
    op.drop_table("analytics_events")
    op.drop_index("ix_pageviews_page", table_name="analytics_pageviews")
    op.drop_index("ix_pageviews_timestamp", table_name="analytics_pageviews")
    op.drop_index("ix_pageviews_session_id", table_name="analytics_pageviews")
    op.drop_table("analytics_pageviews")
    op.drop_index("ix_admin_logs_timestamp", table_name="admin_logs")
    op.drop_index("ix_admin_logs_action", table_name="admin_logs")
    op.drop_table("admin_logs")
    op.drop_index("ix_ip_blocks_blocked_until", table_name="ip_blocks")
    op.drop_table("ip_blocks")
    op.drop_index("ix_rate_limits_window_start", table_name="rate_limits")
    op.drop_table("rate_limits")
    op.drop_index("ix_registrations_created_at", table_name="registrations")
    op.drop_index("ix_registrations_country", table_name="registrations")
    op.drop_index("ix_registrations_status", table_name="registrations")
    op.drop_table("registrations")
