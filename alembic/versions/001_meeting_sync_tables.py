"""Create events, sessions and meetings tables for meeting synchronization.

Revision ID: 001_meeting_sync
Revises:
Create Date: 2026-10-18

Creates three tables:
- events: Schedulable items with optional provider meeting integration
- sessions: Children of events (cascade on event hard-delete)
- meetings: Local record of provider meetings; owner references are set to
  NULL on owner hard-delete so the provider meeting can still be removed

The meeting_sync_state column holds the tri-state sync flag
(in_sync / pending_action / never_requested).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from src.meetsync.core.database import UTCDateTime

# revision identifiers, used by Alembic.
revision: str = "001_meeting_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_SYNC_STATES = "'in_sync', 'pending_action', 'never_requested'"


def _meeting_columns() -> list[sa.Column]:
    """Meeting-related columns shared by events and sessions."""
    return [
        sa.Column("meeting_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("meeting_provider_id", sa.String(50), nullable=True),
        sa.Column("meeting_hosts", sa.JSON(), nullable=True),
        sa.Column(
            "meeting_requires_password",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("meeting_error", sa.Text(), nullable=True),
        sa.Column(
            "meeting_sync_state",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'never_requested'"),
        ),
        sa.Column("meeting_sync_claimed_until", UTCDateTime(), nullable=True),
    ]


def _meeting_checks(prefix: str) -> list[sa.CheckConstraint]:
    return [
        sa.CheckConstraint(
            "NOT (meeting_requested AND meeting_provider_id IS NULL)",
            name=f"ck_{prefix}_meeting_provider_required",
        ),
        sa.CheckConstraint(
            "NOT (meeting_requested AND (starts_at IS NULL OR ends_at IS NULL))",
            name=f"ck_{prefix}_meeting_requested_times",
        ),
        sa.CheckConstraint(
            f"meeting_sync_state IN ({_SYNC_STATES})",
            name=f"ck_{prefix}_meeting_sync_state",
        ),
    ]


def upgrade() -> None:
    # ── events table ─────────────────────────────────────────────────────

    op.create_table(
        "events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("group_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default=sa.text("'UTC'")),
        sa.Column("starts_at", UTCDateTime(), nullable=True),
        sa.Column("ends_at", UTCDateTime(), nullable=True),
        sa.Column("kind", sa.String(20), nullable=False, server_default=sa.text("'virtual'")),
        sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_meeting_columns(),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        *_meeting_checks("event"),
    )
    op.create_index(
        "ix_events_meeting_sync",
        "events",
        ["meeting_sync_state", "meeting_requested"],
    )

    # ── sessions table ───────────────────────────────────────────────────

    op.create_table(
        "sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "event_id",
            sa.Uuid(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("starts_at", UTCDateTime(), nullable=True),
        sa.Column("ends_at", UTCDateTime(), nullable=True),
        sa.Column("kind", sa.String(20), nullable=False, server_default=sa.text("'virtual'")),
        *_meeting_columns(),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        *_meeting_checks("session"),
    )
    op.create_index("ix_sessions_event_id", "sessions", ["event_id"])
    op.create_index(
        "ix_sessions_meeting_sync",
        "sessions",
        ["meeting_sync_state", "meeting_requested"],
    )

    # ── meetings table ───────────────────────────────────────────────────

    op.create_table(
        "meetings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("meeting_provider_id", sa.String(50), nullable=False),
        sa.Column("provider_meeting_id", sa.String(200), nullable=False),
        sa.Column("provider_host_user_id", sa.String(320), nullable=True),
        sa.Column("join_url", sa.String(1000), nullable=False),
        sa.Column("password", sa.String(100), nullable=True),
        sa.Column("recording_url", sa.String(1000), nullable=True),
        sa.Column(
            "event_id",
            sa.Uuid(),
            sa.ForeignKey("events.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "session_id",
            sa.Uuid(),
            sa.ForeignKey("sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("auto_end_check_at", UTCDateTime(), nullable=True),
        sa.Column("auto_end_check_outcome", sa.String(30), nullable=True),
        sa.Column("claimed_until", UTCDateTime(), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=True),
        sa.UniqueConstraint("event_id", name="uq_meeting_event"),
        sa.UniqueConstraint("session_id", name="uq_meeting_session"),
        sa.UniqueConstraint(
            "meeting_provider_id",
            "provider_meeting_id",
            name="uq_meeting_provider_meeting",
        ),
        sa.CheckConstraint(
            "NOT (event_id IS NOT NULL AND session_id IS NOT NULL)",
            name="ck_meeting_single_owner",
        ),
        sa.CheckConstraint(
            "(auto_end_check_at IS NULL) = (auto_end_check_outcome IS NULL)",
            name="ck_meeting_auto_end_check_pair",
        ),
        sa.CheckConstraint(
            "auto_end_check_outcome IS NULL OR auto_end_check_outcome IN "
            "('auto_ended', 'already_not_running', 'error', 'not_found')",
            name="ck_meeting_auto_end_check_outcome",
        ),
        sa.CheckConstraint("join_url <> ''", name="ck_meeting_join_url"),
        sa.CheckConstraint("provider_meeting_id <> ''", name="ck_meeting_provider_meeting_id"),
        sa.CheckConstraint(
            "recording_url IS NULL OR recording_url <> ''",
            name="ck_meeting_recording_url",
        ),
    )
    op.create_index(
        "ix_meetings_auto_end_pending",
        "meetings",
        ["meeting_provider_id", "auto_end_check_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_meetings_auto_end_pending", table_name="meetings")
    op.drop_table("meetings")
    op.drop_index("ix_sessions_meeting_sync", table_name="sessions")
    op.drop_index("ix_sessions_event_id", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("ix_events_meeting_sync", table_name="events")
    op.drop_table("events")
