"""Meeting sync persistence models.

Three SQLAlchemy models:
- EventModel: Top-level schedulable item owned by a group
- SessionModel: Child of exactly one event (cascades on event hard-delete)
- MeetingModel: Local record of a provider-side meeting

Events and sessions are created and updated by the CRUD layer; only the
meeting_* columns are read and written by the sync engine. Meetings keep
their row when the owner is hard-deleted (owner reference set to NULL) so
the provider meeting can still be torn down.

Column types are portable (generic Uuid/JSON) so the same models run on
PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.meetsync.core.database import Base, UTCDateTime
from src.meetsync.meetings.schemas import SyncState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_SYNC_STATES = ", ".join(f"'{state.value}'" for state in SyncState)


class EventModel(Base):
    """Event with optional provider meeting integration."""

    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "NOT (meeting_requested AND meeting_provider_id IS NULL)",
            name="ck_event_meeting_provider_required",
        ),
        CheckConstraint(
            "NOT (meeting_requested AND (starts_at IS NULL OR ends_at IS NULL))",
            name="ck_event_meeting_requested_times",
        ),
        CheckConstraint(
            f"meeting_sync_state IN ({_SYNC_STATES})",
            name="ck_event_meeting_sync_state",
        ),
        Index("ix_events_meeting_sync", "meeting_sync_state", "meeting_requested"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="virtual")
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    meeting_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    meeting_provider_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    meeting_hosts: Mapped[list | None] = mapped_column(JSON, nullable=True)
    meeting_requires_password: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    meeting_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_sync_state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SyncState.NEVER_REQUESTED.value,
    )
    meeting_sync_claimed_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class SessionModel(Base):
    """Session within an event; uses the parent event's timezone."""

    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint(
            "NOT (meeting_requested AND meeting_provider_id IS NULL)",
            name="ck_session_meeting_provider_required",
        ),
        CheckConstraint(
            "NOT (meeting_requested AND (starts_at IS NULL OR ends_at IS NULL))",
            name="ck_session_meeting_requested_times",
        ),
        CheckConstraint(
            f"meeting_sync_state IN ({_SYNC_STATES})",
            name="ck_session_meeting_sync_state",
        ),
        Index("ix_sessions_meeting_sync", "meeting_sync_state", "meeting_requested"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="virtual")

    meeting_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    meeting_provider_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    meeting_hosts: Mapped[list | None] = mapped_column(JSON, nullable=True)
    meeting_requires_password: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    meeting_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_sync_state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SyncState.NEVER_REQUESTED.value,
    )
    meeting_sync_claimed_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class MeetingModel(Base):
    """Provider-side meeting linked to at most one event or session.

    Both owner columns are NULL for an orphan (owner hard-deleted) that
    still has to be removed from the provider.
    """

    __tablename__ = "meetings"
    __table_args__ = (
        UniqueConstraint("event_id", name="uq_meeting_event"),
        UniqueConstraint("session_id", name="uq_meeting_session"),
        UniqueConstraint(
            "meeting_provider_id",
            "provider_meeting_id",
            name="uq_meeting_provider_meeting",
        ),
        CheckConstraint(
            "NOT (event_id IS NOT NULL AND session_id IS NOT NULL)",
            name="ck_meeting_single_owner",
        ),
        CheckConstraint(
            "(auto_end_check_at IS NULL) = (auto_end_check_outcome IS NULL)",
            name="ck_meeting_auto_end_check_pair",
        ),
        CheckConstraint(
            "auto_end_check_outcome IS NULL OR auto_end_check_outcome IN "
            "('auto_ended', 'already_not_running', 'error', 'not_found')",
            name="ck_meeting_auto_end_check_outcome",
        ),
        CheckConstraint("join_url <> ''", name="ck_meeting_join_url"),
        CheckConstraint("provider_meeting_id <> ''", name="ck_meeting_provider_meeting_id"),
        CheckConstraint(
            "recording_url IS NULL OR recording_url <> ''",
            name="ck_meeting_recording_url",
        ),
        Index("ix_meetings_auto_end_pending", "meeting_provider_id", "auto_end_check_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    meeting_provider_id: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_meeting_id: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_host_user_id: Mapped[str | None] = mapped_column(String(320), nullable=True)
    join_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    password: Mapped[str | None] = mapped_column(String(100), nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("events.id", ondelete="SET NULL"),
        nullable=True,
    )
    session_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("sessions.id", ondelete="SET NULL"),
        nullable=True,
    )

    auto_end_check_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_end_check_outcome: Mapped[str | None] = mapped_column(String(30), nullable=True)
    claimed_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        onupdate=_utcnow,
        nullable=True,
    )
