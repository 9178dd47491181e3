"""Pydantic v2 schemas for the meeting synchronization domain.

Defines the data contracts shared by the sync engine components: the
tri-state sync flag, work items yielded by the out-of-sync queue, overdue
meeting candidates, provider results, and auto-end outcomes. The worker
loops and the provider interface import from this module.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class SyncState(str, Enum):
    """Whether an event's or session's provider meeting matches its intent."""

    IN_SYNC = "in_sync"
    PENDING_ACTION = "pending_action"
    NEVER_REQUESTED = "never_requested"


class SyncAction(str, Enum):
    """Action a worker takes for a queued work item."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MeetingKind(str, Enum):
    """How an event or session is held."""

    IN_PERSON = "in-person"
    VIRTUAL = "virtual"
    HYBRID = "hybrid"


# Kinds that can carry a provider meeting
MEETING_KINDS: frozenset[str] = frozenset({MeetingKind.VIRTUAL.value, MeetingKind.HYBRID.value})


class AutoEndOutcome(str, Enum):
    """Recorded result of checking an overdue meeting."""

    AUTO_ENDED = "auto_ended"
    ALREADY_NOT_RUNNING = "already_not_running"
    ERROR = "error"
    NOT_FOUND = "not_found"


class MeetingEndResult(str, Enum):
    """Result of asking a provider to end a meeting."""

    ENDED = "ended"
    ALREADY_NOT_RUNNING = "already_not_running"


# ── Queue Models ─────────────────────────────────────────────────────────────


class WorkItem(BaseModel):
    """A single unit of sync work returned by the out-of-sync queue.

    Exactly one of event_id / session_id is set unless the item is an
    orphan meeting teardown, in which case both are None. Scheduling
    fields (topic, starts_at, duration_secs, hosts, ...) are None for
    deletions.
    """

    delete: bool
    event_id: uuid.UUID | None = None
    session_id: uuid.UUID | None = None

    meeting_id: uuid.UUID | None = Field(None, description="Local meeting row, if one exists")
    meeting_provider_id: str | None = None
    provider_meeting_id: str | None = None
    join_url: str | None = None
    password: str | None = None

    topic: str | None = None
    timezone: str | None = None
    starts_at: datetime | None = None
    duration_secs: float | None = None
    hosts: list[str] | None = None
    requires_password: bool | None = None

    claimed_until: datetime | None = Field(
        None,
        description="Lease stamped at dequeue; write-backs only settle the owner while it holds",
    )

    @property
    def sync_action(self) -> SyncAction:
        """Action required to bring the provider in line with this item."""
        if self.delete:
            return SyncAction.DELETE
        if self.meeting_id is None:
            return SyncAction.CREATE
        return SyncAction.UPDATE

    @property
    def is_orphan(self) -> bool:
        """True for a meeting whose owning event/session was hard-deleted."""
        return self.event_id is None and self.session_id is None


# ── Auto-End Models ──────────────────────────────────────────────────────────


class OverdueMeeting(BaseModel):
    """A meeting past its scheduled end that has not been checked yet."""

    meeting_id: uuid.UUID
    meeting_provider_id: str
    provider_meeting_id: str
    ends_at: datetime


# ── Provider Models ──────────────────────────────────────────────────────────


class ProviderMeeting(BaseModel):
    """Meeting details returned by a provider."""

    id: str
    join_url: str
    password: str | None = None
