"""Sync state classification for event and session meetings.

The CRUD layer snapshots the meeting-relevant fields of an event or
session before and after an edit and persists the state computed here.
The out-of-sync queue only ever looks at that persisted state:

- IN_SYNC: the provider meeting matches the organizer's intent
- PENDING_ACTION: the provider must be created, updated or torn down
- NEVER_REQUESTED: no meeting was ever wanted, nothing to do

All functions in this module are pure.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

from src.meetsync.meetings.schemas import MEETING_KINDS, SyncState

if TYPE_CHECKING:
    from src.meetsync.meetings.models import EventModel, SessionModel


def to_instant(value: datetime | None, tz_name: str | None) -> datetime | None:
    """Interpret a wall-clock time in tz_name and return a UTC instant.

    Aware values are only normalized to UTC.

    Raises:
        ValueError: tz_name is not a known IANA timezone.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        try:
            zone = ZoneInfo(tz_name or "UTC")
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown timezone {tz_name!r}") from exc
        value = value.replace(tzinfo=zone)
    return value.astimezone(timezone.utc)


class MeetingSnapshot(BaseModel):
    """Fields of an event or session that shape its provider meeting.

    Naive starts_at/ends_at are wall-clock times in `timezone` (the form
    input of an edit); stored rows carry UTC instants already.
    """

    model_config = ConfigDict(frozen=True)

    meeting_requested: bool = False
    name: str | None = None
    timezone: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    meeting_provider_id: str | None = None
    meeting_hosts: frozenset[str] = frozenset()
    meeting_requires_password: bool = False
    kind: str | None = None
    speakers: frozenset[str] = frozenset()
    parent_hosts: frozenset[str] = frozenset()

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _localize(cls, value: datetime | None, info: ValidationInfo) -> datetime | None:
        return to_instant(value, info.data.get("timezone"))

    @field_validator("meeting_hosts", "speakers", "parent_hosts", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Iterable[str] | None) -> frozenset[str]:
        return frozenset(value or ())

    @classmethod
    def from_event(cls, event: EventModel, speakers: Iterable[str] = ()) -> MeetingSnapshot:
        """Snapshot a stored event."""
        return cls(
            meeting_requested=event.meeting_requested,
            name=event.name,
            timezone=event.timezone,
            starts_at=event.starts_at,
            ends_at=event.ends_at,
            meeting_provider_id=event.meeting_provider_id,
            meeting_hosts=event.meeting_hosts,
            meeting_requires_password=event.meeting_requires_password,
            kind=event.kind,
            speakers=speakers,
        )

    @classmethod
    def from_session(
        cls,
        session: SessionModel,
        event: EventModel,
        speakers: Iterable[str] = (),
    ) -> MeetingSnapshot:
        """Snapshot a stored session in the context of its parent event."""
        return cls(
            meeting_requested=session.meeting_requested,
            name=session.name,
            timezone=event.timezone,
            starts_at=session.starts_at,
            ends_at=session.ends_at,
            meeting_provider_id=session.meeting_provider_id,
            meeting_hosts=session.meeting_hosts,
            meeting_requires_password=session.meeting_requires_password,
            kind=session.kind,
            speakers=speakers,
            parent_hosts=event.meeting_hosts,
        )


# Fields compared for equality when a meeting stays requested
TRACKED_FIELDS: tuple[str, ...] = (
    "name",
    "timezone",
    "starts_at",
    "ends_at",
    "meeting_provider_id",
    "meeting_hosts",
    "meeting_requires_password",
    "speakers",
    "parent_hosts",
)


def classify_sync_state(before: MeetingSnapshot | None, after: MeetingSnapshot) -> SyncState:
    """Decide whether the provider meeting still matches after an edit.

    Args:
        before: Stored state, or None when the entity is being created.
        after: State about to be persisted.

    Returns:
        PENDING_ACTION when the provider must change (including teardown),
        IN_SYNC when nothing tracked changed, NEVER_REQUESTED when no
        meeting was ever involved.
    """
    was_requested = before is not None and before.meeting_requested

    if not after.meeting_requested:
        return SyncState.PENDING_ACTION if was_requested else SyncState.NEVER_REQUESTED

    # Kind moved away from a meeting-capable one: teardown owed
    if was_requested and after.kind is not None and after.kind not in MEETING_KINDS:
        return SyncState.PENDING_ACTION

    if not was_requested:
        return SyncState.PENDING_ACTION

    for field in TRACKED_FIELDS:
        if getattr(before, field) != getattr(after, field):
            return SyncState.PENDING_ACTION
    return SyncState.IN_SYNC


def next_sync_state(
    current: SyncState | str | None,
    before: MeetingSnapshot | None,
    after: MeetingSnapshot,
) -> SyncState:
    """Sync state to persist for an update, given the currently stored one.

    A pending action is never cleared by a later edit, including one that
    stops requesting the meeting: the queue still has to apply it or tear
    down whatever was created before. Keeping pending only while a meeting
    is still requested would drop that teardown, so do not narrow this.
    """
    if current is not None and SyncState(current) == SyncState.PENDING_ACTION:
        return SyncState.PENDING_ACTION
    return classify_sync_state(before, after)


def sync_state_after_status_change(
    current: SyncState | str | None,
    meeting_requested: bool,
) -> SyncState:
    """Sync state after publish, unpublish, cancel or soft-delete.

    Any entity that wants a meeting, or may still have one, needs the
    queue to look at it again.
    """
    state = SyncState(current) if current is not None else SyncState.NEVER_REQUESTED
    if meeting_requested or state != SyncState.NEVER_REQUESTED:
        return SyncState.PENDING_ACTION
    return state
