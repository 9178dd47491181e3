"""Out-of-sync queue -- yields the single highest-priority meeting sync action.

Scans events, sessions and orphan meetings for pending work and returns
one WorkItem per call, in this order:

1. Event create/update   (pending, meeting still wanted)
2. Session create/update (pending, meeting still wanted)
3. Event delete          (pending, meeting no longer wanted)
4. Session delete        (pending, meeting no longer wanted)
5. Orphan meeting delete (owner hard-deleted)

Oldest rows first within each class. The queue keeps no cursor: an item
keeps coming back until a lifecycle write-back marks its owner synced.

Concurrent workers are kept apart by a FOR UPDATE SKIP LOCKED read that
stamps a claim lease before the transaction commits. The provider call
then runs with no row lock held; the lease hides the row from other
workers until it is settled, released, or expires.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import ColumnElement, and_, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetsync.meetings.models import EventModel, MeetingModel, SessionModel
from src.meetsync.meetings.schemas import MEETING_KINDS, SyncState, WorkItem

logger = structlog.get_logger(__name__)


# ── Shared Predicates ───────────────────────────────────────────────────────


def claim_is_free(column: Any, now: datetime) -> ColumnElement[bool]:
    """Row has no claim lease, or its lease has expired."""
    return or_(column.is_(None), column <= now)


def event_is_live() -> ColumnElement[bool]:
    """Event is published and neither canceled nor soft-deleted."""
    return and_(
        EventModel.published.is_(True),
        EventModel.canceled.is_(False),
        EventModel.deleted.is_(False),
    )


def event_wants_meeting() -> ColumnElement[bool]:
    """A provider meeting should exist for the event."""
    return and_(
        EventModel.meeting_requested.is_(True),
        EventModel.kind.in_(MEETING_KINDS),
        event_is_live(),
    )


def session_wants_meeting() -> ColumnElement[bool]:
    """A provider meeting should exist for the session (requires a join on events)."""
    return and_(
        SessionModel.meeting_requested.is_(True),
        SessionModel.kind.in_(MEETING_KINDS),
        event_is_live(),
    )


def _duration_secs(starts_at: datetime | None, ends_at: datetime | None) -> float | None:
    if starts_at is None or ends_at is None:
        return None
    return (ends_at - starts_at).total_seconds()


# ── Queue ───────────────────────────────────────────────────────────────────


class OutOfSyncQueue:
    """Polling queue over the meeting sync state of events and sessions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        claim_ttl: Lease stamped on a dequeued row. None disables claims,
            which is only safe with a single worker.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        claim_ttl: timedelta | None = timedelta(minutes=5),
    ) -> None:
        self._session_factory = session_factory
        self._claim_ttl = claim_ttl if claim_ttl else None

    async def next_out_of_sync_item(self, now: datetime | None = None) -> WorkItem | None:
        """Return the highest-priority pending item, or None when idle.

        Args:
            now: Reference time for lease checks (defaults to current UTC).

        Returns:
            WorkItem describing the create/update/delete to perform.
        """
        now = now or datetime.now(timezone.utc)
        claimed_until = now + self._claim_ttl if self._claim_ttl else None

        async for session in self._session_factory():
            item = await self._next_event_upsert(session, now, claimed_until)
            if item is None:
                item = await self._next_session_upsert(session, now, claimed_until)
            if item is None:
                item = await self._next_event_delete(session, now, claimed_until)
            if item is None:
                item = await self._next_session_delete(session, now, claimed_until)
            if item is None:
                item = await self._next_orphan_delete(session, now, claimed_until)
            await session.commit()

            if item is not None:
                logger.debug(
                    "meeting_sync_item_dequeued",
                    action=item.sync_action.value,
                    event_id=str(item.event_id) if item.event_id else None,
                    session_id=str(item.session_id) if item.session_id else None,
                    meeting_id=str(item.meeting_id) if item.meeting_id else None,
                )
            return item

    async def release(self, item: WorkItem) -> None:
        """Drop the claim on an item so it can be picked up again right away."""
        async for session in self._session_factory():
            if item.event_id is not None:
                stmt = (
                    update(EventModel)
                    .where(EventModel.id == item.event_id)
                    .values(meeting_sync_claimed_until=None)
                )
            elif item.session_id is not None:
                stmt = (
                    update(SessionModel)
                    .where(SessionModel.id == item.session_id)
                    .values(meeting_sync_claimed_until=None)
                )
            elif item.meeting_id is not None:
                stmt = (
                    update(MeetingModel)
                    .where(MeetingModel.id == item.meeting_id)
                    .values(claimed_until=None)
                )
            else:
                return
            await session.execute(stmt)
            await session.commit()

    # ── Create / Update ──────────────────────────────────────────────────

    async def _next_event_upsert(
        self, session: AsyncSession, now: datetime, claimed_until: datetime | None
    ) -> WorkItem | None:
        stmt = (
            select(EventModel)
            .where(
                EventModel.meeting_sync_state == SyncState.PENDING_ACTION.value,
                event_wants_meeting(),
                claim_is_free(EventModel.meeting_sync_claimed_until, now),
            )
            .order_by(EventModel.created_at, EventModel.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        event = (await session.execute(stmt)).scalar_one_or_none()
        if event is None:
            return None

        meeting = await _meeting_for(session, event_id=event.id)
        event.meeting_sync_claimed_until = claimed_until
        return WorkItem(
            delete=False,
            event_id=event.id,
            meeting_id=meeting.id if meeting else None,
            meeting_provider_id=event.meeting_provider_id,
            provider_meeting_id=meeting.provider_meeting_id if meeting else None,
            join_url=meeting.join_url if meeting else None,
            password=meeting.password if meeting else None,
            topic=event.name,
            timezone=event.timezone,
            starts_at=event.starts_at,
            duration_secs=_duration_secs(event.starts_at, event.ends_at),
            hosts=list(event.meeting_hosts or []),
            requires_password=event.meeting_requires_password,
            claimed_until=claimed_until,
        )

    async def _next_session_upsert(
        self, session: AsyncSession, now: datetime, claimed_until: datetime | None
    ) -> WorkItem | None:
        stmt = (
            select(SessionModel, EventModel.timezone)
            .join(EventModel, EventModel.id == SessionModel.event_id)
            .where(
                SessionModel.meeting_sync_state == SyncState.PENDING_ACTION.value,
                session_wants_meeting(),
                claim_is_free(SessionModel.meeting_sync_claimed_until, now),
            )
            .order_by(SessionModel.created_at, SessionModel.id)
            .limit(1)
            .with_for_update(of=SessionModel, skip_locked=True)
        )
        row = (await session.execute(stmt)).first()
        if row is None:
            return None

        sess, tz_name = row
        meeting = await _meeting_for(session, session_id=sess.id)
        sess.meeting_sync_claimed_until = claimed_until
        return WorkItem(
            delete=False,
            session_id=sess.id,
            meeting_id=meeting.id if meeting else None,
            meeting_provider_id=sess.meeting_provider_id,
            provider_meeting_id=meeting.provider_meeting_id if meeting else None,
            join_url=meeting.join_url if meeting else None,
            password=meeting.password if meeting else None,
            topic=sess.name,
            timezone=tz_name,
            starts_at=sess.starts_at,
            duration_secs=_duration_secs(sess.starts_at, sess.ends_at),
            hosts=list(sess.meeting_hosts or []),
            requires_password=sess.meeting_requires_password,
            claimed_until=claimed_until,
        )

    # ── Delete ───────────────────────────────────────────────────────────

    async def _next_event_delete(
        self, session: AsyncSession, now: datetime, claimed_until: datetime | None
    ) -> WorkItem | None:
        stmt = (
            select(EventModel)
            .where(
                EventModel.meeting_sync_state == SyncState.PENDING_ACTION.value,
                not_(event_wants_meeting()),
                claim_is_free(EventModel.meeting_sync_claimed_until, now),
            )
            .order_by(EventModel.created_at, EventModel.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        event = (await session.execute(stmt)).scalar_one_or_none()
        if event is None:
            return None

        meeting = await _meeting_for(session, event_id=event.id)
        event.meeting_sync_claimed_until = claimed_until
        return _delete_item(meeting, event.meeting_provider_id, claimed_until, event_id=event.id)

    async def _next_session_delete(
        self, session: AsyncSession, now: datetime, claimed_until: datetime | None
    ) -> WorkItem | None:
        stmt = (
            select(SessionModel)
            .join(EventModel, EventModel.id == SessionModel.event_id)
            .where(
                SessionModel.meeting_sync_state == SyncState.PENDING_ACTION.value,
                not_(session_wants_meeting()),
                claim_is_free(SessionModel.meeting_sync_claimed_until, now),
            )
            .order_by(SessionModel.created_at, SessionModel.id)
            .limit(1)
            .with_for_update(of=SessionModel, skip_locked=True)
        )
        sess = (await session.execute(stmt)).scalar_one_or_none()
        if sess is None:
            return None

        meeting = await _meeting_for(session, session_id=sess.id)
        sess.meeting_sync_claimed_until = claimed_until
        return _delete_item(meeting, sess.meeting_provider_id, claimed_until, session_id=sess.id)

    async def _next_orphan_delete(
        self, session: AsyncSession, now: datetime, claimed_until: datetime | None
    ) -> WorkItem | None:
        stmt = (
            select(MeetingModel)
            .where(
                MeetingModel.event_id.is_(None),
                MeetingModel.session_id.is_(None),
                claim_is_free(MeetingModel.claimed_until, now),
            )
            .order_by(MeetingModel.created_at, MeetingModel.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        meeting = (await session.execute(stmt)).scalar_one_or_none()
        if meeting is None:
            return None

        meeting.claimed_until = claimed_until
        return _delete_item(meeting, meeting.meeting_provider_id, claimed_until)


# ── Helpers ─────────────────────────────────────────────────────────────────


async def _meeting_for(
    session: AsyncSession,
    event_id: Any = None,
    session_id: Any = None,
) -> MeetingModel | None:
    """Load the meeting linked to an event or a session."""
    if event_id is not None:
        stmt = select(MeetingModel).where(MeetingModel.event_id == event_id)
    else:
        stmt = select(MeetingModel).where(MeetingModel.session_id == session_id)
    return (await session.execute(stmt)).scalar_one_or_none()


def _delete_item(
    meeting: MeetingModel | None,
    provider_id: str | None,
    claimed_until: datetime | None,
    event_id: Any = None,
    session_id: Any = None,
) -> WorkItem:
    """Build a delete item; scheduling fields stay None."""
    return WorkItem(
        delete=True,
        event_id=event_id,
        session_id=session_id,
        meeting_id=meeting.id if meeting else None,
        meeting_provider_id=meeting.meeting_provider_id if meeting else provider_id,
        provider_meeting_id=meeting.provider_meeting_id if meeting else None,
        join_url=meeting.join_url if meeting else None,
        password=meeting.password if meeting else None,
        claimed_until=claimed_until,
    )
