"""Auto-end monitor -- finds meetings that overran their scheduled end.

A meeting is overdue once its owner's end plus a grace period has passed
and no auto-end check has been recorded for it. Recording an outcome
stamps auto_end_check_at, which keeps the meeting out of every later
scan, so each overdue meeting is processed exactly once.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetsync.meetings.errors import InvalidAutoEndOutcomeError
from src.meetsync.meetings.models import EventModel, MeetingModel, SessionModel
from src.meetsync.meetings.queue import claim_is_free, event_is_live
from src.meetsync.meetings.schemas import AutoEndOutcome, OverdueMeeting, SyncState

logger = structlog.get_logger(__name__)


class AutoEndMonitor:
    """Overdue meeting scan and outcome bookkeeping.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        grace: Time after the scheduled end before a meeting counts as overdue.
        claim_ttl: Lease stamped on the returned meeting. None disables claims.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        grace: timedelta = timedelta(minutes=10),
        claim_ttl: timedelta | None = timedelta(minutes=5),
    ) -> None:
        self._session_factory = session_factory
        self._grace = grace
        self._claim_ttl = claim_ttl if claim_ttl else None

    async def next_overdue_meeting(
        self,
        now: datetime | None = None,
        providers: Iterable[str] | None = None,
    ) -> OverdueMeeting | None:
        """Return the longest-overdue unchecked meeting, or None.

        Event meetings rank ahead of session meetings with the same end.

        Args:
            now: Reference time (defaults to current UTC).
            providers: Restrict candidates to these provider ids.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self._grace
        provider_ids = list(providers) if providers is not None else None

        event_stmt = self._candidates(
            select(MeetingModel, EventModel.ends_at)
            .join(EventModel, EventModel.id == MeetingModel.event_id)
            .where(
                EventModel.meeting_requested.is_(True),
                EventModel.meeting_sync_state == SyncState.IN_SYNC.value,
                EventModel.ends_at.is_not(None),
                EventModel.ends_at <= cutoff,
                event_is_live(),
            )
            .order_by(EventModel.ends_at, MeetingModel.id),
            now,
            provider_ids,
        )
        session_stmt = self._candidates(
            select(MeetingModel, SessionModel.ends_at)
            .join(SessionModel, SessionModel.id == MeetingModel.session_id)
            .join(EventModel, EventModel.id == SessionModel.event_id)
            .where(
                SessionModel.meeting_requested.is_(True),
                SessionModel.meeting_sync_state == SyncState.IN_SYNC.value,
                SessionModel.ends_at.is_not(None),
                SessionModel.ends_at <= cutoff,
                event_is_live(),
            )
            .order_by(SessionModel.ends_at, MeetingModel.id),
            now,
            provider_ids,
        )

        async for session in self._session_factory():
            event_row = (await session.execute(event_stmt)).first()
            session_row = (await session.execute(session_stmt)).first()

            if event_row is None and session_row is None:
                await session.commit()
                return None
            if session_row is None or (event_row is not None and event_row[1] <= session_row[1]):
                meeting, ends_at = event_row
            else:
                meeting, ends_at = session_row

            if self._claim_ttl:
                meeting.claimed_until = now + self._claim_ttl
            overdue = OverdueMeeting(
                meeting_id=meeting.id,
                meeting_provider_id=meeting.meeting_provider_id,
                provider_meeting_id=meeting.provider_meeting_id,
                ends_at=ends_at,
            )
            await session.commit()

            logger.debug(
                "overdue_meeting_dequeued",
                meeting_id=str(overdue.meeting_id),
                overdue_minutes=int((now - ends_at).total_seconds() // 60),
            )
            return overdue

    async def record_auto_end_outcome(
        self,
        meeting_id: uuid.UUID,
        outcome: AutoEndOutcome | str,
        now: datetime | None = None,
    ) -> bool:
        """Stamp the check time and outcome on a meeting.

        Returns:
            True if the meeting exists, False otherwise.

        Raises:
            InvalidAutoEndOutcomeError: outcome is not an AutoEndOutcome value.
        """
        try:
            outcome = AutoEndOutcome(outcome)
        except ValueError as exc:
            raise InvalidAutoEndOutcomeError(outcome) from exc

        now = now or datetime.now(timezone.utc)
        async for session in self._session_factory():
            result = await session.execute(
                update(MeetingModel)
                .where(MeetingModel.id == meeting_id)
                .values(
                    auto_end_check_at=now,
                    auto_end_check_outcome=outcome.value,
                    claimed_until=None,
                )
            )
            await session.commit()

            if result.rowcount == 0:
                logger.debug("auto_end_target_missing", meeting_id=str(meeting_id))
                return False
            logger.info(
                "meeting_auto_end_recorded",
                meeting_id=str(meeting_id),
                outcome=outcome.value,
            )
            return True

    async def release(self, meeting_id: uuid.UUID) -> None:
        """Drop the claim on a meeting so it is scanned again right away."""
        async for session in self._session_factory():
            await session.execute(
                update(MeetingModel)
                .where(MeetingModel.id == meeting_id)
                .values(claimed_until=None)
            )
            await session.commit()

    @staticmethod
    def _candidates(stmt: Select, now: datetime, provider_ids: list[str] | None) -> Select:
        stmt = stmt.where(
            MeetingModel.auto_end_check_at.is_(None),
            claim_is_free(MeetingModel.claimed_until, now),
        )
        if provider_ids is not None:
            stmt = stmt.where(MeetingModel.meeting_provider_id.in_(provider_ids))
        return stmt.limit(1).with_for_update(of=MeetingModel, skip_locked=True)
