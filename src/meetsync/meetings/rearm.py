"""Re-arm policy for meetings parked with a provider error.

A non-retryable provider failure parks the owning event or session: the
error message is stored and the sync state set to IN_SYNC so the queue
stops returning it. ErrorRearmPolicy moves such owners back to
PENDING_ACTION when a provider action is still owed (a meeting is still
wanted, or one still exists and must be torn down). RearmScheduler runs
the policy on an APScheduler interval job.

Exports:
    ErrorRearmPolicy: One-shot re-arm of parked owners.
    RearmScheduler: Interval scheduler around ErrorRearmPolicy.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetsync.core.monitoring import meeting_errors_rearmed_total
from src.meetsync.meetings.models import EventModel, MeetingModel, SessionModel
from src.meetsync.meetings.queue import event_is_live, event_wants_meeting
from src.meetsync.meetings.schemas import MEETING_KINDS, SyncState

logger = structlog.get_logger(__name__)


class ErrorRearmPolicy:
    """Flips parked events and sessions back to pending.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def rearm_errored_meetings(self) -> int:
        """Move parked owners with outstanding provider work back to PENDING_ACTION.

        The stored error is kept until a later sync succeeds.

        Returns:
            Number of events and sessions re-armed.
        """
        live_events = select(EventModel.id).where(event_is_live())
        session_wants_meeting = and_(
            SessionModel.meeting_requested.is_(True),
            SessionModel.kind.in_(MEETING_KINDS),
            SessionModel.event_id.in_(live_events),
        )

        events_stmt = (
            update(EventModel)
            .where(
                EventModel.meeting_error.is_not(None),
                EventModel.meeting_sync_state == SyncState.IN_SYNC.value,
                or_(
                    event_wants_meeting(),
                    EventModel.id.in_(
                        select(MeetingModel.event_id).where(MeetingModel.event_id.is_not(None))
                    ),
                ),
            )
            .values(meeting_sync_state=SyncState.PENDING_ACTION.value)
            .execution_options(synchronize_session=False)
        )
        sessions_stmt = (
            update(SessionModel)
            .where(
                SessionModel.meeting_error.is_not(None),
                SessionModel.meeting_sync_state == SyncState.IN_SYNC.value,
                or_(
                    session_wants_meeting,
                    SessionModel.id.in_(
                        select(MeetingModel.session_id).where(MeetingModel.session_id.is_not(None))
                    ),
                ),
            )
            .values(meeting_sync_state=SyncState.PENDING_ACTION.value)
            .execution_options(synchronize_session=False)
        )

        async for session in self._session_factory():
            events = (await session.execute(events_stmt)).rowcount
            sessions = (await session.execute(sessions_stmt)).rowcount
            await session.commit()

            total = events + sessions
            if total:
                meeting_errors_rearmed_total.inc(total)
                logger.info("meeting_errors_rearmed", events=events, sessions=sessions)
            return total


class RearmScheduler:
    """Runs ErrorRearmPolicy every interval_minutes on an AsyncIOScheduler.

    Args:
        policy: ErrorRearmPolicy to run.
        interval_minutes: Minutes between runs; 0 or less disables the job.
    """

    def __init__(self, policy: ErrorRearmPolicy, interval_minutes: int) -> None:
        self._policy = policy
        self._interval_minutes = interval_minutes
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> bool:
        """Start the scheduler. Returns False when re-arming is disabled."""
        if self._interval_minutes <= 0:
            logger.info("meeting_rearm_disabled")
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id="meeting_error_rearm",
            name="Re-arm meetings parked with a provider error",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("meeting_rearm_scheduler_started", interval_minutes=self._interval_minutes)
        return True

    def stop(self) -> None:
        """Shut the scheduler down without waiting for a running job."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("meeting_rearm_scheduler_stopped")

    async def _run(self) -> int:
        try:
            return await self._policy.rearm_errored_meetings()
        except Exception:
            logger.warning("meeting_rearm_failed", exc_info=True)
            return 0
