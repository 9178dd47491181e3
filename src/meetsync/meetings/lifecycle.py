"""Meeting lifecycle applier -- persists the outcome of provider calls.

Every write-back marks the owning event or session IN_SYNC and clears its
claim lease. When a claim token is passed, the owner is only settled if
it still holds that lease: the CRUD layer drops the lease whenever an
edit moves the owner back to PENDING_ACTION, so a concurrent edit is
never hidden by a slow provider call finishing late.

Missing targets are benign no-ops. Uniqueness violations (a second
meeting for the same owner, a duplicate provider meeting id) surface as
MeetingConstraintError.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetsync.meetings.errors import MeetingConstraintError
from src.meetsync.meetings.models import EventModel, MeetingModel, SessionModel
from src.meetsync.meetings.schemas import SyncState

logger = structlog.get_logger(__name__)


def _require_single_owner(event_id: uuid.UUID | None, session_id: uuid.UUID | None) -> None:
    if (event_id is None) == (session_id is None):
        raise ValueError("exactly one of event_id or session_id is required")


def _reject_two_owners(event_id: uuid.UUID | None, session_id: uuid.UUID | None) -> None:
    if event_id is not None and session_id is not None:
        raise ValueError("event_id and session_id are mutually exclusive")


async def _settle_owner(
    session: AsyncSession,
    event_id: uuid.UUID | None,
    session_id: uuid.UUID | None,
    error: str | None = None,
    claimed_until: datetime | None = None,
) -> bool:
    """Mark the owner IN_SYNC with the given error. Returns False if nothing matched."""
    if event_id is not None:
        model, owner_id = EventModel, event_id
    elif session_id is not None:
        model, owner_id = SessionModel, session_id
    else:
        return False

    stmt = (
        update(model)
        .where(model.id == owner_id)
        .values(
            meeting_sync_state=SyncState.IN_SYNC.value,
            meeting_error=error,
            meeting_sync_claimed_until=None,
        )
    )
    if claimed_until is not None:
        stmt = stmt.where(model.meeting_sync_claimed_until == claimed_until)

    result = await session.execute(stmt)
    if result.rowcount == 0:
        logger.debug(
            "meeting_owner_not_settled",
            event_id=str(event_id) if event_id else None,
            session_id=str(session_id) if session_id else None,
        )
        return False
    return True


async def _owner_exists(
    session: AsyncSession,
    event_id: uuid.UUID | None,
    session_id: uuid.UUID | None,
) -> bool:
    if event_id is not None:
        stmt = select(EventModel.id).where(EventModel.id == event_id)
    else:
        stmt = select(SessionModel.id).where(SessionModel.id == session_id)
    return (await session.execute(stmt)).scalar_one_or_none() is not None


class MeetingLifecycle:
    """Applies provider results to meetings and their owners.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def apply_meeting_created(
        self,
        provider: str,
        provider_meeting_id: str,
        host_id: str | None,
        join_url: str,
        password: str | None,
        event_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
        claimed_until: datetime | None = None,
    ) -> uuid.UUID:
        """Insert the meeting for a newly created provider meeting.

        If the owner was hard-deleted while the provider call ran, the row
        is stored as an orphan so the provider meeting still gets torn down.

        Returns:
            The new meeting's id.

        Raises:
            ValueError: Not exactly one owner given.
            MeetingConstraintError: The owner already has a meeting, or the
                provider meeting id is already recorded.
        """
        _require_single_owner(event_id, session_id)

        async for session in self._session_factory():
            if not await _owner_exists(session, event_id, session_id):
                logger.warning(
                    "meeting_owner_gone_before_create",
                    event_id=str(event_id) if event_id else None,
                    session_id=str(session_id) if session_id else None,
                    provider_meeting_id=provider_meeting_id,
                )
                event_id = session_id = None

            meeting = MeetingModel(
                id=uuid.uuid4(),
                meeting_provider_id=provider,
                provider_meeting_id=provider_meeting_id,
                provider_host_user_id=host_id,
                join_url=join_url,
                password=password,
                event_id=event_id,
                session_id=session_id,
            )
            session.add(meeting)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise MeetingConstraintError(
                    f"cannot record meeting {provider}/{provider_meeting_id}: {exc.orig}"
                ) from exc

            await _settle_owner(session, event_id, session_id, claimed_until=claimed_until)
            await session.commit()

            logger.info(
                "meeting_created",
                meeting_id=str(meeting.id),
                provider=provider,
                provider_meeting_id=provider_meeting_id,
                host=host_id,
                event_id=str(event_id) if event_id else None,
                session_id=str(session_id) if session_id else None,
            )
            return meeting.id

    async def apply_meeting_updated(
        self,
        meeting_id: uuid.UUID,
        provider_meeting_id: str,
        join_url: str,
        password: str | None,
        event_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
        claimed_until: datetime | None = None,
    ) -> None:
        """Refresh meeting details after a provider update and settle the owner."""
        _reject_two_owners(event_id, session_id)

        async for session in self._session_factory():
            result = await session.execute(
                update(MeetingModel)
                .where(MeetingModel.id == meeting_id)
                .values(
                    provider_meeting_id=provider_meeting_id,
                    join_url=join_url,
                    password=password,
                )
            )
            if result.rowcount == 0:
                logger.debug("meeting_update_target_missing", meeting_id=str(meeting_id))

            await _settle_owner(session, event_id, session_id, claimed_until=claimed_until)
            await session.commit()

            logger.info(
                "meeting_updated",
                meeting_id=str(meeting_id),
                provider_meeting_id=provider_meeting_id,
            )

    async def apply_meeting_deleted(
        self,
        meeting_id: uuid.UUID | None,
        event_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
        claimed_until: datetime | None = None,
    ) -> None:
        """Remove the meeting row (when given) and settle the owner if it still exists."""
        _reject_two_owners(event_id, session_id)

        async for session in self._session_factory():
            if meeting_id is not None:
                result = await session.execute(
                    delete(MeetingModel).where(MeetingModel.id == meeting_id)
                )
                if result.rowcount == 0:
                    logger.debug("meeting_delete_target_missing", meeting_id=str(meeting_id))

            await _settle_owner(session, event_id, session_id, claimed_until=claimed_until)
            await session.commit()

            logger.info(
                "meeting_deleted",
                meeting_id=str(meeting_id) if meeting_id else None,
                event_id=str(event_id) if event_id else None,
                session_id=str(session_id) if session_id else None,
            )

    async def apply_meeting_error(
        self,
        message: str,
        event_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
        meeting_id: uuid.UUID | None = None,
        claimed_until: datetime | None = None,
    ) -> None:
        """Park the owner with an error, or drop an orphan meeting.

        The owner is marked IN_SYNC so it is not re-queued right away; the
        re-arm policy moves it back to pending later.
        """
        _reject_two_owners(event_id, session_id)

        async for session in self._session_factory():
            if event_id is not None or session_id is not None:
                await _settle_owner(
                    session, event_id, session_id, error=message, claimed_until=claimed_until
                )
                logger.warning(
                    "meeting_sync_parked",
                    event_id=str(event_id) if event_id else None,
                    session_id=str(session_id) if session_id else None,
                    error=message,
                )
            elif meeting_id is not None:
                await session.execute(delete(MeetingModel).where(MeetingModel.id == meeting_id))
                logger.warning(
                    "orphan_meeting_dropped",
                    meeting_id=str(meeting_id),
                    error=message,
                )
            await session.commit()

    async def apply_recording_url(
        self,
        provider: str,
        provider_meeting_id: str,
        url: str,
    ) -> bool:
        """Overwrite the recording URL of a meeting.

        Returns:
            True if a meeting matched, False otherwise.

        Raises:
            ValueError: url is blank.
        """
        if not url or not url.strip():
            raise ValueError("recording url must not be blank")

        async for session in self._session_factory():
            result = await session.execute(
                update(MeetingModel)
                .where(
                    MeetingModel.meeting_provider_id == provider,
                    MeetingModel.provider_meeting_id == provider_meeting_id,
                )
                .values(recording_url=url)
            )
            await session.commit()

            if result.rowcount == 0:
                logger.debug(
                    "recording_url_target_missing",
                    provider=provider,
                    provider_meeting_id=provider_meeting_id,
                )
                return False
            logger.info(
                "meeting_recording_url_updated",
                provider=provider,
                provider_meeting_id=provider_meeting_id,
            )
            return True
