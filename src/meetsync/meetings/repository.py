"""Meeting sync repository -- the query surface polled by the sync workers.

Provides MeetingSyncRepository, a facade over the queue, host allocator,
lifecycle applier and auto-end monitor that share one session_factory
callable. Workers only talk to this class, which keeps test doubles to a
single AsyncMock.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from src.meetsync.config import Settings
from src.meetsync.meetings.auto_end import AutoEndMonitor
from src.meetsync.meetings.hosts import HostAllocator
from src.meetsync.meetings.lifecycle import MeetingLifecycle
from src.meetsync.meetings.queue import OutOfSyncQueue
from src.meetsync.meetings.schemas import AutoEndOutcome, OverdueMeeting, WorkItem


class MeetingSyncRepository:
    """Meeting sync engine operations over a relational store.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        claim_ttl: Lease taken on dequeued rows. None or zero disables claims.
        host_buffer: Time a host stays busy after a meeting ends.
        auto_end_grace: Time after the scheduled end before auto-end applies.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        claim_ttl: timedelta | None = timedelta(minutes=5),
        host_buffer: timedelta = timedelta(minutes=15),
        auto_end_grace: timedelta = timedelta(minutes=10),
    ) -> None:
        self._queue = OutOfSyncQueue(session_factory, claim_ttl=claim_ttl)
        self._hosts = HostAllocator(session_factory, buffer=host_buffer)
        self._lifecycle = MeetingLifecycle(session_factory)
        self._auto_end = AutoEndMonitor(
            session_factory, grace=auto_end_grace, claim_ttl=claim_ttl
        )

    @classmethod
    def from_settings(
        cls,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        settings: Settings,
    ) -> MeetingSyncRepository:
        """Build a repository using the MEETINGS_* settings."""
        return cls(
            session_factory,
            claim_ttl=timedelta(seconds=settings.MEETINGS_CLAIM_TTL_SECONDS),
            host_buffer=timedelta(minutes=settings.MEETINGS_HOST_BUFFER_MINUTES),
            auto_end_grace=timedelta(minutes=settings.MEETINGS_AUTO_END_GRACE_MINUTES),
        )

    # ── Queue ────────────────────────────────────────────────────────────

    async def next_out_of_sync_item(self, now: datetime | None = None) -> WorkItem | None:
        return await self._queue.next_out_of_sync_item(now=now)

    async def release_item(self, item: WorkItem) -> None:
        await self._queue.release(item)

    # ── Hosts ────────────────────────────────────────────────────────────

    async def available_host(
        self,
        candidates: Iterable[str | None],
        max_concurrent: int,
        starts_at: datetime,
        ends_at: datetime,
        provider: str | None = None,
        now: datetime | None = None,
    ) -> str | None:
        return await self._hosts.available_host(
            candidates, max_concurrent, starts_at, ends_at, provider=provider, now=now
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

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
        return await self._lifecycle.apply_meeting_created(
            provider,
            provider_meeting_id,
            host_id,
            join_url,
            password,
            event_id=event_id,
            session_id=session_id,
            claimed_until=claimed_until,
        )

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
        await self._lifecycle.apply_meeting_updated(
            meeting_id,
            provider_meeting_id,
            join_url,
            password,
            event_id=event_id,
            session_id=session_id,
            claimed_until=claimed_until,
        )

    async def apply_meeting_deleted(
        self,
        meeting_id: uuid.UUID | None,
        event_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
        claimed_until: datetime | None = None,
    ) -> None:
        await self._lifecycle.apply_meeting_deleted(
            meeting_id,
            event_id=event_id,
            session_id=session_id,
            claimed_until=claimed_until,
        )

    async def apply_meeting_error(
        self,
        message: str,
        event_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
        meeting_id: uuid.UUID | None = None,
        claimed_until: datetime | None = None,
    ) -> None:
        await self._lifecycle.apply_meeting_error(
            message,
            event_id=event_id,
            session_id=session_id,
            meeting_id=meeting_id,
            claimed_until=claimed_until,
        )

    async def apply_recording_url(
        self, provider: str, provider_meeting_id: str, url: str
    ) -> bool:
        return await self._lifecycle.apply_recording_url(provider, provider_meeting_id, url)

    # ── Auto-End ─────────────────────────────────────────────────────────

    async def next_overdue_meeting(
        self,
        now: datetime | None = None,
        providers: Iterable[str] | None = None,
    ) -> OverdueMeeting | None:
        return await self._auto_end.next_overdue_meeting(now=now, providers=providers)

    async def release_overdue_meeting(self, meeting_id: uuid.UUID) -> None:
        await self._auto_end.release(meeting_id)

    async def record_auto_end_outcome(
        self,
        meeting_id: uuid.UUID,
        outcome: AutoEndOutcome | str,
        now: datetime | None = None,
    ) -> bool:
        return await self._auto_end.record_auto_end_outcome(meeting_id, outcome, now=now)
