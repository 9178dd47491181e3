"""Meeting sync workers -- poll the repository and drive the providers.

Two loops consume MeetingSyncRepository:

- MeetingSyncWorker: dequeue one out-of-sync item, call the provider
  (create, update or delete), write the result back.
- AutoEndWorker: dequeue one overdue meeting, ask the provider to end
  it, record the outcome.

Provider calls run with no database lock held; the queue's claim lease
keeps other workers away meanwhile. Non-retryable provider failures are
recorded and park the item. Retryable failures release the claim and
propagate to the loop, which pauses before the next cycle.

MeetingsManager starts and stops the worker tasks and the re-arm
scheduler together.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from typing import Any, TypeVar

import structlog
from sqlalchemy.exc import OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.meetsync.config import Settings, get_settings
from src.meetsync.core.monitoring import meeting_auto_end_checks_total, track_sync_operation
from src.meetsync.meetings.providers import (
    MeetingProviderError,
    MeetingsProvider,
    NoHostAvailableError,
    ProviderMeetingNotFoundError,
    ProviderNotConfiguredError,
)
from src.meetsync.meetings.rearm import RearmScheduler
from src.meetsync.meetings.repository import MeetingSyncRepository
from src.meetsync.meetings.schemas import (
    AutoEndOutcome,
    MeetingEndResult,
    SyncAction,
    WorkItem,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    reraise=True,
)
async def _write_back(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """Persist a provider result, retrying transient database failures."""
    return await fn(*args, **kwargs)


async def _wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Sleep up to timeout seconds. Returns True if stop was set meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True


# ── Polling Loop ────────────────────────────────────────────────────────────


class _PollingWorker(ABC):
    """Runs one cycle at a time until stopped.

    A cycle returns True when it handled an item (the next cycle starts at
    once), False when there was nothing to do.
    """

    name = "worker"

    def __init__(self, pause_on_none: float, pause_on_error: float) -> None:
        self._pause_on_none = pause_on_none
        self._pause_on_error = pause_on_error

    @abstractmethod
    async def _cycle(self) -> bool: ...

    async def run(self, stop: asyncio.Event) -> None:
        """Loop until stop is set."""
        # Each worker runs in its own task, so the binding stays task-local
        structlog.contextvars.bind_contextvars(worker=self.name)
        logger.info(f"{self.name}_started")
        while not stop.is_set():
            try:
                handled = await self._cycle()
            except Exception as exc:
                logger.error(f"{self.name}_cycle_failed", exc_info=True)
                pause = getattr(exc, "retry_after", None) or self._pause_on_error
            else:
                if handled:
                    continue
                pause = self._pause_on_none

            if await _wait_for_stop(stop, pause):
                break
        logger.info(f"{self.name}_stopped")


# ── Sync Worker ─────────────────────────────────────────────────────────────


class MeetingSyncWorker(_PollingWorker):
    """Brings provider meetings in line with events and sessions.

    Args:
        repository: MeetingSyncRepository to poll and write back to.
        providers: Provider clients keyed by meeting_provider_id.
        settings: Settings for host allocation and pauses (defaults to get_settings()).
    """

    name = "meeting_sync_worker"

    def __init__(
        self,
        repository: MeetingSyncRepository,
        providers: Mapping[str, MeetingsProvider],
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(
            pause_on_none=settings.MEETINGS_PAUSE_ON_NONE_SECONDS,
            pause_on_error=settings.MEETINGS_PAUSE_ON_ERROR_SECONDS,
        )
        self._repository = repository
        self._providers = providers
        self._host_pool = settings.get_host_pool()
        self._max_per_host = settings.MEETINGS_MAX_SIMULTANEOUS_PER_HOST

    async def _cycle(self) -> bool:
        return await self.sync_meeting()

    async def sync_meeting(self) -> bool:
        """Process one out-of-sync item. Returns False when the queue is empty."""
        item = await self._repository.next_out_of_sync_item()
        if item is None:
            return False

        action = item.sync_action
        async with track_sync_operation(action.value) as tracker:
            try:
                if action is SyncAction.DELETE:
                    await self._delete_meeting(item)
                elif action is SyncAction.CREATE:
                    await self._create_meeting(item)
                else:
                    await self._update_meeting(item)
            except MeetingProviderError as exc:
                if exc.retryable:
                    await self._repository.release_item(item)
                    raise
                tracker["outcome"] = "parked"
                await _write_back(
                    self._repository.apply_meeting_error,
                    str(exc),
                    event_id=item.event_id,
                    session_id=item.session_id,
                    meeting_id=item.meeting_id,
                    claimed_until=item.claimed_until,
                )
        return True

    def _provider_for(self, item: WorkItem) -> MeetingsProvider:
        provider = self._providers.get(item.meeting_provider_id or "")
        if provider is None:
            raise ProviderNotConfiguredError(item.meeting_provider_id)
        return provider

    async def _create_meeting(self, item: WorkItem) -> None:
        provider = self._provider_for(item)

        host = None
        candidates = self._host_pool or item.hosts or []
        if candidates:
            ends_at = item.starts_at + timedelta(seconds=item.duration_secs or 0)
            host = await self._repository.available_host(
                candidates,
                self._max_per_host,
                item.starts_at,
                ends_at,
                provider=item.meeting_provider_id,
            )
            if host is None:
                raise NoHostAvailableError(len(candidates))

        meeting = await provider.create_meeting(item, host)
        await _write_back(
            self._repository.apply_meeting_created,
            item.meeting_provider_id,
            meeting.id,
            host,
            meeting.join_url,
            meeting.password,
            event_id=item.event_id,
            session_id=item.session_id,
            claimed_until=item.claimed_until,
        )

    async def _update_meeting(self, item: WorkItem) -> None:
        provider = self._provider_for(item)

        await provider.update_meeting(item.provider_meeting_id, item)
        # Re-read to pick up provider-generated values such as passwords
        meeting = await provider.get_meeting(item.provider_meeting_id)
        await _write_back(
            self._repository.apply_meeting_updated,
            item.meeting_id,
            meeting.id,
            meeting.join_url,
            meeting.password,
            event_id=item.event_id,
            session_id=item.session_id,
            claimed_until=item.claimed_until,
        )

    async def _delete_meeting(self, item: WorkItem) -> None:
        if item.provider_meeting_id is not None:
            provider = self._provider_for(item)
            try:
                await provider.delete_meeting(item.provider_meeting_id)
            except ProviderMeetingNotFoundError:
                logger.debug(
                    "provider_meeting_already_gone",
                    provider_meeting_id=item.provider_meeting_id,
                )

        await _write_back(
            self._repository.apply_meeting_deleted,
            item.meeting_id,
            event_id=item.event_id,
            session_id=item.session_id,
            claimed_until=item.claimed_until,
        )


# ── Auto-End Worker ─────────────────────────────────────────────────────────


class AutoEndWorker(_PollingWorker):
    """Ends provider meetings that kept running past their schedule.

    Args:
        repository: MeetingSyncRepository to poll and record outcomes in.
        providers: Provider clients keyed by meeting_provider_id.
        settings: Settings for pauses (defaults to get_settings()).
    """

    name = "meeting_auto_end_worker"

    def __init__(
        self,
        repository: MeetingSyncRepository,
        providers: Mapping[str, MeetingsProvider],
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(
            pause_on_none=settings.MEETINGS_PAUSE_ON_NONE_SECONDS,
            pause_on_error=settings.MEETINGS_PAUSE_ON_ERROR_SECONDS,
        )
        self._repository = repository
        self._providers = providers

    async def _cycle(self) -> bool:
        return await self.end_meeting()

    async def end_meeting(self) -> bool:
        """Check one overdue meeting. Returns False when none is overdue."""
        overdue = await self._repository.next_overdue_meeting()
        if overdue is None:
            return False

        try:
            provider = self._providers.get(overdue.meeting_provider_id)
            if provider is None:
                raise ProviderNotConfiguredError(overdue.meeting_provider_id)
            result = await provider.end_meeting(overdue.provider_meeting_id)
        except ProviderMeetingNotFoundError:
            outcome = AutoEndOutcome.NOT_FOUND
        except MeetingProviderError as exc:
            if exc.retryable:
                await self._repository.release_overdue_meeting(overdue.meeting_id)
                raise
            logger.warning(
                "meeting_auto_end_failed",
                meeting_id=str(overdue.meeting_id),
                error=str(exc),
            )
            outcome = AutoEndOutcome.ERROR
        else:
            if result is MeetingEndResult.ENDED:
                outcome = AutoEndOutcome.AUTO_ENDED
            else:
                outcome = AutoEndOutcome.ALREADY_NOT_RUNNING

        await _write_back(self._repository.record_auto_end_outcome, overdue.meeting_id, outcome)
        meeting_auto_end_checks_total.labels(outcome=outcome.value).inc()
        return True


# ── Manager ─────────────────────────────────────────────────────────────────


class MeetingsManager:
    """Owns the worker tasks and the re-arm scheduler.

    Args:
        repository: Shared MeetingSyncRepository.
        providers: Provider clients keyed by meeting_provider_id.
        settings: Settings (defaults to get_settings()).
        rearm: Optional re-arm scheduler started and stopped with the workers.
    """

    def __init__(
        self,
        repository: MeetingSyncRepository,
        providers: Mapping[str, MeetingsProvider],
        settings: Settings | None = None,
        rearm: RearmScheduler | None = None,
    ) -> None:
        self._repository = repository
        self._providers = providers
        self._settings = settings or get_settings()
        self._rearm = rearm
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def start(self) -> None:
        """Spawn the worker tasks on the running event loop."""
        if self._tasks:
            return
        self._stop.clear()

        for index in range(self._settings.MEETINGS_SYNC_WORKERS):
            worker = MeetingSyncWorker(self._repository, self._providers, self._settings)
            self._tasks.append(
                asyncio.create_task(worker.run(self._stop), name=f"meeting-sync-{index}")
            )

        if self._settings.MEETINGS_AUTO_END_ENABLED:
            worker = AutoEndWorker(self._repository, self._providers, self._settings)
            self._tasks.append(
                asyncio.create_task(worker.run(self._stop), name="meeting-auto-end")
            )

        if self._rearm is not None:
            self._rearm.start()

        logger.info(
            "meetings_manager_started",
            sync_workers=self._settings.MEETINGS_SYNC_WORKERS,
            auto_end=self._settings.MEETINGS_AUTO_END_ENABLED,
            providers=sorted(self._providers),
        )

    async def stop(self) -> None:
        """Signal every worker to stop and wait for them to finish."""
        self._stop.set()
        if self._rearm is not None:
            self._rearm.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks)
            self._tasks = []
        logger.info("meetings_manager_stopped")
