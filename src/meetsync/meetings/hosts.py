"""Host allocator -- picks a provider host account with spare capacity.

A host account can run a bounded number of simultaneous meetings. The
load of each candidate is computed from the meetings already assigned to
it, using the owning event/session schedule:

- busy window of an existing meeting is [start, end + buffer)
- it counts against the host when it overlaps the requested [start, end)
- upcoming meetings (end >= now) break ties between equally loaded hosts

Allocation is read-only and best effort: nothing is reserved, so two
workers may pick the same host for overlapping slots.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetsync.meetings.models import EventModel, MeetingModel, SessionModel

logger = structlog.get_logger(__name__)


@dataclass
class HostLoad:
    """Meetings already assigned to one host account."""

    overlapping: int = 0
    upcoming: int = 0


def normalize_candidates(candidates: Iterable[str | None]) -> list[str]:
    """Trim, lower-case and de-duplicate candidates, dropping blanks."""
    seen: dict[str, None] = {}
    for candidate in candidates:
        if candidate is None:
            continue
        host = candidate.strip().lower()
        if host:
            seen.setdefault(host, None)
    return list(seen)


def select_host(
    candidates: Iterable[str | None],
    max_concurrent: int,
    loads: dict[str, HostLoad],
) -> str | None:
    """Pick the least-loaded candidate below max_concurrent.

    Ordered by overlapping count, then upcoming count, then identifier.
    Returns None when max_concurrent < 1 or every candidate is full.
    """
    if max_concurrent < 1:
        return None

    eligible = []
    for host in normalize_candidates(candidates):
        load = loads.get(host, HostLoad())
        if load.overlapping < max_concurrent:
            eligible.append((load.overlapping, load.upcoming, host))

    if not eligible:
        return None
    return min(eligible)[2]


class HostAllocator:
    """Computes host loads from stored meetings and selects a host.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        buffer: Time a host stays busy after a meeting's scheduled end.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        buffer: timedelta = timedelta(minutes=15),
    ) -> None:
        self._session_factory = session_factory
        self._buffer = buffer

    async def available_host(
        self,
        candidates: Iterable[str | None],
        max_concurrent: int,
        starts_at: datetime,
        ends_at: datetime,
        provider: str | None = None,
        now: datetime | None = None,
    ) -> str | None:
        """Return a host that can take a meeting in [starts_at, ends_at).

        Args:
            candidates: Host identifiers to choose from.
            max_concurrent: Overlapping meetings allowed per host.
            starts_at: Requested start instant.
            ends_at: Requested end instant.
            provider: Only count meetings of this provider when given.
            now: Reference time for the upcoming tie-break.

        Returns:
            Normalized host identifier, or None when no host is available.
        """
        hosts = normalize_candidates(candidates)
        if starts_at is None or ends_at is None or ends_at <= starts_at:
            return None
        if max_concurrent < 1 or not hosts:
            return None

        now = now or datetime.now(timezone.utc)
        loads = await self._host_loads(hosts, starts_at, ends_at, provider, now)
        host = select_host(hosts, max_concurrent, loads)

        logger.debug(
            "meeting_host_selected" if host else "meeting_host_unavailable",
            host=host,
            candidates=len(hosts),
            max_concurrent=max_concurrent,
        )
        return host

    async def _host_loads(
        self,
        hosts: list[str],
        starts_at: datetime,
        ends_at: datetime,
        provider: str | None,
        now: datetime,
    ) -> dict[str, HostLoad]:
        host_key = func.lower(MeetingModel.provider_host_user_id)
        owner_start = func.coalesce(EventModel.starts_at, SessionModel.starts_at)
        owner_end = func.coalesce(EventModel.ends_at, SessionModel.ends_at)

        stmt = (
            select(
                host_key,
                EventModel.starts_at,
                EventModel.ends_at,
                SessionModel.starts_at,
                SessionModel.ends_at,
            )
            .select_from(MeetingModel)
            .outerjoin(EventModel, EventModel.id == MeetingModel.event_id)
            .outerjoin(SessionModel, SessionModel.id == MeetingModel.session_id)
            .where(
                host_key.in_(hosts),
                owner_start.is_not(None),
                owner_end.is_not(None),
            )
        )
        if provider is not None:
            stmt = stmt.where(MeetingModel.meeting_provider_id == provider)

        loads: dict[str, HostLoad] = {}
        async for session in self._session_factory():
            rows = (await session.execute(stmt)).all()
            for host, event_start, event_end, session_start, session_end in rows:
                # Columns are loaded separately so UTCDateTime normalizes them
                start = event_start if event_start is not None else session_start
                end = event_end if event_end is not None else session_end
                load = loads.setdefault(host, HostLoad())
                if start < ends_at and end + self._buffer > starts_at:
                    load.overlapping += 1
                if end >= now:
                    load.upcoming += 1
        return loads
