"""End-to-end engine scenarios driven through the repository facade."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from src.meetsync.meetings.models import EventModel, MeetingModel
from src.meetsync.meetings.schemas import SyncAction, SyncState
from tests.factories import NOW, add_rows, count_rows, fetch, make_event


@pytest.mark.asyncio
async def test_event_meeting_created_then_canceled(repository, session_factory) -> None:
    starts_at = NOW.replace(hour=9) + timedelta(days=1)
    event = make_event(
        meeting_provider_id="p",
        meeting_hosts=["h1", "h2"],
        starts_at=starts_at,
        ends_at=starts_at + timedelta(hours=1),
    )
    await add_rows(session_factory, event)

    # Create
    item = await repository.next_out_of_sync_item(now=NOW)
    assert item.sync_action == SyncAction.CREATE
    assert item.event_id == event.id

    host = await repository.available_host(
        item.hosts,
        2,
        item.starts_at,
        item.starts_at + timedelta(seconds=item.duration_secs),
        provider="p",
        now=NOW,
    )
    assert host == "h1"

    meeting_id = await repository.apply_meeting_created(
        "p",
        "p-1",
        host,
        "https://meet.example.com/p-1",
        None,
        event_id=event.id,
        claimed_until=item.claimed_until,
    )
    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value
    assert await repository.next_out_of_sync_item(now=NOW) is None

    # Cancel: the CRUD layer flags the event pending and drops any lease
    async for session in session_factory():
        await session.execute(
            update(EventModel)
            .where(EventModel.id == event.id)
            .values(
                canceled=True,
                meeting_sync_state=SyncState.PENDING_ACTION.value,
                meeting_sync_claimed_until=None,
            )
        )
        await session.commit()

    item = await repository.next_out_of_sync_item(now=NOW)
    assert item.sync_action == SyncAction.DELETE
    assert item.meeting_id == meeting_id
    assert item.provider_meeting_id == "p-1"

    await repository.apply_meeting_deleted(
        item.meeting_id, event_id=event.id, claimed_until=item.claimed_until
    )

    assert await count_rows(session_factory, MeetingModel) == 0
    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value
    assert await repository.next_out_of_sync_item(now=NOW) is None
