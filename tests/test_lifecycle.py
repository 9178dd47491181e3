"""Integration tests for the lifecycle write-backs on SQLite.

Tests meeting creation/update/deletion, error parking, recording URLs,
uniqueness violations, orphan handling and the claim token guard that
keeps concurrent edits pending.
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import delete, update

from src.meetsync.meetings.errors import MeetingConstraintError
from src.meetsync.meetings.models import EventModel, MeetingModel, SessionModel
from src.meetsync.meetings.schemas import SyncAction, SyncState
from tests.factories import NOW, add_rows, count_rows, fetch, make_event, make_meeting, make_session


async def _created(repository, **owner) -> uuid.UUID:
    return await repository.apply_meeting_created(
        "zoom", "zoom-123", "host1@example.com", "https://zoom.us/j/123", "pw", **owner
    )


# ── apply_meeting_created ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_created_links_meeting_and_settles_event(repository, session_factory) -> None:
    event = make_event(meeting_error="old failure")
    await add_rows(session_factory, event)

    meeting_id = await _created(repository, event_id=event.id)

    meeting = await fetch(session_factory, MeetingModel, meeting_id)
    assert meeting.event_id == event.id
    assert meeting.session_id is None
    assert meeting.provider_meeting_id == "zoom-123"
    assert meeting.provider_host_user_id == "host1@example.com"
    assert meeting.join_url == "https://zoom.us/j/123"
    assert meeting.password == "pw"
    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value
    assert stored.meeting_error is None


@pytest.mark.asyncio
async def test_created_for_session(repository, session_factory) -> None:
    parent = make_event(meeting_sync_state=SyncState.IN_SYNC.value)
    session = make_session(parent)
    await add_rows(session_factory, parent, session)

    meeting_id = await _created(repository, session_id=session.id)

    meeting = await fetch(session_factory, MeetingModel, meeting_id)
    assert meeting.session_id == session.id
    stored = await fetch(session_factory, SessionModel, session.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value


@pytest.mark.asyncio
@pytest.mark.parametrize("both", [True, False])
async def test_created_requires_exactly_one_owner(repository, both) -> None:
    owners = {"event_id": uuid.uuid4(), "session_id": uuid.uuid4()} if both else {}
    with pytest.raises(ValueError):
        await _created(repository, **owners)


@pytest.mark.asyncio
async def test_second_meeting_for_owner_is_rejected(repository, session_factory) -> None:
    event = make_event()
    await add_rows(session_factory, event, make_meeting(event_id=event.id))

    with pytest.raises(MeetingConstraintError):
        await _created(repository, event_id=event.id)
    assert await count_rows(session_factory, MeetingModel) == 1


@pytest.mark.asyncio
async def test_duplicate_provider_meeting_id_is_rejected(repository, session_factory) -> None:
    first = make_event()
    second = make_event()
    await add_rows(session_factory, first, second)

    await _created(repository, event_id=first.id)
    with pytest.raises(MeetingConstraintError):
        await _created(repository, event_id=second.id)

    stored = await fetch(session_factory, EventModel, second.id)
    assert stored.meeting_sync_state == SyncState.PENDING_ACTION.value


@pytest.mark.asyncio
async def test_created_for_deleted_owner_becomes_orphan(repository, session_factory) -> None:
    meeting_id = await _created(repository, event_id=uuid.uuid4())

    meeting = await fetch(session_factory, MeetingModel, meeting_id)
    assert meeting.event_id is None
    assert meeting.session_id is None

    item = await repository.next_out_of_sync_item(now=NOW)
    assert item.is_orphan
    assert item.meeting_id == meeting_id


# ── Claim token guard ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_edit_during_provider_call_stays_pending(repository, session_factory) -> None:
    event = make_event()
    await add_rows(session_factory, event)
    item = await repository.next_out_of_sync_item(now=NOW)

    # Concurrent edit: the CRUD layer re-marks the event pending and drops the lease
    async for session in session_factory():
        await session.execute(
            update(EventModel)
            .where(EventModel.id == event.id)
            .values(name="Renamed", meeting_sync_claimed_until=None)
        )
        await session.commit()

    await _created(repository, event_id=event.id, claimed_until=item.claimed_until)

    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.PENDING_ACTION.value
    follow_up = await repository.next_out_of_sync_item(now=NOW)
    assert follow_up.event_id == event.id
    assert follow_up.sync_action == SyncAction.UPDATE
    assert follow_up.topic == "Renamed"


@pytest.mark.asyncio
async def test_matching_claim_token_settles_owner(repository, session_factory) -> None:
    event = make_event()
    await add_rows(session_factory, event)
    item = await repository.next_out_of_sync_item(now=NOW)

    await _created(repository, event_id=event.id, claimed_until=item.claimed_until)

    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value
    assert stored.meeting_sync_claimed_until is None


# ── apply_meeting_updated ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_updated_refreshes_meeting(repository, session_factory) -> None:
    event = make_event(meeting_error="boom")
    meeting = make_meeting(event_id=event.id)
    await add_rows(session_factory, event, meeting)

    await repository.apply_meeting_updated(
        meeting.id, "zoom-new", "https://zoom.us/j/new", None, event_id=event.id
    )

    stored_meeting = await fetch(session_factory, MeetingModel, meeting.id)
    assert stored_meeting.provider_meeting_id == "zoom-new"
    assert stored_meeting.join_url == "https://zoom.us/j/new"
    assert stored_meeting.password is None
    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value
    assert stored.meeting_error is None


@pytest.mark.asyncio
async def test_updated_with_missing_meeting_still_settles(repository, session_factory) -> None:
    event = make_event()
    await add_rows(session_factory, event)

    await repository.apply_meeting_updated(
        uuid.uuid4(), "zoom-x", "https://zoom.us/j/x", None, event_id=event.id
    )

    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value


@pytest.mark.asyncio
async def test_updated_rejects_two_owners(repository) -> None:
    with pytest.raises(ValueError):
        await repository.apply_meeting_updated(
            uuid.uuid4(),
            "zoom-x",
            "https://zoom.us/j/x",
            None,
            event_id=uuid.uuid4(),
            session_id=uuid.uuid4(),
        )


# ── apply_meeting_deleted ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_deleted_removes_meeting_and_settles_owner(repository, session_factory) -> None:
    event = make_event(canceled=True)
    meeting = make_meeting(event_id=event.id)
    await add_rows(session_factory, event, meeting)

    await repository.apply_meeting_deleted(meeting.id, event_id=event.id)

    assert await fetch(session_factory, MeetingModel, meeting.id) is None
    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value
    assert await repository.next_out_of_sync_item(now=NOW) is None


@pytest.mark.asyncio
async def test_deleted_without_meeting_settles_owner(repository, session_factory) -> None:
    event = make_event(canceled=True)
    await add_rows(session_factory, event)

    await repository.apply_meeting_deleted(None, event_id=event.id)

    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value


@pytest.mark.asyncio
async def test_orphan_delete_removes_meeting(repository, session_factory) -> None:
    orphan = make_meeting()
    await add_rows(session_factory, orphan)

    await repository.apply_meeting_deleted(orphan.id)

    assert await count_rows(session_factory, MeetingModel) == 0


@pytest.mark.asyncio
async def test_deleted_after_owner_hard_deleted_succeeds(repository, session_factory) -> None:
    event = make_event(canceled=True)
    meeting = make_meeting(event_id=event.id)
    await add_rows(session_factory, event, meeting)
    claimed = await repository.next_out_of_sync_item(now=NOW)
    assert claimed.sync_action == SyncAction.DELETE

    # Owner removed while the provider call was in flight
    async for db in session_factory():
        await db.execute(delete(EventModel).where(EventModel.id == event.id))
        await db.commit()

    await repository.apply_meeting_deleted(
        meeting.id, event_id=event.id, claimed_until=claimed.claimed_until
    )

    assert await count_rows(session_factory, MeetingModel) == 0
    assert await fetch(session_factory, EventModel, event.id) is None
    assert await repository.next_out_of_sync_item(now=NOW) is None


@pytest.mark.asyncio
async def test_deleted_after_session_hard_deleted_succeeds(repository, session_factory) -> None:
    event = make_event(meeting_sync_state=SyncState.IN_SYNC.value)
    session = make_session(event, meeting_requested=False)
    meeting = make_meeting(session_id=session.id)
    await add_rows(session_factory, event, session, meeting)

    async for db in session_factory():
        await db.execute(delete(SessionModel).where(SessionModel.id == session.id))
        await db.commit()

    await repository.apply_meeting_deleted(meeting.id, session_id=session.id)

    assert await count_rows(session_factory, MeetingModel) == 0

@pytest.mark.asyncio
async def test_hard_deleted_owner_leaves_orphan_for_teardown(repository, session_factory) -> None:
    event = make_event(meeting_sync_state=SyncState.IN_SYNC.value)
    session = make_session(event, meeting_sync_state=SyncState.IN_SYNC.value)
    session_meeting = make_meeting(session_id=session.id)
    await add_rows(session_factory, event, session, session_meeting)

    async for db in session_factory():
        await db.execute(delete(EventModel).where(EventModel.id == event.id))
        await db.commit()

    assert await fetch(session_factory, SessionModel, session.id) is None
    item = await repository.next_out_of_sync_item(now=NOW)
    assert item.is_orphan
    assert item.meeting_id == session_meeting.id
    assert item.sync_action == SyncAction.DELETE


# ── apply_meeting_error ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_error_parks_owner(repository, session_factory) -> None:
    event = make_event()
    await add_rows(session_factory, event)
    item = await repository.next_out_of_sync_item(now=NOW)

    await repository.apply_meeting_error(
        "provider client error: invalid host",
        event_id=event.id,
        claimed_until=item.claimed_until,
    )

    stored = await fetch(session_factory, EventModel, event.id)
    assert stored.meeting_sync_state == SyncState.IN_SYNC.value
    assert stored.meeting_error == "provider client error: invalid host"
    assert stored.meeting_sync_claimed_until is None
    assert await repository.next_out_of_sync_item(now=NOW) is None


@pytest.mark.asyncio
async def test_error_for_orphan_drops_meeting(repository, session_factory) -> None:
    orphan = make_meeting()
    await add_rows(session_factory, orphan)

    await repository.apply_meeting_error("meeting not found", meeting_id=orphan.id)

    assert await fetch(session_factory, MeetingModel, orphan.id) is None


# ── apply_recording_url ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_recording_url_is_overwritten(repository, session_factory) -> None:
    meeting = make_meeting(recording_url="https://old.example.com/rec")
    await add_rows(session_factory, meeting)

    updated = await repository.apply_recording_url(
        "zoom", meeting.provider_meeting_id, "https://new.example.com/rec"
    )

    assert updated is True
    stored = await fetch(session_factory, MeetingModel, meeting.id)
    assert stored.recording_url == "https://new.example.com/rec"


@pytest.mark.asyncio
async def test_recording_url_for_unknown_meeting(repository) -> None:
    assert await repository.apply_recording_url("zoom", "missing", "https://x/rec") is False


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["", "   "])
async def test_blank_recording_url_is_rejected(repository, url) -> None:
    with pytest.raises(ValueError):
        await repository.apply_recording_url("zoom", "zoom-1", url)
