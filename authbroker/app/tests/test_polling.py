"""
Tests for the polling session store (auth/polling.py).
"""

import pytest

from authbroker.app.auth.polling import (
    COMPLETED,
    ERROR,
    NOT_FOUND,
    PENDING,
    InMemoryPollingSessionStore,
)


@pytest.fixture
def store(clock):
    return InMemoryPollingSessionStore(ttl_seconds=600, clock=clock)


@pytest.mark.asyncio
async def test_new_session_is_pending(store):
    session = await store.create(state="S1", session_id="sess-1")

    assert len(session.polling_id) == 64
    status = await store.status(session.polling_id)
    assert status.status == PENDING
    assert status.result is None
    assert status.error is None
    assert status.created_at is not None
    assert status.expires_at is not None


@pytest.mark.asyncio
async def test_update_by_state_completes_session(store, clock):
    session = await store.create(state="S1")

    updated = await store.update_by_state("S1", {"code": "C1", "state": "S1"})

    assert updated is True
    assert session.completed_at == clock()
    status = await store.status(session.polling_id)
    assert status.status == COMPLETED
    assert status.result.code == "C1"
    assert status.result.state == "S1"


@pytest.mark.asyncio
async def test_update_with_error_marks_session_failed(store):
    session = await store.create(state="S1")

    await store.update_by_state(
        "S1", {"error": "access_denied", "error_description": "User cancelled", "state": "S1"}
    )

    status = await store.status(session.polling_id)
    assert status.status == ERROR
    assert status.error == "access_denied"
    assert status.error_description == "User cancelled"
    assert status.result is None


@pytest.mark.asyncio
async def test_session_transitions_only_once(store):
    session = await store.create(state="S1")
    await store.update_by_state("S1", {"code": "C1", "state": "S1"})

    second = await store.update_by_state("S1", {"error": "access_denied"})

    assert second is False
    status = await store.status(session.polling_id)
    assert status.status == COMPLETED
    assert status.result.code == "C1"


@pytest.mark.asyncio
async def test_unknown_state_is_a_noop(store):
    session = await store.create(state="S1")

    assert await store.update_by_state("other", {"code": "C1"}) is False
    assert (await store.status(session.polling_id)).status == PENDING


@pytest.mark.asyncio
async def test_expired_session_not_updated_and_not_found(store, clock):
    session = await store.create(state="S1")
    clock.advance(601)

    assert await store.update_by_state("S1", {"code": "C1"}) is False
    status = await store.status(session.polling_id)
    assert status.status == NOT_FOUND
    assert status.error == "Session not found or expired"


@pytest.mark.asyncio
async def test_status_read_is_not_destructive(store):
    session = await store.create(state="S1")
    await store.update_by_state("S1", {"code": "C1", "state": "S1"})

    first = await store.status(session.polling_id)
    second = await store.status(session.polling_id)

    assert first.result == second.result


@pytest.mark.asyncio
async def test_unknown_polling_id_not_found(store):
    status = await store.status("does-not-exist")

    assert status.status == NOT_FOUND


@pytest.mark.asyncio
async def test_sweep_and_stats(store, clock):
    await store.create(state="old")
    clock.advance(500)
    await store.create(state="done")
    await store.create(state="failed")
    await store.update_by_state("done", {"code": "C"})
    await store.update_by_state("failed", {"error": "access_denied"})

    assert await store.stats() == {"total": 3, "pending": 1, "completed": 1, "error": 1}

    clock.advance(101)
    assert await store.sweep() == 1
    assert await store.stats() == {"total": 2, "pending": 0, "completed": 1, "error": 1}
