"""Tests for telemetry functionality."""

import pytest
from sqlalchemy import select

from attempt_engine.models.attempt import AttemptEvent, ViolationType
from attempt_engine.services import anti_leave, autosave
from attempt_engine.services.telemetry import EventType, log_event
from tests.helpers.seed import T0


def _events(db, attempt) -> list[AttemptEvent]:
    return list(
        db.execute(
            select(AttemptEvent)
            .where(AttemptEvent.attempt_id == attempt.id)
            .order_by(AttemptEvent.event_ts, AttemptEvent.created_at)
        ).scalars()
    )


@pytest.mark.asyncio
async def test_event_storage_with_envelope_fields(db, attempt, frozen_clock) -> None:
    event = await log_event(
        db,
        attempt.id,
        attempt.student_id,
        EventType.ANSWER_SAVED,
        {"server_sequence": 1},
        question_id="q1",
    )
    db.commit()
    db.refresh(event)

    assert event.id is not None
    assert event.event_type == EventType.ANSWER_SAVED.value
    assert event.event_ts.replace(tzinfo=None) == T0.replace(tzinfo=None)
    assert event.attempt_id == attempt.id
    assert event.student_id == "student-1"
    assert event.question_id == "q1"
    assert event.source == "api"
    assert event.payload_json == {"server_sequence": 1}


@pytest.mark.asyncio
async def test_event_with_minimal_fields(db, attempt, frozen_clock) -> None:
    event = await log_event(db, attempt.id, attempt.student_id, "CUSTOM_EVENT")
    db.commit()

    assert event.event_type == "CUSTOM_EVENT"
    assert event.payload_json == {}
    assert event.question_id is None


@pytest.mark.asyncio
async def test_log_event_does_not_commit(db, attempt, frozen_clock) -> None:
    await log_event(db, attempt.id, attempt.student_id, EventType.ATTEMPT_STARTED)
    db.rollback()

    assert _events(db, attempt) == []


@pytest.mark.asyncio
async def test_engine_operations_emit_events(db, attempt, frozen_clock, notifier) -> None:
    await autosave.save_answer(db, attempt, "q1", "b", notifier, client_sequence=1)
    await autosave.save_answer(db, attempt, "q1", "b", notifier, client_sequence=1)
    frozen_clock.advance(5)
    await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)

    types = [event.event_type for event in _events(db, attempt)]

    assert types == [EventType.ANSWER_SAVED.value, EventType.VIOLATION_RECORDED.value]
