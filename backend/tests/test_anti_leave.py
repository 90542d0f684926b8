"""Tests for the anti-leave monitor."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from attempt_engine.core.app_exceptions import AttemptClosed
from attempt_engine.core.config import settings
from attempt_engine.models.attempt import AttemptEvent, AttemptStatus, AttemptViolation, ViolationType
from attempt_engine.services import anti_leave, autosave, state_machine
from tests.helpers.seed import RecordingNotifier


def _violations(db: Session) -> list[AttemptViolation]:
    return list(db.execute(select(AttemptViolation).order_by(AttemptViolation.recorded_at)).scalars().all())


@pytest.mark.asyncio
async def test_third_visibility_loss_terminates(db: Session, attempt, frozen_clock, notifier) -> None:
    """Three visibility-loss events: TERMINATED on the third."""
    await autosave.save_answer(db, attempt, "q1", "b", notifier)

    outcomes = []
    for _ in range(3):
        frozen_clock.advance(10)
        outcomes.append(
            await anti_leave.record_violation(db, attempt, ViolationType.VISIBILITY_HIDDEN, notifier)
        )

    assert [o.counted for o in outcomes] == [True, True, True]
    assert [o.terminated for o in outcomes] == [False, False, True]
    assert [o.violation.count_after for o in outcomes] == [1, 2, 3]

    db.refresh(attempt)
    assert attempt.status == AttemptStatus.TERMINATED
    assert attempt.violation_count == 3
    # Scored from what was saved before termination
    assert attempt.correct_count == 1
    assert len(notifier.calls) == 1


@pytest.mark.asyncio
async def test_violation_after_close_is_recorded_but_not_counted(db: Session, attempt, frozen_clock, notifier) -> None:
    await state_machine.close_attempt(db, attempt, AttemptStatus.SUBMITTED, notifier)

    outcome = await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)

    assert outcome.counted is False
    assert outcome.terminated is False
    assert attempt.status == AttemptStatus.SUBMITTED
    assert attempt.violation_count == 0

    stored = _violations(db)
    assert len(stored) == 1
    assert stored[0].counted is False


@pytest.mark.asyncio
async def test_violation_after_deadline_expires_instead(db: Session, attempt, frozen_clock, notifier) -> None:
    frozen_clock.set_elapsed(650)

    outcome = await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)

    assert outcome.counted is False
    assert attempt.status == AttemptStatus.EXPIRED


@pytest.mark.asyncio
async def test_terminated_exactly_once_past_threshold(db: Session, attempt, frozen_clock) -> None:
    """Events racing past the threshold never close the attempt twice."""
    notifier = RecordingNotifier()
    for _ in range(settings.VIOLATION_THRESHOLD - 1):
        await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)

    # Once terminated, later events are stored uncounted
    first = await anti_leave.record_violation(db, attempt, ViolationType.FULLSCREEN_EXIT, notifier)
    second = await anti_leave.record_violation(db, attempt, ViolationType.DEVTOOLS_SUSPECTED, notifier)

    assert first.terminated is True
    assert second.terminated is False
    assert second.counted is False
    assert len(notifier.calls) == 1

    closed = db.execute(
        select(AttemptEvent).where(AttemptEvent.event_type == "ATTEMPT_CLOSED")
    ).scalars().all()
    assert len(closed) == 1
    assert closed[0].payload_json["status"] == "TERMINATED"


@pytest.mark.asyncio
async def test_threshold_close_loses_to_concurrent_submit(
    db: Session, attempt, frozen_clock, notifier, monkeypatch
) -> None:
    """A submit commits between reading the counter and the terminating UPDATE."""
    monkeypatch.setattr(settings, "VIOLATION_THRESHOLD", 1)
    real_transition = anti_leave.transition_to
    submitted = []

    def submit_first(session, attempt_id, target, result, **kwargs):
        if not submitted:
            submitted.append(True)
            real_transition(session, attempt_id, AttemptStatus.SUBMITTED, result)
            session.commit()
        real_transition(session, attempt_id, target, result, **kwargs)

    monkeypatch.setattr(anti_leave, "transition_to", submit_first)

    outcome = await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)

    assert outcome.counted is False
    assert outcome.terminated is False
    db.refresh(attempt)
    assert attempt.status == AttemptStatus.SUBMITTED
    assert attempt.violation_count == 0
    assert [v.counted for v in _violations(db)] == [False]


@pytest.mark.asyncio
async def test_failed_termination_leaves_threshold_uncrossed(
    db: Session, attempt, frozen_clock, notifier, monkeypatch
) -> None:
    """A failure while terminating commits neither the count nor the violation."""
    for _ in range(settings.VIOLATION_THRESHOLD - 1):
        frozen_clock.advance(5)
        await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)

    real_score = anti_leave.score_attempt
    calls = []

    def fail_once(session, target):
        calls.append(target.id)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return real_score(session, target)

    monkeypatch.setattr(anti_leave, "score_attempt", fail_once)

    frozen_clock.advance(5)
    with pytest.raises(RuntimeError):
        await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)
    db.rollback()

    db.refresh(attempt)
    assert attempt.status == AttemptStatus.IN_PROGRESS
    assert attempt.violation_count == settings.VIOLATION_THRESHOLD - 1
    assert len(_violations(db)) == settings.VIOLATION_THRESHOLD - 1
    assert notifier.calls == []

    frozen_clock.advance(5)
    outcome = await anti_leave.record_violation(db, attempt, ViolationType.BLUR, notifier)

    assert outcome.terminated is True
    assert outcome.violation.count_after == settings.VIOLATION_THRESHOLD
    db.refresh(attempt)
    assert attempt.status == AttemptStatus.TERMINATED
    assert attempt.violation_count == settings.VIOLATION_THRESHOLD
    assert len(notifier.calls) == 1

    with pytest.raises(AttemptClosed):
        await autosave.save_answer(db, attempt, "q1", "b", notifier)


@pytest.mark.asyncio
async def test_client_timestamp_is_stored_for_audit_only(db: Session, attempt, frozen_clock, notifier) -> None:
    skewed = datetime(1999, 1, 1, tzinfo=timezone.utc)
    outcome = await anti_leave.record_violation(db, attempt, ViolationType.COPY_PASTE, notifier, client_ts=skewed)

    assert outcome.counted is True
    assert outcome.violation.recorded_at == frozen_clock.now
    assert attempt.status == AttemptStatus.IN_PROGRESS
