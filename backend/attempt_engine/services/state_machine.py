"""Attempt state machine.

IN_PROGRESS -> {SUBMITTED, EXPIRED, TERMINATED}; every target is terminal.

``transition_to`` is the only writer of terminal states. It is a conditional
UPDATE on ``status = IN_PROGRESS``, so when expiry, submit and the anti-leave
threshold race, exactly one of them wins and the others get InvalidTransition.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attempt_engine.core import clock
from attempt_engine.core.app_exceptions import (
    AlreadyOpenAttempt,
    AttemptLimitReached,
    AttemptNotFound,
    ConcurrentUpdateConflict,
    InvalidTransition,
)
from attempt_engine.core.config import settings
from attempt_engine.core.logging import get_logger
from attempt_engine.models.attempt import AttemptStatus, QuizAttempt
from attempt_engine.services.completion import CompletionNotifier
from attempt_engine.services.quiz_definitions import QuizDefinition
from attempt_engine.services.scoring import ScoreResult, finalize, score_attempt
from attempt_engine.services.telemetry import EventType, log_event

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.IN_PROGRESS: frozenset(
        {AttemptStatus.SUBMITTED, AttemptStatus.EXPIRED, AttemptStatus.TERMINATED}
    ),
}


def can_transition(current: AttemptStatus, target: AttemptStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class CloseOutcome:
    """Result of trying to close an attempt."""

    attempt: QuizAttempt
    closed_by_caller: bool  # False when another trigger closed it first
    certificate: dict[str, Any] | None = None


def get_attempt(db: Session, attempt_id: UUID) -> QuizAttempt:
    attempt = db.get(QuizAttempt, attempt_id)
    if attempt is None:
        raise AttemptNotFound(attempt_id)
    return attempt


def find_open_attempt(db: Session, quiz_id: str, student_id: str) -> QuizAttempt | None:
    stmt = select(QuizAttempt).where(
        QuizAttempt.quiz_id == quiz_id,
        QuizAttempt.student_id == student_id,
        QuizAttempt.status == AttemptStatus.IN_PROGRESS,
    )
    return db.execute(stmt).scalars().first()


def create_attempt(db: Session, definition: QuizDefinition, student_id: str) -> QuizAttempt:
    """
    Create a new IN_PROGRESS attempt with a server-assigned start time.

    Raises:
        AlreadyOpenAttempt: the student already has an open attempt on this quiz
        AttemptLimitReached: the quiz's attempt limit is used up
    """
    open_attempt = find_open_attempt(db, definition.quiz_id, student_id)
    if open_attempt is not None:
        raise AlreadyOpenAttempt(open_attempt.id)

    closed_count = db.execute(
        select(func.count(QuizAttempt.id)).where(
            QuizAttempt.quiz_id == definition.quiz_id,
            QuizAttempt.student_id == student_id,
            QuizAttempt.status != AttemptStatus.IN_PROGRESS,
        )
    ).scalar_one()
    if definition.attempt_limit is not None and closed_count >= definition.attempt_limit:
        raise AttemptLimitReached(definition.quiz_id, definition.attempt_limit)

    started_at = clock.utcnow()
    duration = definition.effective_duration(settings.DEFAULT_DURATION_SECONDS)
    attempt = QuizAttempt(
        quiz_id=definition.quiz_id,
        course_id=definition.course_id,
        student_id=student_id,
        attempt_number=closed_count + 1,
        status=AttemptStatus.IN_PROGRESS,
        started_at=started_at,
        duration_seconds=duration,
        expires_at=started_at + timedelta(seconds=duration),
        sequence_counter=0,
        violation_count=0,
        quiz_snapshot=definition.model_dump(mode="json"),
        total_questions=definition.total_question_count,
    )
    db.add(attempt)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent start for the same (quiz, student): the partial unique index fired
        db.rollback()
        existing = find_open_attempt(db, definition.quiz_id, student_id)
        raise AlreadyOpenAttempt(existing.id if existing else None) from None

    logger.info(
        "Attempt created",
        extra={
            "attempt_id": str(attempt.id),
            "quiz_id": attempt.quiz_id,
            "student_id": student_id,
            "duration_seconds": duration,
        },
    )
    return attempt


def transition_to(
    db: Session,
    attempt_id: UUID,
    target: AttemptStatus,
    result: ScoreResult,
    expected_sequence: int | None = None,
    violation_count: int | None = None,
) -> None:
    """
    Move an IN_PROGRESS attempt to a terminal status with its final result.

    Sets status, score and completion percent in one conditional UPDATE and
    bumps ``sequence_counter``. ``violation_count``, when given, is written by
    the same UPDATE. Does not commit.

    Raises:
        InvalidTransition: the attempt is no longer IN_PROGRESS (or ``expected_sequence``
            no longer matches; callers re-read and retry in that case)
    """
    if not can_transition(AttemptStatus.IN_PROGRESS, target):
        raise InvalidTransition(attempt_id, AttemptStatus.IN_PROGRESS.value, target.value)

    conditions = [QuizAttempt.id == attempt_id, QuizAttempt.status == AttemptStatus.IN_PROGRESS]
    if expected_sequence is not None:
        conditions.append(QuizAttempt.sequence_counter == expected_sequence)

    values = {
        "status": target,
        "final_score": result.final_score,
        "correct_count": result.correct_count,
        "completion_percent": result.completion_percent,
        "passed": result.passed,
        "closed_at": clock.utcnow(),
        "sequence_counter": QuizAttempt.sequence_counter + 1,
    }
    if violation_count is not None:
        values["violation_count"] = violation_count

    stmt = (
        update(QuizAttempt)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        current = db.execute(
            select(QuizAttempt.status).where(QuizAttempt.id == attempt_id)
        ).scalar_one_or_none()
        if current is None:
            raise AttemptNotFound(attempt_id)
        raise InvalidTransition(attempt_id, AttemptStatus(current).value, target.value)


async def complete_close(
    db: Session,
    attempt: QuizAttempt,
    target: AttemptStatus,
    result: ScoreResult,
    notifier: CompletionNotifier,
    source: str = "api",
) -> CloseOutcome:
    """
    Commit a terminal transition already applied by ``transition_to`` and notify.

    Whatever the caller added to the session commits together with the
    terminal status.
    """
    await log_event(
        db,
        attempt.id,
        attempt.student_id,
        EventType.ATTEMPT_CLOSED,
        {
            "status": target.value,
            "final_score": result.final_score,
            "correct_count": result.correct_count,
            "completion_percent": result.completion_percent,
            "passed": result.passed,
        },
        source=source,
    )
    db.commit()
    db.refresh(attempt)

    logger.info(
        "Attempt closed",
        extra={
            "attempt_id": str(attempt.id),
            "status": target.value,
            "final_score": result.final_score,
            "completion_percent": result.completion_percent,
            "source": source,
        },
    )
    certificate = await finalize(db, attempt, notifier, source=source)
    return CloseOutcome(attempt=attempt, closed_by_caller=True, certificate=certificate)


async def close_attempt(
    db: Session,
    attempt: QuizAttempt,
    target: AttemptStatus,
    notifier: CompletionNotifier,
    source: str = "api",
) -> CloseOutcome:
    """
    Score the persisted answers and close the attempt.

    Losing the race to another trigger is not an error: the attempt is closed,
    just not by this caller. Only the winner notifies the completion collaborator.
    """
    for _ in range(settings.CAS_MAX_RETRIES):
        db.refresh(attempt)
        if attempt.status != AttemptStatus.IN_PROGRESS:
            return CloseOutcome(attempt=attempt, closed_by_caller=False)

        expected = attempt.sequence_counter
        result = score_attempt(db, attempt)
        try:
            transition_to(db, attempt.id, target, result, expected_sequence=expected)
        except InvalidTransition as e:
            db.rollback()
            if e.current_status == AttemptStatus.IN_PROGRESS.value:
                # An answer landed between scoring and the update; score again
                continue
            db.refresh(attempt)
            logger.info(
                "Attempt already closed by another trigger",
                extra={
                    "attempt_id": str(attempt.id),
                    "status": e.current_status,
                    "requested": target.value,
                },
            )
            return CloseOutcome(attempt=attempt, closed_by_caller=False)

        return await complete_close(db, attempt, target, result, notifier, source=source)

    raise ConcurrentUpdateConflict(attempt.id, settings.CAS_MAX_RETRIES)
