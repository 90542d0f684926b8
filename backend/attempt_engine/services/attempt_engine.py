"""Attempt engine operations used by the API.

Thin composition of the components; every path that closes an attempt goes
through ``state_machine.transition_to``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from attempt_engine.core import clock
from attempt_engine.core.app_exceptions import AlreadyOpenAttempt, AttemptClosed
from attempt_engine.core.logging import get_logger
from attempt_engine.models.attempt import AttemptStatus, QuizAttempt, ViolationType
from attempt_engine.services import anti_leave, autosave, scoring, state_machine, timer
from attempt_engine.services.completion import CompletionNotifier
from attempt_engine.services.quiz_definitions import QuizDefinition, QuizDefinitionProvider
from attempt_engine.services.state_machine import CloseOutcome
from attempt_engine.services.telemetry import EventType, log_event

logger = get_logger(__name__)


@dataclass
class AnswerView:
    question_id: str
    value: Any
    client_sequence: int | None
    server_sequence: int
    saved_at: datetime
    is_correct: bool | None = None  # graded only once the attempt is closed


@dataclass
class AttemptStatusView:
    attempt: QuizAttempt
    remaining_seconds: int
    answered_count: int
    answers: list[AnswerView] = field(default_factory=list)


async def start_attempt(
    db: Session,
    provider: QuizDefinitionProvider,
    notifier: CompletionNotifier,
    quiz_id: str,
    student_id: str,
) -> QuizAttempt:
    """
    Start a new attempt.

    An overdue open attempt for the same quiz is expired first, so a student
    whose previous attempt ran out of time is not locked out until the sweep runs.

    Raises:
        AlreadyOpenAttempt: an unexpired attempt is still in progress
        QuizDefinitionUnavailable: the quiz provider failed
        AttemptLimitReached: no attempts left on this quiz
    """
    open_attempt = state_machine.find_open_attempt(db, quiz_id, student_id)
    if open_attempt is not None:
        if not await timer.expire_if_due(db, open_attempt, notifier):
            raise AlreadyOpenAttempt(open_attempt.id)

    definition = await provider.get_quiz_definition(quiz_id)
    attempt = state_machine.create_attempt(db, definition, student_id)
    await log_event(
        db,
        attempt.id,
        student_id,
        EventType.ATTEMPT_STARTED,
        {
            "quiz_id": quiz_id,
            "attempt_number": attempt.attempt_number,
            "duration_seconds": attempt.duration_seconds,
        },
    )
    db.commit()
    db.refresh(attempt)
    return attempt


async def save_answer(
    db: Session,
    attempt: QuizAttempt,
    notifier: CompletionNotifier,
    question_id: str,
    value: Any,
    client_sequence: int | None = None,
    idempotency_key: str | None = None,
) -> autosave.SaveResult:
    return await autosave.save_answer(
        db,
        attempt,
        question_id,
        value,
        notifier,
        client_sequence=client_sequence,
        idempotency_key=idempotency_key,
    )


async def record_violation(
    db: Session,
    attempt: QuizAttempt,
    notifier: CompletionNotifier,
    violation_type: ViolationType,
    client_ts: datetime | None = None,
) -> anti_leave.ViolationOutcome:
    return await anti_leave.record_violation(db, attempt, violation_type, notifier, client_ts=client_ts)


async def heartbeat(db: Session, attempt: QuizAttempt, notifier: CompletionNotifier) -> int:
    """
    Return the seconds left on an open attempt.

    Raises:
        AttemptExpired: time is up (the attempt is expired first)
        AttemptClosed: attempt is no longer open
    """
    await timer.enforce_time_budget(db, attempt, notifier)
    if attempt.status != AttemptStatus.IN_PROGRESS:
        raise AttemptClosed(attempt.id, attempt.status.value)
    return timer.remaining_seconds(attempt)


async def submit_attempt(db: Session, attempt: QuizAttempt, notifier: CompletionNotifier) -> CloseOutcome:
    """
    Submit the attempt for scoring.

    Submitting an attempt that is already closed returns it unchanged.

    Raises:
        AttemptExpired: the time budget is spent; the attempt is expired instead
    """
    await timer.enforce_time_budget(db, attempt, notifier)
    if attempt.status != AttemptStatus.IN_PROGRESS:
        return CloseOutcome(attempt=attempt, closed_by_caller=False)
    return await state_machine.close_attempt(db, attempt, AttemptStatus.SUBMITTED, notifier)


async def get_attempt_status(db: Session, attempt: QuizAttempt, notifier: CompletionNotifier) -> AttemptStatusView:
    """
    Current state of an attempt, applying lazy expiry.

    Saved answers are listed in ``server_sequence`` order. Correctness is graded
    against the attempt's quiz snapshot once the attempt is closed and left
    as None while it is open.
    """
    await timer.expire_if_due(db, attempt, notifier)
    rows = autosave.get_answers(db, attempt)

    correctness: dict[str, bool] = {}
    if attempt.status != AttemptStatus.IN_PROGRESS:
        definition = QuizDefinition.model_validate(attempt.quiz_snapshot)
        correctness = scoring.grade_answers(definition, {row.question_id: row.value for row in rows})

    answers = [
        AnswerView(
            question_id=row.question_id,
            value=row.value,
            client_sequence=row.client_sequence,
            server_sequence=row.server_sequence,
            saved_at=clock.ensure_utc(row.saved_at),
            is_correct=correctness.get(row.question_id),
        )
        for row in rows
    ]
    return AttemptStatusView(
        attempt=attempt,
        remaining_seconds=timer.remaining_seconds(attempt),
        answered_count=sum(1 for row in rows if scoring.is_answered(row.value)),
        answers=answers,
    )
