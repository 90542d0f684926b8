"""Scoring and completion trigger.

Grading is deferred to the terminal transition; autosave never grades.
Nothing here calls back into the state machine.
"""

import asyncio
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from attempt_engine.core.config import settings
from attempt_engine.models.attempt import AttemptAnswer, QuizAttempt
from attempt_engine.services.completion import CompletionNotifier
from attempt_engine.services.quiz_definitions import AnswerKeyEntry, QuestionKind, QuizDefinition
from attempt_engine.services.telemetry import EventType, log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreResult:
    correct_count: int
    answered_count: int
    total_questions: int
    final_score: float  # percent, 2 decimals
    completion_percent: float  # percent, 2 decimals
    passed: bool


def is_answered(value: Any) -> bool:
    """A cleared answer (null, blank text, empty selection) counts as unanswered."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _is_option_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def answer_shape_error(entry: AnswerKeyEntry, value: Any) -> str | None:
    """
    Check that a stored answer has the JSON shape its question kind expects.

    Returns:
        None when the shape fits (null always fits), otherwise a short reason
    """
    if value is None:
        return None

    if entry.kind == QuestionKind.SINGLE_CHOICE:
        if _is_option_id(value):
            return None
        if isinstance(value, list) and all(_is_option_id(item) for item in value):
            return None
        return "expected an option id"

    if entry.kind == QuestionKind.MULTIPLE_SELECT:
        if isinstance(value, list) and all(_is_option_id(item) for item in value):
            return None
        return "expected a list of option ids"

    if entry.kind == QuestionKind.NUMERIC:
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            return None
        return "expected a number"

    if entry.kind == QuestionKind.TEXT:
        if isinstance(value, str):
            return None
        return "expected text"

    return "unsupported question kind"


def grade_answer(entry: AnswerKeyEntry, value: Any) -> bool:
    """Return True when ``value`` matches the key. Unanswered or malformed is incorrect."""
    if not is_answered(value) or answer_shape_error(entry, value) is not None:
        return False

    if entry.kind == QuestionKind.SINGLE_CHOICE:
        # Clients that always send a selection list send a one-element list
        if isinstance(value, list):
            if len(value) != 1:
                return False
            value = value[0]
        return value == entry.correct

    if entry.kind == QuestionKind.MULTIPLE_SELECT:
        if not isinstance(entry.correct, (list, tuple)):
            return False
        # Order-insensitive; every correct option and nothing else
        return {str(item) for item in value} == {str(item) for item in entry.correct}

    if entry.kind == QuestionKind.NUMERIC:
        given = _as_number(value)
        expected = _as_number(entry.correct)
        if given is None or expected is None:
            return False
        tolerance = entry.tolerance if entry.tolerance is not None else settings.NUMERIC_TOLERANCE
        return abs(given - expected) <= tolerance

    if entry.kind == QuestionKind.TEXT:
        if not isinstance(value, str):
            return False
        return value.strip() == str(entry.correct).strip()

    return False


def _percent(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(part / total * 100, 2)


def compute_result(definition: QuizDefinition, answers: Mapping[str, Any]) -> ScoreResult:
    """
    Score persisted answers against the quiz's answer key.

    Args:
        definition: Quiz definition (normally the snapshot frozen at start)
        answers: question_id -> stored answer value

    Returns:
        ScoreResult with percent score, completion percent and pass flag
    """
    total = definition.total_question_count or len(definition.answer_key)

    correct = 0
    answered = 0
    for entry in definition.answer_key:
        value = answers.get(entry.question_id)
        if is_answered(value):
            answered += 1
            if grade_answer(entry, value):
                correct += 1

    final_score = _percent(correct, total)
    return ScoreResult(
        correct_count=correct,
        answered_count=answered,
        total_questions=total,
        final_score=final_score,
        completion_percent=_percent(answered, total),
        passed=final_score >= definition.passing_score,
    )


def grade_answers(definition: QuizDefinition, answers: Mapping[str, Any]) -> dict[str, bool]:
    """Per-question correctness for every keyed question."""
    return {
        entry.question_id: grade_answer(entry, answers.get(entry.question_id))
        for entry in definition.answer_key
    }


def score_attempt(db: Session, attempt: QuizAttempt) -> ScoreResult:
    """Best score computable from the answers persisted so far."""
    rows = db.execute(
        select(AttemptAnswer.question_id, AttemptAnswer.value).where(
            AttemptAnswer.attempt_id == attempt.id
        )
    ).all()
    definition = QuizDefinition.model_validate(attempt.quiz_snapshot)
    return compute_result(definition, {question_id: value for question_id, value in rows})


async def finalize(
    db: Session,
    attempt: QuizAttempt,
    notifier: CompletionNotifier,
    source: str = "api",
) -> dict[str, Any] | None:
    """
    Notify the course-completion collaborator about a closed attempt.

    Runs once per attempt, after the terminal state is committed. Failures are
    logged and recorded as telemetry, never raised.

    Returns:
        Certificate returned by the collaborator, if any
    """
    try:
        return await asyncio.wait_for(
            notifier.notify_completion(
                attempt.student_id,
                attempt.course_id,
                float(attempt.final_score),
                float(attempt.completion_percent),
                attempt_id=str(attempt.id),
                quiz_id=attempt.quiz_id,
                passed=bool(attempt.passed),
            ),
            timeout=settings.COMPLETION_TIMEOUT_SECONDS,
        )
    except Exception as e:
        logger.warning(
            "Completion notification failed",
            extra={
                "attempt_id": str(attempt.id),
                "student_id": attempt.student_id,
                "course_id": attempt.course_id,
                "error": repr(e),
            },
        )
        await log_event(
            db,
            attempt.id,
            attempt.student_id,
            EventType.COMPLETION_NOTIFY_FAILED,
            {"error": repr(e)},
            source=source,
        )
        db.commit()
        return None
