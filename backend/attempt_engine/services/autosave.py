"""Autosave store.

Keeps the latest accepted answer per question. Every accepted write bumps the
attempt's ``sequence_counter`` through a conditional UPDATE, and the new value
becomes the answer's ``server_sequence``; the answer row and the counter change
commit together. Answers are stored ungraded.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attempt_engine.core import clock
from attempt_engine.core.app_exceptions import (
    AttemptClosed,
    AttemptExpired,
    ConcurrentUpdateConflict,
    IdempotencyKeyConflict,
    InvalidAnswerValue,
    StaleWrite,
    UnknownQuestion,
)
from attempt_engine.core.config import settings
from attempt_engine.core.logging import get_logger
from attempt_engine.models.attempt import AttemptAnswer, AttemptStatus, AutosaveReceipt, QuizAttempt
from attempt_engine.services import timer
from attempt_engine.services.completion import CompletionNotifier
from attempt_engine.services.quiz_definitions import QuizDefinition
from attempt_engine.services.scoring import answer_shape_error
from attempt_engine.services.telemetry import EventType, log_event

logger = get_logger(__name__)


@dataclass
class SaveResult:
    attempt_id: Any
    question_id: str
    value: Any
    server_sequence: int
    client_sequence: int | None
    saved_at: datetime
    replayed: bool = False


def compute_payload_hash(question_id: str, value: Any, client_sequence: int | None) -> str:
    """SHA-256 of the canonical JSON form of an autosave payload."""
    body = json.dumps(
        {"question_id": question_id, "value": value, "client_sequence": client_sequence},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def get_answers(db: Session, attempt: QuizAttempt) -> list[AttemptAnswer]:
    stmt = (
        select(AttemptAnswer)
        .where(AttemptAnswer.attempt_id == attempt.id)
        .order_by(AttemptAnswer.server_sequence)
    )
    return list(db.execute(stmt).scalars().all())


def _get_answer(db: Session, attempt: QuizAttempt, question_id: str) -> AttemptAnswer | None:
    stmt = select(AttemptAnswer).where(
        AttemptAnswer.attempt_id == attempt.id,
        AttemptAnswer.question_id == question_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def _find_replay(
    db: Session,
    attempt: QuizAttempt,
    idempotency_key: str | None,
    payload_hash: str,
    question_id: str,
    value: Any,
    client_sequence: int | None,
) -> SaveResult | None:
    if not idempotency_key:
        return None
    receipt = db.execute(
        select(AutosaveReceipt).where(
            AutosaveReceipt.attempt_id == attempt.id,
            AutosaveReceipt.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()
    if receipt is None:
        return None
    if receipt.payload_hash != payload_hash:
        logger.warning(
            "Idempotency key conflict",
            extra={"attempt_id": str(attempt.id), "idempotency_key": idempotency_key[:8] + "..."},
        )
        raise IdempotencyKeyConflict(idempotency_key)
    return SaveResult(
        attempt_id=attempt.id,
        question_id=question_id,
        value=value,
        server_sequence=receipt.server_sequence,
        client_sequence=client_sequence,
        saved_at=clock.ensure_utc(receipt.accepted_at),
        replayed=True,
    )


async def _reject_stale(
    db: Session,
    attempt: QuizAttempt,
    existing: AttemptAnswer,
    client_sequence: int | None,
) -> None:
    await log_event(
        db,
        attempt.id,
        attempt.student_id,
        EventType.ANSWER_STALE,
        {
            "client_sequence": client_sequence,
            "stored_client_sequence": existing.client_sequence,
            "stored_server_sequence": existing.server_sequence,
        },
        question_id=existing.question_id,
    )
    db.commit()
    raise StaleWrite(existing.question_id, existing.server_sequence, existing.client_sequence)


async def save_answer(
    db: Session,
    attempt: QuizAttempt,
    question_id: str,
    value: Any,
    notifier: CompletionNotifier,
    client_sequence: int | None = None,
    idempotency_key: str | None = None,
) -> SaveResult:
    """
    Persist the latest answer for one question.

    Args:
        db: Database session
        attempt: Attempt being answered
        question_id: Question ID (must be in the quiz's answer key)
        value: Answer value; None clears the answer
        notifier: Completion collaborator, used if this request expires the attempt
        client_sequence: Client's monotonically increasing save counter (hint only)
        idempotency_key: Client retry token; a repeat returns the original result

    Returns:
        SaveResult; ``replayed`` is True when nothing new was written

    Raises:
        AttemptExpired: time budget spent (the attempt is expired first)
        AttemptClosed: attempt is SUBMITTED, EXPIRED or TERMINATED
        UnknownQuestion: question is not part of the quiz
        InvalidAnswerValue: value does not fit the question kind
        StaleWrite: a later write for this question was already accepted
        IdempotencyKeyConflict: key reused with a different payload
        ConcurrentUpdateConflict: retries exhausted against concurrent writers
    """
    await timer.enforce_time_budget(db, attempt, notifier)
    payload_hash = compute_payload_hash(question_id, value, client_sequence)

    for _ in range(settings.CAS_MAX_RETRIES):
        db.refresh(attempt)

        replay = _find_replay(
            db, attempt, idempotency_key, payload_hash, question_id, value, client_sequence
        )
        if replay is not None:
            await log_event(
                db,
                attempt.id,
                attempt.student_id,
                EventType.ANSWER_REPLAYED,
                {"server_sequence": replay.server_sequence},
                question_id=question_id,
            )
            db.commit()
            return replay

        if attempt.status == AttemptStatus.EXPIRED:
            raise AttemptExpired(attempt.id)
        if attempt.status != AttemptStatus.IN_PROGRESS:
            raise AttemptClosed(attempt.id, attempt.status.value)

        definition = QuizDefinition.model_validate(attempt.quiz_snapshot)
        entry = definition.key_for(question_id)
        if entry is None:
            raise UnknownQuestion(question_id)
        shape_error = answer_shape_error(entry, value)
        if shape_error is not None:
            raise InvalidAnswerValue(question_id, entry.kind.value, shape_error)

        existing = _get_answer(db, attempt, question_id)
        expected = attempt.sequence_counter
        new_sequence = expected + 1

        if existing is not None:
            if client_sequence is not None and existing.client_sequence is not None:
                if client_sequence < existing.client_sequence:
                    await _reject_stale(db, attempt, existing, client_sequence)
                if client_sequence == existing.client_sequence:
                    if existing.value != value:
                        await _reject_stale(db, attempt, existing, client_sequence)
                    # Plain retry of the write already stored
                    return SaveResult(
                        attempt_id=attempt.id,
                        question_id=question_id,
                        value=existing.value,
                        server_sequence=existing.server_sequence,
                        client_sequence=existing.client_sequence,
                        saved_at=clock.ensure_utc(existing.saved_at),
                        replayed=True,
                    )
            if existing.server_sequence >= new_sequence:
                await _reject_stale(db, attempt, existing, client_sequence)

        now = clock.utcnow()
        claimed = db.execute(
            update(QuizAttempt)
            .where(
                QuizAttempt.id == attempt.id,
                QuizAttempt.sequence_counter == expected,
                QuizAttempt.status == AttemptStatus.IN_PROGRESS,
                QuizAttempt.expires_at > now,
            )
            .values(sequence_counter=new_sequence)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            db.rollback()
            db.refresh(attempt)
            await timer.enforce_time_budget(db, attempt, notifier)
            continue

        if existing is None:
            existing = AttemptAnswer(attempt_id=attempt.id, question_id=question_id)
            db.add(existing)
        existing.value = value
        existing.client_sequence = client_sequence
        existing.server_sequence = new_sequence
        existing.idempotency_key = idempotency_key
        existing.saved_at = now

        if idempotency_key:
            db.add(
                AutosaveReceipt(
                    attempt_id=attempt.id,
                    idempotency_key=idempotency_key,
                    payload_hash=payload_hash,
                    question_id=question_id,
                    server_sequence=new_sequence,
                    accepted_at=now,
                )
            )

        await log_event(
            db,
            attempt.id,
            attempt.student_id,
            EventType.ANSWER_SAVED,
            {"server_sequence": new_sequence, "client_sequence": client_sequence},
            question_id=question_id,
        )

        try:
            db.commit()
        except IntegrityError:
            # Concurrent first save of this question or of this idempotency key
            db.rollback()
            continue

        return SaveResult(
            attempt_id=attempt.id,
            question_id=question_id,
            value=value,
            server_sequence=new_sequence,
            client_sequence=client_sequence,
            saved_at=now,
        )

    logger.warning(
        "Autosave gave up after retries",
        extra={"attempt_id": str(attempt.id), "question_id": question_id},
    )
    raise ConcurrentUpdateConflict(attempt.id, settings.CAS_MAX_RETRIES)
