"""Anti-leave monitor.

Counts client-reported "left the quiz" signals. Reaching the threshold
terminates the attempt through the state machine in the same conditional
UPDATE that counts the violation. Every signal is stored for
audit; signals arriving after the attempt closed are kept with ``counted=False``.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from attempt_engine.core import clock
from attempt_engine.core.app_exceptions import ConcurrentUpdateConflict, InvalidTransition
from attempt_engine.core.config import settings
from attempt_engine.core.logging import get_logger
from attempt_engine.models.attempt import AttemptStatus, AttemptViolation, QuizAttempt, ViolationType
from attempt_engine.services import timer
from attempt_engine.services.completion import CompletionNotifier
from attempt_engine.services.scoring import score_attempt
from attempt_engine.services.state_machine import complete_close, transition_to
from attempt_engine.services.telemetry import EventType, log_event

logger = get_logger(__name__)


@dataclass
class ViolationOutcome:
    attempt: QuizAttempt
    violation: AttemptViolation
    counted: bool
    terminated: bool  # this violation crossed the threshold and closed the attempt


async def record_violation(
    db: Session,
    attempt: QuizAttempt,
    violation_type: ViolationType,
    notifier: CompletionNotifier,
    client_ts: datetime | None = None,
) -> ViolationOutcome:
    """
    Record one anti-leave signal.

    A violation against a closed attempt is not an error. Concurrent violations
    are serialised by a conditional UPDATE on ``sequence_counter``, so the
    attempt is terminated exactly once.
    """
    await timer.expire_if_due(db, attempt, notifier)

    for _ in range(settings.CAS_MAX_RETRIES):
        db.refresh(attempt)
        now = clock.utcnow()

        if attempt.status != AttemptStatus.IN_PROGRESS:
            violation = AttemptViolation(
                attempt_id=attempt.id,
                violation_type=violation_type,
                client_ts=client_ts,
                recorded_at=now,
                counted=False,
                count_after=attempt.violation_count,
            )
            db.add(violation)
            await log_event(
                db,
                attempt.id,
                attempt.student_id,
                EventType.VIOLATION_RECORDED,
                {"violation_type": violation_type.value, "counted": False, "status": attempt.status.value},
            )
            db.commit()
            return ViolationOutcome(attempt=attempt, violation=violation, counted=False, terminated=False)

        expected = attempt.sequence_counter
        new_count = attempt.violation_count + 1
        violation = AttemptViolation(
            attempt_id=attempt.id,
            violation_type=violation_type,
            client_ts=client_ts,
            recorded_at=now,
            counted=True,
            count_after=new_count,
        )

        if new_count >= settings.VIOLATION_THRESHOLD:
            # The counted violation and TERMINATED land in one conditional UPDATE
            result = score_attempt(db, attempt)
            try:
                transition_to(
                    db,
                    attempt.id,
                    AttemptStatus.TERMINATED,
                    result,
                    expected_sequence=expected,
                    violation_count=new_count,
                )
            except InvalidTransition:
                db.rollback()
                continue

            db.add(violation)
            await log_event(
                db,
                attempt.id,
                attempt.student_id,
                EventType.VIOLATION_RECORDED,
                {"violation_type": violation_type.value, "counted": True, "violation_count": new_count},
            )
            logger.warning(
                "Violation threshold reached",
                extra={
                    "attempt_id": str(attempt.id),
                    "student_id": attempt.student_id,
                    "violation_count": new_count,
                },
            )
            outcome = await complete_close(db, attempt, AttemptStatus.TERMINATED, result, notifier)
            return ViolationOutcome(attempt=outcome.attempt, violation=violation, counted=True, terminated=True)

        claimed = db.execute(
            update(QuizAttempt)
            .where(
                QuizAttempt.id == attempt.id,
                QuizAttempt.sequence_counter == expected,
                QuizAttempt.status == AttemptStatus.IN_PROGRESS,
            )
            .values(violation_count=new_count, sequence_counter=expected + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            db.rollback()
            continue

        db.add(violation)
        await log_event(
            db,
            attempt.id,
            attempt.student_id,
            EventType.VIOLATION_RECORDED,
            {"violation_type": violation_type.value, "counted": True, "violation_count": new_count},
        )
        db.commit()
        db.refresh(attempt)
        return ViolationOutcome(attempt=attempt, violation=violation, counted=True, terminated=False)

    raise ConcurrentUpdateConflict(attempt.id, settings.CAS_MAX_RETRIES)
