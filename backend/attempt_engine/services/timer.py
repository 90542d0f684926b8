"""Timer authority.

Remaining time is derived from the server-recorded ``started_at`` and the
attempt's duration; client-reported timestamps are never consulted. Expiry is
applied lazily on every request touching an attempt and eagerly by the sweep job.
"""

import math
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from attempt_engine.core import clock
from attempt_engine.core.app_exceptions import AttemptClosed, AttemptExpired
from attempt_engine.core.config import settings
from attempt_engine.core.logging import get_logger
from attempt_engine.models.attempt import AttemptStatus, QuizAttempt
from attempt_engine.services.completion import CompletionNotifier
from attempt_engine.services.state_machine import close_attempt

logger = get_logger(__name__)


def elapsed_seconds(attempt: QuizAttempt, now: datetime | None = None) -> float:
    now = now or clock.utcnow()
    return (now - clock.ensure_utc(attempt.started_at)).total_seconds()


def remaining_seconds(attempt: QuizAttempt, now: datetime | None = None) -> int:
    """Whole seconds left; 0 once the budget is spent or the attempt is closed."""
    if attempt.status != AttemptStatus.IN_PROGRESS:
        return 0
    remaining = attempt.duration_seconds - math.floor(elapsed_seconds(attempt, now))
    return max(0, remaining)


def is_time_up(attempt: QuizAttempt, now: datetime | None = None) -> bool:
    return elapsed_seconds(attempt, now) >= attempt.duration_seconds


async def expire_if_due(
    db: Session,
    attempt: QuizAttempt,
    notifier: CompletionNotifier,
    source: str = "api",
) -> bool:
    """
    Close an overdue IN_PROGRESS attempt as EXPIRED.

    Returns:
        True if the attempt is past its deadline (whoever closed it)
    """
    if attempt.status != AttemptStatus.IN_PROGRESS or not is_time_up(attempt):
        return False
    await close_attempt(db, attempt, AttemptStatus.EXPIRED, notifier, source=source)
    return True


async def enforce_time_budget(db: Session, attempt: QuizAttempt, notifier: CompletionNotifier) -> None:
    """
    Reject a mutation once the time budget is spent.

    Raises:
        AttemptExpired: time is up (the attempt is closed before raising)
        AttemptClosed: another trigger closed the attempt at the deadline first
    """
    if not await expire_if_due(db, attempt, notifier):
        return
    if attempt.status == AttemptStatus.EXPIRED:
        raise AttemptExpired(attempt.id)
    raise AttemptClosed(attempt.id, attempt.status.value)


async def sweep_expired_attempts(
    db: Session,
    notifier: CompletionNotifier,
    limit: int | None = None,
) -> int:
    """
    Close every IN_PROGRESS attempt whose deadline has passed.

    Safe to run concurrently with live traffic and with other sweepers: each
    close goes through the state machine, so an attempt already closed by a
    request is skipped.

    Returns:
        Number of attempts this sweep closed
    """
    limit = limit or settings.EXPIRY_SWEEP_BATCH_SIZE
    now = clock.utcnow()
    attempt_ids = (
        db.execute(
            select(QuizAttempt.id)
            .where(
                QuizAttempt.status == AttemptStatus.IN_PROGRESS,
                QuizAttempt.expires_at <= now,
            )
            .order_by(QuizAttempt.expires_at)
            .limit(limit)
        )
        .scalars()
        .all()
    )

    closed = 0
    failed = 0
    for attempt_id in attempt_ids:
        attempt = db.get(QuizAttempt, attempt_id)
        if attempt is None:
            continue
        try:
            outcome = await close_attempt(db, attempt, AttemptStatus.EXPIRED, notifier, source="sweep")
        except Exception as e:
            # Leave it for the next run; one bad attempt must not block the batch
            db.rollback()
            failed += 1
            logger.error(
                "Expiry sweep could not close attempt",
                extra={"attempt_id": str(attempt_id), "error": repr(e)},
                exc_info=True,
            )
            continue
        if outcome.closed_by_caller:
            closed += 1

    logger.info(
        "Expiry sweep finished",
        extra={"candidates": len(attempt_ids), "closed": closed, "failed": failed},
    )
    return closed
