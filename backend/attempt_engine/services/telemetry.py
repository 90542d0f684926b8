"""Telemetry service for logging attempt events.

IMPORTANT: All telemetry operations are best-effort. Failures must NOT break the main application flow.
"""

import logging
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from attempt_engine.core import clock
from attempt_engine.models.attempt import AttemptEvent

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ATTEMPT_STARTED = "ATTEMPT_STARTED"
    ANSWER_SAVED = "ANSWER_SAVED"
    ANSWER_REPLAYED = "ANSWER_REPLAYED"
    ANSWER_STALE = "ANSWER_STALE"
    VIOLATION_RECORDED = "VIOLATION_RECORDED"
    ATTEMPT_CLOSED = "ATTEMPT_CLOSED"
    COMPLETION_NOTIFY_FAILED = "COMPLETION_NOTIFY_FAILED"


async def log_event(
    db: Session,
    attempt_id: UUID,
    student_id: str,
    event_type: EventType | str,
    payload: dict[str, Any] | None = None,
    question_id: str | None = None,
    source: str = "api",
) -> AttemptEvent | None:
    """
    Log a single telemetry event (best-effort).

    Args:
        db: Database session
        attempt_id: Attempt ID
        student_id: Student ID
        event_type: Event type
        payload: Event payload
        question_id: Question ID (optional)
        source: Event source (api, sweep)

    Returns:
        Created event or None if failed
    """
    try:
        event_type_str = event_type.value if isinstance(event_type, EventType) else event_type

        event = AttemptEvent(
            attempt_id=attempt_id,
            student_id=student_id,
            event_type=event_type_str,
            event_ts=clock.utcnow(),
            question_id=question_id,
            source=source,
            payload_json=payload or {},
        )
        db.add(event)
        # Note: Caller should commit. We don't commit here to allow batching.
        return event
    except Exception as e:
        # Best-effort: log error but don't raise
        logger.error(f"Failed to log telemetry event {event_type}: {e}", exc_info=True)
        return None
