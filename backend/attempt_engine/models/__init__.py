"""Database models."""

from attempt_engine.models.attempt import (
    AttemptAnswer,
    AttemptEvent,
    AttemptStatus,
    AttemptViolation,
    AutosaveReceipt,
    QuizAttempt,
    ViolationType,
)

__all__ = [
    "AttemptAnswer",
    "AttemptEvent",
    "AttemptStatus",
    "AttemptViolation",
    "AutosaveReceipt",
    "QuizAttempt",
    "ViolationType",
]
