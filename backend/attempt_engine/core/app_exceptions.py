"""Application-specific exceptions for consistent error handling.

Every attempt-engine failure is an ``AppError`` so the global HTTP exception
handler renders it with a stable ``error_code``. All of them are recoverable by
the caller; none is process-fatal.
"""

from typing import Any
from uuid import UUID

from fastapi import HTTPException, status


class AppError(HTTPException):
    """Application error with standardized error code."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | list[Any] | None = None,
    ):
        """Initialize application error."""
        super().__init__(
            status_code=status_code,
            detail={
                "code": code,
                "message": message,
                "details": details,
            },
        )
        self.code = code
        self.message = message
        self.details = details


# ============================================================================
# Attempt engine errors
# ============================================================================


class AlreadyOpenAttempt(AppError):
    def __init__(self, attempt_id: UUID | None = None):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "ALREADY_OPEN_ATTEMPT",
            "An attempt for this quiz is already in progress",
            {"attempt_id": str(attempt_id)} if attempt_id else None,
        )
        self.attempt_id = attempt_id


class InvalidTransition(AppError):
    def __init__(self, attempt_id: UUID, current_status: str, target_status: str):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "INVALID_TRANSITION",
            f"Attempt cannot move from {current_status} to {target_status}",
            {
                "attempt_id": str(attempt_id),
                "current_status": current_status,
                "target_status": target_status,
            },
        )
        self.current_status = current_status
        self.target_status = target_status


class AttemptExpired(AppError):
    def __init__(self, attempt_id: UUID):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "ATTEMPT_EXPIRED",
            "Time is up. The attempt was closed automatically.",
            {"attempt_id": str(attempt_id), "status": "EXPIRED"},
        )


class AttemptClosed(AppError):
    def __init__(self, attempt_id: UUID, current_status: str):
        messages = {
            "SUBMITTED": "The attempt has already been submitted.",
            "EXPIRED": "Time is up. The attempt was closed automatically.",
            "TERMINATED": "The attempt was terminated after repeatedly leaving the quiz.",
        }
        super().__init__(
            status.HTTP_409_CONFLICT,
            "ATTEMPT_CLOSED",
            messages.get(current_status, "The attempt is closed."),
            {"attempt_id": str(attempt_id), "status": current_status},
        )
        self.current_status = current_status


class StaleWrite(AppError):
    """The write was superseded by a later accepted write for the same question."""

    def __init__(self, question_id: str, stored_server_sequence: int, stored_client_sequence: int | None):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "STALE_WRITE",
            "A newer answer for this question has already been saved",
            {
                "question_id": question_id,
                "server_sequence": stored_server_sequence,
                "client_sequence": stored_client_sequence,
            },
        )
        self.stored_server_sequence = stored_server_sequence


class ConcurrentUpdateConflict(AppError):
    def __init__(self, attempt_id: UUID, retries: int):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "CONCURRENT_UPDATE_CONFLICT",
            "The attempt was modified concurrently, please retry",
            {"attempt_id": str(attempt_id), "retries": retries},
        )


class QuizDefinitionUnavailable(AppError):
    def __init__(self, quiz_id: str, reason: str):
        super().__init__(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "QUIZ_DEFINITION_UNAVAILABLE",
            "Quiz definition could not be loaded",
            {"quiz_id": quiz_id, "reason": reason},
        )
        self.reason = reason


class AttemptNotFound(AppError):
    def __init__(self, attempt_id: UUID):
        super().__init__(
            status.HTTP_404_NOT_FOUND,
            "ATTEMPT_NOT_FOUND",
            "Attempt not found",
            {"attempt_id": str(attempt_id)},
        )


class AttemptAccessDenied(AppError):
    def __init__(self, attempt_id: UUID):
        super().__init__(
            status.HTTP_403_FORBIDDEN,
            "ATTEMPT_ACCESS_DENIED",
            "Not authorized to access this attempt",
            {"attempt_id": str(attempt_id)},
        )


class AttemptLimitReached(AppError):
    def __init__(self, quiz_id: str, attempt_limit: int):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "ATTEMPT_LIMIT_REACHED",
            f"Attempt limit reached. Maximum attempts: {attempt_limit}",
            {"quiz_id": quiz_id, "attempt_limit": attempt_limit},
        )


class UnknownQuestion(AppError):
    def __init__(self, question_id: str):
        super().__init__(
            status.HTTP_404_NOT_FOUND,
            "UNKNOWN_QUESTION",
            "Question is not part of this quiz",
            {"question_id": question_id},
        )


class InvalidAnswerValue(AppError):
    def __init__(self, question_id: str, kind: str, reason: str):
        super().__init__(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "INVALID_ANSWER_VALUE",
            f"Answer value does not fit a {kind} question",
            {"question_id": question_id, "kind": kind, "reason": reason},
        )
        self.reason = reason


class IdempotencyKeyConflict(AppError):
    def __init__(self, idempotency_key: str):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "IDEMPOTENCY_KEY_CONFLICT",
            "Idempotency-Key was used with a different request payload",
            {"idempotency_key": idempotency_key[:8] + "..."},
        )
