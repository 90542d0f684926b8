"""Pydantic schemas for quiz attempts."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from attempt_engine.models.attempt import AttemptStatus, ViolationType

# ============================================================================
# Requests
# ============================================================================


class AttemptCreate(BaseModel):
    """Request to start an attempt."""

    quiz_id: str = Field(..., min_length=1, max_length=64, description="Quiz to attempt")


class AnswerSave(BaseModel):
    """Autosave of one answer."""

    value: Any = Field(None, description="Option id, list of option ids, number or text; null clears")
    client_sequence: int | None = Field(
        None, ge=0, description="Client's monotonically increasing save counter"
    )


class ViolationCreate(BaseModel):
    """Anti-leave signal from the client."""

    violation_type: ViolationType
    client_ts: datetime | None = Field(None, description="Client clock, stored for audit only")


# ============================================================================
# Responses
# ============================================================================


class AttemptOut(BaseModel):
    """Attempt response."""

    id: UUID
    quiz_id: str
    course_id: str | None
    student_id: str
    attempt_number: int
    status: AttemptStatus
    started_at: datetime
    duration_seconds: int
    expires_at: datetime
    sequence_counter: int
    violation_count: int
    total_questions: int
    final_score: float | None
    correct_count: int | None
    completion_percent: float | None
    passed: bool | None
    closed_at: datetime | None

    class Config:
        from_attributes = True


class AnswerOut(BaseModel):
    """Saved answer. ``is_correct`` is null while the attempt is open."""

    question_id: str
    value: Any
    client_sequence: int | None
    server_sequence: int
    saved_at: datetime
    is_correct: bool | None = None

    class Config:
        from_attributes = True


class AttemptStatusOut(BaseModel):
    """Attempt state with time left, progress and saved answers."""

    attempt: AttemptOut
    remaining_seconds: int
    answered_count: int
    answers: list[AnswerOut] = Field(default_factory=list)


class AnswerSaveOut(BaseModel):
    attempt_id: UUID
    question_id: str
    server_sequence: int
    client_sequence: int | None
    saved_at: datetime
    replayed: bool


class ViolationOut(BaseModel):
    attempt_id: UUID
    violation_type: ViolationType
    counted: bool
    violation_count: int
    terminated: bool
    status: AttemptStatus


class HeartbeatOut(BaseModel):
    attempt_id: UUID
    status: AttemptStatus
    remaining_seconds: int
    server_time: datetime


class SubmitOut(BaseModel):
    """Submit response. ``certificate`` is only present for the request that closed the attempt."""

    attempt: AttemptOut
    closed_by_request: bool
    certificate: dict[str, Any] | None = None
