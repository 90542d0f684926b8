"""Quiz attempt endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session

from attempt_engine.core import clock
from attempt_engine.core.app_exceptions import AttemptAccessDenied
from attempt_engine.core.dependencies import Principal, Role, get_current_principal, require_roles
from attempt_engine.db.session import get_db
from attempt_engine.models.attempt import QuizAttempt
from attempt_engine.schemas.attempt import (
    AnswerOut,
    AnswerSave,
    AnswerSaveOut,
    AttemptCreate,
    AttemptOut,
    AttemptStatusOut,
    HeartbeatOut,
    SubmitOut,
    ViolationCreate,
    ViolationOut,
)
from attempt_engine.services import attempt_engine
from attempt_engine.services.completion import CompletionNotifier, get_completion_notifier
from attempt_engine.services.quiz_definitions import QuizDefinitionProvider, get_quiz_provider
from attempt_engine.services.state_machine import get_attempt

router = APIRouter()

StudentDep = Annotated[Principal, Depends(require_roles(Role.STUDENT))]
NotifierDep = Annotated[CompletionNotifier, Depends(get_completion_notifier)]


# ============================================================================
# Helper Functions
# ============================================================================


def get_owned_attempt(db: Session, attempt_id: UUID, principal: Principal) -> QuizAttempt:
    """Get attempt and verify the caller owns it."""
    attempt = get_attempt(db, attempt_id)
    if attempt.student_id != principal.user_id:
        raise AttemptAccessDenied(attempt_id)
    return attempt


# ============================================================================
# Endpoints
# ============================================================================


@router.post("", response_model=AttemptOut, status_code=status.HTTP_201_CREATED)
async def start_attempt(
    body: AttemptCreate,
    db: Annotated[Session, Depends(get_db)],
    principal: StudentDep,
    provider: Annotated[QuizDefinitionProvider, Depends(get_quiz_provider)],
    notifier: NotifierDep,
):
    """
    Start a timed attempt on a quiz.

    The start time is taken from the server clock; the quiz definition is
    frozen into the attempt.
    """
    return await attempt_engine.start_attempt(db, provider, notifier, body.quiz_id, principal.user_id)


@router.get("/{attempt_id}", response_model=AttemptStatusOut)
async def get_attempt_status(
    attempt_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    notifier: NotifierDep,
):
    """
    Current attempt state with remaining time. Applies lazy expiry.

    Instructors and admins may read any attempt.
    """
    if principal.role in (Role.INSTRUCTOR, Role.ADMIN):
        attempt = get_attempt(db, attempt_id)
    else:
        attempt = get_owned_attempt(db, attempt_id, principal)

    view = await attempt_engine.get_attempt_status(db, attempt, notifier)
    return AttemptStatusOut(
        attempt=AttemptOut.model_validate(view.attempt),
        remaining_seconds=view.remaining_seconds,
        answered_count=view.answered_count,
        answers=[AnswerOut.model_validate(answer) for answer in view.answers],
    )


@router.put("/{attempt_id}/answers/{question_id}", response_model=AnswerSaveOut)
async def save_answer(
    attempt_id: UUID,
    question_id: str,
    body: AnswerSave,
    db: Annotated[Session, Depends(get_db)],
    principal: StudentDep,
    notifier: NotifierDep,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key", max_length=128)] = None,
):
    """
    Autosave one answer.

    Retries carrying the same Idempotency-Key get the original result back.
    """
    attempt = get_owned_attempt(db, attempt_id, principal)
    result = await attempt_engine.save_answer(
        db,
        attempt,
        notifier,
        question_id,
        body.value,
        client_sequence=body.client_sequence,
        idempotency_key=idempotency_key,
    )
    return AnswerSaveOut(
        attempt_id=result.attempt_id,
        question_id=result.question_id,
        server_sequence=result.server_sequence,
        client_sequence=result.client_sequence,
        saved_at=result.saved_at,
        replayed=result.replayed,
    )


@router.post("/{attempt_id}/violations", response_model=ViolationOut)
async def record_violation(
    attempt_id: UUID,
    body: ViolationCreate,
    db: Annotated[Session, Depends(get_db)],
    principal: StudentDep,
    notifier: NotifierDep,
):
    """Report that the student left the quiz (blur, hidden tab, ...)."""
    attempt = get_owned_attempt(db, attempt_id, principal)
    outcome = await attempt_engine.record_violation(
        db, attempt, notifier, body.violation_type, client_ts=body.client_ts
    )
    return ViolationOut(
        attempt_id=outcome.attempt.id,
        violation_type=body.violation_type,
        counted=outcome.counted,
        violation_count=outcome.attempt.violation_count,
        terminated=outcome.terminated,
        status=outcome.attempt.status,
    )


@router.post("/{attempt_id}/heartbeat", response_model=HeartbeatOut)
async def heartbeat(
    attempt_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    principal: StudentDep,
    notifier: NotifierDep,
):
    """Remaining time according to the server clock."""
    attempt = get_owned_attempt(db, attempt_id, principal)
    remaining = await attempt_engine.heartbeat(db, attempt, notifier)
    return HeartbeatOut(
        attempt_id=attempt.id,
        status=attempt.status,
        remaining_seconds=remaining,
        server_time=clock.utcnow(),
    )


@router.post("/{attempt_id}/submit", response_model=SubmitOut)
async def submit_attempt(
    attempt_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    principal: StudentDep,
    notifier: NotifierDep,
):
    """
    Submit the attempt for scoring.

    Idempotent: submitting a closed attempt returns its final state.
    """
    attempt = get_owned_attempt(db, attempt_id, principal)
    outcome = await attempt_engine.submit_attempt(db, attempt, notifier)
    return SubmitOut(
        attempt=AttemptOut.model_validate(outcome.attempt),
        closed_by_request=outcome.closed_by_caller,
        certificate=outcome.certificate,
    )
