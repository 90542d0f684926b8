"""Quiz attempt models for the attempt engine."""

import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from attempt_engine.db.base import Base


class AttemptStatus(str, PyEnum):
    """Attempt lifecycle status. Everything except IN_PROGRESS is terminal."""

    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    EXPIRED = "EXPIRED"
    TERMINATED = "TERMINATED"

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptStatus.IN_PROGRESS


class ViolationType(str, PyEnum):
    """Anti-leave signal reported by the client."""

    BLUR = "BLUR"
    VISIBILITY_HIDDEN = "VISIBILITY_HIDDEN"
    DEVTOOLS_SUSPECTED = "DEVTOOLS_SUSPECTED"
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    COPY_PASTE = "COPY_PASTE"


class QuizAttempt(Base):
    """One student's timed run through a quiz."""

    __tablename__ = "quiz_attempts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quiz_id = Column(String(64), nullable=False)
    course_id = Column(String(64), nullable=True)
    student_id = Column(String(64), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)

    status = Column(
        Enum(AttemptStatus, name="attempt_status"),
        nullable=False,
        default=AttemptStatus.IN_PROGRESS,
    )

    # Timer (server clock only)
    started_at = Column(DateTime(timezone=True), nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)  # started_at + duration

    # Optimistic concurrency: bumped on every accepted mutation
    sequence_counter = Column(Integer, nullable=False, default=0)
    violation_count = Column(Integer, nullable=False, default=0)

    # Quiz definition frozen at start: {total_question_count, answer_key, passing_score, ...}
    quiz_snapshot = Column(JSON, nullable=False)
    total_questions = Column(Integer, nullable=False)

    # Result (set exactly once, at the terminal transition)
    final_score = Column(Numeric(5, 2), nullable=True)  # 0.00 to 100.00
    correct_count = Column(Integer, nullable=True)
    completion_percent = Column(Numeric(5, 2), nullable=True)
    passed = Column(Boolean, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    answers = relationship("AttemptAnswer", back_populates="attempt")
    violations = relationship("AttemptViolation", back_populates="attempt")

    __table_args__ = (
        # At most one open attempt per (quiz, student)
        Index(
            "uq_quiz_attempts_open",
            "quiz_id",
            "student_id",
            unique=True,
            postgresql_where=text("status = 'IN_PROGRESS'"),
            sqlite_where=text("status = 'IN_PROGRESS'"),
        ),
        Index("ix_quiz_attempts_student_quiz", "student_id", "quiz_id"),
        Index("ix_quiz_attempts_status_expires", "status", "expires_at"),
    )


class AttemptAnswer(Base):
    """Latest accepted answer for one question of an attempt."""

    __tablename__ = "attempt_answers"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attempt_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("quiz_attempts.id", ondelete="CASCADE"),
        nullable=False,
    )
    question_id = Column(String(64), nullable=False)

    value = Column(JSON, nullable=True)  # option id, [option ids], number or text
    client_sequence = Column(Integer, nullable=True)  # hint only, never authoritative
    server_sequence = Column(Integer, nullable=False)
    idempotency_key = Column(String(128), nullable=True)
    saved_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    attempt = relationship("QuizAttempt", back_populates="answers")

    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_attempt_answer"),
        Index("ix_attempt_answers_attempt_id", "attempt_id"),
    )


class AutosaveReceipt(Base):
    """Accepted autosave keyed by the client's idempotency token."""

    __tablename__ = "autosave_receipts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attempt_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("quiz_attempts.id", ondelete="CASCADE"),
        nullable=False,
    )
    idempotency_key = Column(String(128), nullable=False)
    payload_hash = Column(String(64), nullable=False)
    question_id = Column(String(64), nullable=False)
    server_sequence = Column(Integer, nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("attempt_id", "idempotency_key", name="uq_autosave_receipt"),
    )


class AttemptViolation(Base):
    """Anti-leave signal. Recorded even when it no longer counts."""

    __tablename__ = "attempt_violations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attempt_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("quiz_attempts.id", ondelete="CASCADE"),
        nullable=False,
    )
    violation_type = Column(
        Enum(ViolationType, name="violation_type"),
        nullable=False,
    )
    client_ts = Column(DateTime(timezone=True), nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    counted = Column(Boolean, nullable=False, default=True)
    count_after = Column(Integer, nullable=True)  # violation_count once this event was applied

    attempt = relationship("QuizAttempt", back_populates="violations")

    __table_args__ = (Index("ix_attempt_violations_attempt_ts", "attempt_id", "recorded_at"),)


class AttemptEvent(Base):
    """Telemetry events for attempts (append-only log).

    IMPORTANT: This is an append-only table. Do NOT update or delete events.
    """

    __tablename__ = "attempt_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    event_type = Column(String(100), nullable=False, index=True)
    event_ts = Column(DateTime(timezone=True), nullable=False, index=True)
    attempt_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    student_id = Column(String(64), nullable=False)
    question_id = Column(String(64), nullable=True)
    source = Column(String(50), nullable=True)  # "api", "sweep"
    payload_json = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_attempt_events_attempt_ts", "attempt_id", "event_ts"),)
