"""Quiz definition provider (read-only collaborator).

The course builder owns quizzes; the engine only needs the answer key, the
question count and the time budget. A definition is assumed immutable for the
lifetime of an attempt, and the engine freezes it into the attempt row at
start anyway.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError, model_validator

from attempt_engine.core.app_exceptions import QuizDefinitionUnavailable
from attempt_engine.core.config import settings

logger = logging.getLogger(__name__)

_SAFE_QUIZ_ID = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


class QuestionKind(str, Enum):
    SINGLE_CHOICE = "SINGLE_CHOICE"
    MULTIPLE_SELECT = "MULTIPLE_SELECT"
    NUMERIC = "NUMERIC"
    TEXT = "TEXT"


class AnswerKeyEntry(BaseModel):
    question_id: str = Field(..., min_length=1, max_length=64)
    kind: QuestionKind = QuestionKind.SINGLE_CHOICE
    correct: Any
    tolerance: float | None = Field(None, ge=0, description="NUMERIC only; falls back to NUMERIC_TOLERANCE")


class QuizDefinition(BaseModel):
    """What the engine needs to know about a quiz."""

    quiz_id: str
    course_id: str | None = None
    duration_seconds: int | None = Field(None, description="Missing or <= 0 means the default budget")
    total_question_count: int | None = None
    answer_key: list[AnswerKeyEntry]
    passing_score: float = Field(70.0, ge=0, le=100)
    attempt_limit: int | None = Field(None, ge=1, description="null = unlimited attempts")

    @model_validator(mode="after")
    def check_question_count(self) -> "QuizDefinition":
        keyed = len(self.answer_key)
        if self.total_question_count is None:
            self.total_question_count = keyed
        if self.total_question_count < 1:
            raise ValueError("quiz must have at least one question")
        if self.total_question_count < keyed:
            raise ValueError("total_question_count is smaller than the answer key")
        ids = [entry.question_id for entry in self.answer_key]
        if len(ids) != len(set(ids)):
            raise ValueError("answer_key contains duplicate question ids")
        return self

    def effective_duration(self, default_seconds: int) -> int:
        if self.duration_seconds and self.duration_seconds > 0:
            return self.duration_seconds
        return default_seconds

    def key_for(self, question_id: str) -> AnswerKeyEntry | None:
        for entry in self.answer_key:
            if entry.question_id == question_id:
                return entry
        return None


class QuizDefinitionProvider(Protocol):
    async def get_quiz_definition(self, quiz_id: str) -> QuizDefinition:
        """Return the definition or raise QuizDefinitionUnavailable."""


class InMemoryQuizDefinitionProvider:
    """Definitions held in process (dev and tests)."""

    def __init__(self, definitions: dict[str, QuizDefinition] | None = None):
        self._definitions = dict(definitions or {})

    def add(self, definition: QuizDefinition) -> None:
        self._definitions[definition.quiz_id] = definition

    async def get_quiz_definition(self, quiz_id: str) -> QuizDefinition:
        definition = self._definitions.get(quiz_id)
        if definition is None:
            raise QuizDefinitionUnavailable(quiz_id, "not_found")
        return definition


class JsonDirectoryQuizDefinitionProvider:
    """Reads ``<directory>/<quiz_id>.json`` exported by the course builder."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    async def get_quiz_definition(self, quiz_id: str) -> QuizDefinition:
        if not _SAFE_QUIZ_ID.match(quiz_id):
            raise QuizDefinitionUnavailable(quiz_id, "invalid_quiz_id")

        path = self.directory / f"{quiz_id}.json"
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise QuizDefinitionUnavailable(quiz_id, "not_found") from None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Quiz definition %s unreadable: %s", path, e)
            raise QuizDefinitionUnavailable(quiz_id, "unreadable") from e

        return _parse_definition(quiz_id, raw)


class HttpQuizDefinitionProvider:
    """GET ``{base_url}/quizzes/{quiz_id}`` on the course service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_quiz_definition(self, quiz_id: str) -> QuizDefinition:
        if not _SAFE_QUIZ_ID.match(quiz_id):
            raise QuizDefinitionUnavailable(quiz_id, "invalid_quiz_id")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(f"{self.base_url}/quizzes/{quiz_id}")
        except httpx.HTTPError as e:
            logger.warning("Quiz service request failed for %s: %s", quiz_id, e)
            raise QuizDefinitionUnavailable(quiz_id, "service_unreachable") from e

        if resp.status_code == 404:
            raise QuizDefinitionUnavailable(quiz_id, "not_found")
        if resp.status_code != 200:
            logger.warning("Quiz service returned %s for %s", resp.status_code, quiz_id)
            raise QuizDefinitionUnavailable(quiz_id, f"service_status_{resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise QuizDefinitionUnavailable(quiz_id, "invalid_definition") from e
        return _parse_definition(quiz_id, data)


def _parse_definition(quiz_id: str, data: Any) -> QuizDefinition:
    if not isinstance(data, dict):
        raise QuizDefinitionUnavailable(quiz_id, "invalid_definition")
    data.setdefault("quiz_id", quiz_id)
    try:
        return QuizDefinition.model_validate(data)
    except ValidationError as e:
        logger.warning("Quiz definition %s invalid: %s", quiz_id, e)
        raise QuizDefinitionUnavailable(quiz_id, "invalid_definition") from e


def build_quiz_provider() -> QuizDefinitionProvider:
    """Pick the provider configured in settings (remote service wins over directory)."""
    if settings.QUIZ_SERVICE_URL:
        return HttpQuizDefinitionProvider(
            settings.QUIZ_SERVICE_URL, timeout=settings.QUIZ_SERVICE_TIMEOUT_SECONDS
        )
    if settings.QUIZ_DEFINITIONS_DIR:
        return JsonDirectoryQuizDefinitionProvider(settings.QUIZ_DEFINITIONS_DIR)
    logger.warning("No quiz definition source configured; every quiz lookup will fail")
    return InMemoryQuizDefinitionProvider()


_provider: QuizDefinitionProvider | None = None


def get_quiz_provider() -> QuizDefinitionProvider:
    """FastAPI dependency returning the process-wide provider."""
    global _provider
    if _provider is None:
        _provider = build_quiz_provider()
    return _provider
