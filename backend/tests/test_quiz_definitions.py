"""Tests for quiz definition providers."""

import json

import httpx
import pytest
from pydantic import ValidationError

from attempt_engine.core.app_exceptions import QuizDefinitionUnavailable
from attempt_engine.services.quiz_definitions import (
    HttpQuizDefinitionProvider,
    InMemoryQuizDefinitionProvider,
    JsonDirectoryQuizDefinitionProvider,
    QuizDefinition,
)
from tests.helpers.seed import make_quiz_definition

DEFINITION_JSON = {
    "course_id": "course-9",
    "duration_seconds": 900,
    "passing_score": 60,
    "answer_key": [
        {"question_id": "q1", "kind": "SINGLE_CHOICE", "correct": "a"},
        {"question_id": "q2", "kind": "NUMERIC", "correct": 10, "tolerance": 0.5},
    ],
}


def test_definition_defaults_question_count_to_key_length() -> None:
    definition = QuizDefinition.model_validate({"quiz_id": "x", **DEFINITION_JSON})
    assert definition.total_question_count == 2
    assert definition.passing_score == 60
    assert definition.attempt_limit is None


def test_definition_rejects_inconsistent_key() -> None:
    with pytest.raises(ValidationError):
        QuizDefinition.model_validate({"quiz_id": "x", "answer_key": []})
    with pytest.raises(ValidationError):
        QuizDefinition.model_validate({"quiz_id": "x", **DEFINITION_JSON, "total_question_count": 1})
    with pytest.raises(ValidationError):
        QuizDefinition.model_validate(
            {
                "quiz_id": "x",
                "answer_key": [
                    {"question_id": "q1", "correct": "a"},
                    {"question_id": "q1", "correct": "b"},
                ],
            }
        )


def test_effective_duration() -> None:
    assert make_quiz_definition(duration_seconds=900).effective_duration(1200) == 900
    assert make_quiz_definition(duration_seconds=None).effective_duration(1200) == 1200
    assert make_quiz_definition(duration_seconds=-5).effective_duration(1200) == 1200


@pytest.mark.asyncio
async def test_in_memory_provider() -> None:
    provider = InMemoryQuizDefinitionProvider()
    provider.add(make_quiz_definition(quiz_id="quiz-7"))

    definition = await provider.get_quiz_definition("quiz-7")
    assert definition.quiz_id == "quiz-7"

    with pytest.raises(QuizDefinitionUnavailable) as exc_info:
        await provider.get_quiz_definition("missing")
    assert exc_info.value.reason == "not_found"
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_json_directory_provider(tmp_path) -> None:
    (tmp_path / "quiz-9.json").write_text(json.dumps(DEFINITION_JSON), encoding="utf-8")
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "invalid.json").write_text(json.dumps({"answer_key": "nope"}), encoding="utf-8")
    provider = JsonDirectoryQuizDefinitionProvider(tmp_path)

    definition = await provider.get_quiz_definition("quiz-9")
    assert definition.quiz_id == "quiz-9"
    assert definition.course_id == "course-9"
    assert definition.duration_seconds == 900

    for quiz_id, reason in (
        ("missing", "not_found"),
        ("broken", "unreadable"),
        ("invalid", "invalid_definition"),
        ("../etc/passwd", "invalid_quiz_id"),
    ):
        with pytest.raises(QuizDefinitionUnavailable) as exc_info:
            await provider.get_quiz_definition(quiz_id)
        assert exc_info.value.reason == reason


@pytest.mark.asyncio
async def test_http_provider() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/api/quizzes/quiz-9":
            return httpx.Response(200, json=DEFINITION_JSON)
        if request.url.path == "/api/quizzes/boom":
            return httpx.Response(500, json={"detail": "error"})
        if request.url.path == "/api/quizzes/garbage":
            return httpx.Response(200, json=["not", "a", "definition"])
        return httpx.Response(404)

    provider = HttpQuizDefinitionProvider("http://courses.test/api/", transport=httpx.MockTransport(handler))

    definition = await provider.get_quiz_definition("quiz-9")
    assert definition.quiz_id == "quiz-9"
    assert len(definition.answer_key) == 2
    assert seen == ["/api/quizzes/quiz-9"]

    for quiz_id, reason in (
        ("missing", "not_found"),
        ("boom", "service_status_500"),
        ("garbage", "invalid_definition"),
    ):
        with pytest.raises(QuizDefinitionUnavailable) as exc_info:
            await provider.get_quiz_definition(quiz_id)
        assert exc_info.value.reason == reason


@pytest.mark.asyncio
async def test_http_provider_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = HttpQuizDefinitionProvider("http://courses.test", transport=httpx.MockTransport(handler))

    with pytest.raises(QuizDefinitionUnavailable) as exc_info:
        await provider.get_quiz_definition("quiz-9")
    assert exc_info.value.reason == "service_unreachable"
