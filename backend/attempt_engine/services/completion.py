"""Course-completion collaborator.

Told about every closed attempt; decides on course progress and certificate
issuance on its own. From the engine's side the call is fire-and-forget: the
attempt is already committed when it happens, and failures are retried by the
collaborator's own policy, never by the engine.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from attempt_engine.core.config import settings

logger = logging.getLogger(__name__)


class CompletionNotifier(Protocol):
    async def notify_completion(
        self,
        student_id: str,
        course_id: str | None,
        final_score: float,
        completion_percent: float,
        *,
        attempt_id: str,
        quiz_id: str,
        passed: bool,
    ) -> dict[str, Any] | None:
        """Return the issued certificate, or None."""


class LoggingCompletionNotifier:
    """Used when no completion service is configured."""

    async def notify_completion(
        self,
        student_id: str,
        course_id: str | None,
        final_score: float,
        completion_percent: float,
        *,
        attempt_id: str,
        quiz_id: str,
        passed: bool,
    ) -> dict[str, Any] | None:
        logger.info(
            "Completion notification (no webhook configured)",
            extra={
                "student_id": student_id,
                "course_id": course_id,
                "attempt_id": attempt_id,
                "final_score": final_score,
                "completion_percent": completion_percent,
            },
        )
        return None


class HttpCompletionNotifier:
    """POSTs the result to the course service's completion webhook.

    Raises httpx.HTTPError on failure; the caller logs it.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def notify_completion(
        self,
        student_id: str,
        course_id: str | None,
        final_score: float,
        completion_percent: float,
        *,
        attempt_id: str,
        quiz_id: str,
        passed: bool,
    ) -> dict[str, Any] | None:
        payload = {
            "student_id": student_id,
            "course_id": course_id,
            "final_score": final_score,
            "completion_percent": completion_percent,
            "attempt_id": attempt_id,
            "quiz_id": quiz_id,
            "passed": passed,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(self.url, json=payload)
            resp.raise_for_status()

        if not resp.content:
            return None
        data = resp.json()
        certificate = data.get("certificate") if isinstance(data, dict) else None
        return certificate or None


def build_completion_notifier() -> CompletionNotifier:
    if settings.COMPLETION_WEBHOOK_URL:
        return HttpCompletionNotifier(
            settings.COMPLETION_WEBHOOK_URL, timeout=settings.COMPLETION_TIMEOUT_SECONDS
        )
    return LoggingCompletionNotifier()


_notifier: CompletionNotifier | None = None


def get_completion_notifier() -> CompletionNotifier:
    """FastAPI dependency returning the process-wide notifier."""
    global _notifier
    if _notifier is None:
        _notifier = build_completion_notifier()
    return _notifier
