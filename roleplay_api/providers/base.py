from __future__ import annotations

import abc
from typing import Any, Dict, Optional, Tuple


class ConversationProvider(abc.ABC):
    """Conversational-AI platform that hosts the live role-play call.

    Implementations may raise `retry.FetchError` once their retry budget is
    spent on "not ready yet" answers.
    """

    provider_name: str = "unknown"

    @abc.abstractmethod
    async def get_conversation(self, ref: str) -> Dict[str, Any]:
        """Conversation metadata (status, call duration, ...)."""

    @abc.abstractmethod
    async def get_transcript(self, ref: str) -> Dict[str, Any]:
        """Raw provider payload holding the transcript entries."""

    async def fetch_conversation(self, ref: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """(metadata, transcript payload); providers serving both from one document override this."""
        metadata = await self.get_conversation(ref)
        payload = await self.get_transcript(ref)
        return metadata, payload


class GradingClient(abc.ABC):
    """Language-model grader comparing one answer with its canonical key.

    `grade` returns {"score": 0..100, "isCorrect": bool, "feedback": str} and
    raises on transport or parse failure; callers decide how to degrade.
    """

    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None):
        self.model = model

    @abc.abstractmethod
    async def grade(
        self,
        question: str,
        canonical_answer: str,
        user_answer: str,
        topic: Optional[str] = None,
        language: str = "en",
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...


class GradingResponseError(RuntimeError):
    """Grader answered but the payload could not be interpreted."""


def coerce_grade(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Clamp a raw grader verdict into the {score, isCorrect, feedback} shape."""
    if not isinstance(obj, dict):
        raise GradingResponseError("grader returned a non-object payload")
    try:
        score = float(obj.get("score", 0))
    except (TypeError, ValueError) as e:
        raise GradingResponseError(f"invalid score: {obj.get('score')!r}") from e
    score_i = int(round(min(100.0, max(0.0, score))))
    is_correct = obj.get("isCorrect")
    if isinstance(is_correct, str):
        is_correct = is_correct.strip().lower() in ("true", "yes", "1")
    return {
        "score": score_i,
        "isCorrect": bool(is_correct),
        "feedback": str(obj.get("feedback") or "").strip(),
    }
