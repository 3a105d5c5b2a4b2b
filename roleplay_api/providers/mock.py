import re
from typing import Any, Dict, Optional

from .base import ConversationProvider, GradingClient

# Filler tokens ignored when extracting key terms from a canonical answer
_STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "to", "of", "in", "on", "at", "for", "is",
    "are", "be", "we", "our", "it", "its", "am", "pm", "with", "from", "by",
})

_TOKEN_RE = re.compile(r"[0-9]+|[^\W\d_]+", re.UNICODE)


def _tokens(text: str):
    # "9am-5pm" -> ["9", "am", "5", "pm"]
    return [t.lower() for t in _TOKEN_RE.findall(text or "")]


class MockConversationProvider(ConversationProvider):
    """In-memory provider serving canned conversation payloads by reference."""

    provider_name: str = "mock"

    def __init__(self, conversations: Optional[Dict[str, Dict[str, Any]]] = None):
        self.conversations: Dict[str, Dict[str, Any]] = dict(conversations or {})

    def add(self, ref: str, payload: Dict[str, Any]) -> None:
        self.conversations[ref] = payload

    async def get_conversation(self, ref: str) -> Dict[str, Any]:
        payload = self.conversations.get(ref) or {}
        return {
            "conversation_id": ref,
            "status": "done" if payload else "unknown",
            "metadata": dict(payload.get("metadata") or {}),
        }

    async def get_transcript(self, ref: str) -> Dict[str, Any]:
        return self.conversations.get(ref) or {"conversation_id": ref, "transcript": []}


class MockGradingClient(GradingClient):
    """Deterministic grader: share of canonical key terms present in the answer.

    A key term counts as present when an answer token equals it or starts
    with it, so "mon" matches "monday".
    """

    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None, threshold: int = 80):
        super().__init__(model=model or "mock-grader-1")
        self.threshold = threshold

    async def grade(
        self,
        question: str,
        canonical_answer: str,
        user_answer: str,
        topic: Optional[str] = None,
        language: str = "en",
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        key_terms = [t for t in dict.fromkeys(_tokens(canonical_answer)) if t not in _STOPWORDS]
        answer_tokens = set(_tokens(user_answer))
        if not key_terms:
            score = 100 if answer_tokens else 0
            missing = []
        else:
            missing = [k for k in key_terms if not any(a == k or a.startswith(k) for a in answer_tokens)]
            score = int(round((len(key_terms) - len(missing)) / len(key_terms) * 100))
        is_correct = score >= self.threshold
        if is_correct:
            feedback = "Answer covers the expected key points."
        else:
            feedback = "Missing key points: " + ", ".join(missing[:5])
        return {"score": score, "isCorrect": is_correct, "feedback": feedback}
