"""Knowledge assessment of a theory session transcript.

Pipeline: pair assistant questions with the trainee's answers, map each
spoken question onto a canonical Question, grade the matched answers with
the grading client (concurrently), aggregate a summary and record one
Attempt per graded exchange.
"""

import abc
import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from prometheus_client import Counter, Histogram

from .errors import PartialGradingFailure, UpstreamUnavailable
from .log import get_logger, log_event
from .mastery import mastery_percentage
from .models import (
    AssessmentSummary,
    Attempt,
    Question,
    QuestionResult,
    TheoryAssessment,
    Topic,
    Turn,
    UngradedExchange,
)
from .providers.base import GradingClient
from .store import Store

logger = get_logger("roleplay.api.assessment")

GRADING_CALLS_TOTAL = Counter(
    "roleplay_grading_calls_total",
    "Grading calls by provider and outcome",
    ["provider", "outcome"],
)
GRADING_CALL_SECONDS = Histogram(
    "roleplay_grading_call_seconds",
    "Duration of a single grading call in seconds",
    ["provider"],
)

DEFAULT_CORRECTNESS_THRESHOLD = 80
DEFAULT_MIN_ANSWER_CHARS = 3

_PUNCT_ONLY = re.compile(r"^[\W_]*$", re.UNICODE)
_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)
_MATCH_STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "to", "of", "in", "on", "at", "for", "is",
    "are", "do", "does", "what", "which", "how", "you", "your", "our", "we",
    "can", "tell", "me", "please", "about",
})


@dataclass(frozen=True)
class Exchange:
    index: int
    question: str
    answer: str


def extract_exchanges(transcript: Sequence[Turn], min_answer_chars: int = DEFAULT_MIN_ANSWER_CHARS) -> List[Exchange]:
    """Assistant turns immediately followed by a substantive user answer."""
    out: List[Exchange] = []
    for i in range(len(transcript) - 1):
        cur, nxt = transcript[i], transcript[i + 1]
        if cur.speaker != "assistant" or nxt.speaker != "user":
            continue
        answer = nxt.text.strip()
        if len(answer) < min_answer_chars or _PUNCT_ONLY.match(answer):
            continue
        out.append(Exchange(index=len(out), question=cur.text.strip(), answer=answer))
    return out


def _normalize(text: str) -> str:
    return " ".join(_WORD_RE.findall((text or "").lower()))


def _keywords(text: str) -> set:
    return {w for w in _WORD_RE.findall((text or "").lower()) if w not in _MATCH_STOPWORDS}


class QuestionMatcher(abc.ABC):
    """Maps spoken question text onto one canonical Question, or None."""

    @abc.abstractmethod
    def match(self, spoken: str, questions: Sequence[Question]) -> Optional[Question]:
        ...


class KeywordMatcher(QuestionMatcher):
    """Substring containment first, then keyword overlap above `min_overlap`.

    Overlap is measured against the canonical prompt's keywords; ties keep
    the earlier question in bank order.
    """

    def __init__(self, min_overlap: float = 0.6):
        self.min_overlap = min_overlap

    def match(self, spoken, questions):
        spoken_norm = _normalize(spoken)
        if not spoken_norm:
            return None
        best: Optional[Question] = None
        best_len = -1
        for q in questions:
            prompt_norm = _normalize(q.prompt)
            if prompt_norm and (prompt_norm in spoken_norm or spoken_norm in prompt_norm):
                if len(prompt_norm) > best_len:
                    best, best_len = q, len(prompt_norm)
        if best is not None:
            return best

        spoken_kw = _keywords(spoken)
        best_ratio = 0.0
        for q in questions:
            prompt_kw = _keywords(q.prompt)
            if not prompt_kw:
                continue
            ratio = len(prompt_kw & spoken_kw) / len(prompt_kw)
            if ratio > best_ratio:
                best, best_ratio = q, ratio
        if best is not None and best_ratio >= self.min_overlap:
            return best
        return None


class AssessmentEngine:
    def __init__(
        self,
        store: Store,
        grader: GradingClient,
        matcher: Optional[QuestionMatcher] = None,
        correctness_threshold: int = DEFAULT_CORRECTNESS_THRESHOLD,
        grading_timeout_seconds: float = 30.0,
        min_answer_chars: int = DEFAULT_MIN_ANSWER_CHARS,
    ):
        self._store = store
        self._grader = grader
        self._matcher = matcher or KeywordMatcher()
        self._threshold = correctness_threshold
        self._timeout = grading_timeout_seconds
        self._min_answer_chars = min_answer_chars

    async def _grade_one(
        self,
        exchange: Exchange,
        question: Question,
        topic: Optional[Topic],
        language: str,
        request_id: Optional[str],
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        provider = getattr(self._grader, "provider_name", "unknown")
        t0 = time.perf_counter()
        try:
            res = await asyncio.wait_for(
                self._grader.grade(
                    exchange.question,
                    question.canonical_answer,
                    exchange.answer,
                    topic=topic.name if topic else None,
                    language=language,
                    request_id=request_id,
                ),
                timeout=max(0.001, self._timeout),
            )
        except asyncio.TimeoutError:
            GRADING_CALLS_TOTAL.labels(provider=provider, outcome="timeout").inc()
            return None, "timeout"
        except Exception as e:
            GRADING_CALLS_TOTAL.labels(provider=provider, outcome="error").inc()
            return None, f"{type(e).__name__}: {e}"
        finally:
            GRADING_CALL_SECONDS.labels(provider=provider).observe(time.perf_counter() - t0)
        GRADING_CALLS_TOTAL.labels(provider=provider, outcome="success").inc()
        return res, None

    async def assess(
        self,
        session_id: str,
        employee_id: str,
        transcript: Sequence[Turn],
        question_bank: Sequence[Question],
        topics: Optional[Dict[str, Topic]] = None,
        language: str = "en",
        request_id: Optional[str] = None,
    ) -> TheoryAssessment:
        """Grade a transcript against the question bank.

        A failing grading call only drops its exchange from the summary; if
        every matched exchange fails, UpstreamUnavailable is raised.
        """
        topics = topics or {}
        exchanges = extract_exchanges(transcript, self._min_answer_chars)

        matched: List[Tuple[Exchange, Question]] = []
        for ex in exchanges:
            q = self._matcher.match(ex.question, question_bank)
            if q is None:
                log_event(logger, "assessment_exchange_unmatched", sessionId=session_id, exchange=ex.index,
                          question=ex.question[:100])
                continue
            matched.append((ex, q))

        log_event(
            logger,
            "assessment_start",
            requestId=request_id,
            sessionId=session_id,
            turns=len(transcript),
            exchanges=len(exchanges),
            matched=len(matched),
            bankSize=len(question_bank),
        )

        outcomes = await asyncio.gather(
            *(self._grade_one(ex, q, topics.get(q.topic_id), language, request_id) for ex, q in matched)
        )

        results: List[QuestionResult] = []
        ungraded: List[UngradedExchange] = []
        for (ex, q), (res, err) in zip(matched, outcomes):
            if err is not None or res is None:
                ungraded.append(UngradedExchange(index=ex.index, question_asked=ex.question, error=err or "empty"))
                continue
            score = int(res.get("score") or 0)
            score = max(0, min(100, score))
            is_correct = bool(res.get("isCorrect")) or score >= self._threshold
            results.append(QuestionResult(
                question_id=q.id,
                question_asked=ex.question,
                user_answer=ex.answer,
                canonical_answer=q.canonical_answer,
                is_correct=is_correct,
                score=score,
                feedback=str(res.get("feedback") or ""),
                topic_id=q.topic_id,
                difficulty_level=q.difficulty_level,
            ))

        if matched and not results:
            log_event(logger, "assessment_grading_unavailable", level=logging.ERROR, sessionId=session_id,
                      matched=len(matched), firstError=ungraded[0].error if ungraded else None)
            raise UpstreamUnavailable(
                "Grading service unavailable for every exchange",
                sessionId=session_id,
                ungradedCount=len(ungraded),
            )

        if ungraded:
            partial = PartialGradingFailure([u.to_json_dict() for u in ungraded])
            log_event(logger, "assessment_partial_failure", level=logging.WARNING, sessionId=session_id,
                      **partial.to_dict())

        for r in results:
            self._store.record_attempt(Attempt(
                employee_id=employee_id,
                question_id=r.question_id,
                session_id=session_id,
                is_correct=r.is_correct,
                answer_text=r.user_answer,
                score=r.score,
            ))

        total = len(results)
        correct = sum(1 for r in results if r.is_correct)
        summary = AssessmentSummary(
            total_questions=total,
            correct_answers=correct,
            incorrect_answers=total - correct,
            accuracy=mastery_percentage(correct, total),
            average_score=int(round(sum(r.score for r in results) / total)) if total else 0,
        )
        log_event(logger, "assessment_complete", sessionId=session_id, **summary.to_json_dict())
        return TheoryAssessment(
            summary=summary,
            question_results=results,
            processed_exchanges=len(exchanges),
            matched_questions=len(matched),
            ungraded_exchanges=ungraded,
        )
