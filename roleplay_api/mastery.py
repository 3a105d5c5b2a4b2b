from typing import Any, Dict, Iterable, List, Optional

from .models import Attempt, Question, QuestionStatus
from .store import Store


def status_from_attempt(attempt: Optional[Attempt]) -> QuestionStatus:
    if attempt is None:
        return QuestionStatus.UNANSWERED
    return QuestionStatus.CORRECT if attempt.is_correct else QuestionStatus.INCORRECT


def mastery_percentage(correct: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(round(correct / total * 100))


class QuestionMasteryTracker:
    """Read-only view of per-employee question status and topic mastery.

    Status always comes from the latest Attempt; mastery is recomputed on
    every read and never stored.
    """

    def __init__(self, store: Store):
        self._store = store

    def status_for(self, employee_id: str, question_id: str) -> QuestionStatus:
        attempts = self._store.latest_attempts(employee_id)
        return status_from_attempt(attempts.get(question_id))

    def statuses_for(self, employee_id: str, questions: Iterable[Question]) -> Dict[str, QuestionStatus]:
        attempts = self._store.latest_attempts(employee_id)
        return {q.id: status_from_attempt(attempts.get(q.id)) for q in questions}

    def mastery_of(self, employee_id: str, topic_id: str) -> int:
        questions = self._store.list_questions([topic_id])
        statuses = self.statuses_for(employee_id, questions)
        correct = sum(1 for s in statuses.values() if s is QuestionStatus.CORRECT)
        return mastery_percentage(correct, len(questions))

    def topic_summaries(self, employee_id: str, company_id: str) -> List[Dict[str, Any]]:
        """Per-topic status counts and mastery for a company's knowledge base."""
        topics = self._store.list_topics(company_id)
        attempts = self._store.latest_attempts(employee_id)
        out: List[Dict[str, Any]] = []
        for topic in topics:
            questions = self._store.list_questions([topic.id])
            counts = {s.value: 0 for s in QuestionStatus}
            for q in questions:
                counts[status_from_attempt(attempts.get(q.id)).value] += 1
            out.append({
                "topicId": topic.id,
                "topicName": topic.name,
                "category": topic.category,
                "totalQuestions": len(questions),
                **counts,
                "masteryPercentage": mastery_percentage(counts["correct"], len(questions)),
            })
        return out
