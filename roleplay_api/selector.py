from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .errors import ValidationError
from .log import get_logger, log_event
from .mastery import QuestionMasteryTracker
from .models import Question, QuestionStatus, Topic
from .store import Store

logger = get_logger("roleplay.api.selector")

STRATEGY_PRIORITY = "priority-based"
STRATEGY_NO_QUESTIONS = "no-questions"
STRATEGY_FALLBACK = "fallback-basic-order"

# Unseen material first, then mistakes, then already-mastered items
PRIORITY_ORDER = (QuestionStatus.UNANSWERED, QuestionStatus.INCORRECT, QuestionStatus.CORRECT)


@dataclass(frozen=True)
class QuestionWithStatus:
    question: Question
    status: QuestionStatus
    topic: Optional[Topic] = None

    def to_dict(self) -> Dict[str, Any]:
        out = self.question.to_json_dict()
        out["status"] = self.status.value
        if self.topic is not None:
            out["topicName"] = self.topic.name
            out["topicCategory"] = self.topic.category
        return out


@dataclass(frozen=True)
class Selection:
    questions: List[QuestionWithStatus]
    strategy: str
    topics: List[Topic] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "questions": [q.to_dict() for q in self.questions],
            "topics": [t.to_json_dict() for t in self.topics],
            "totalQuestions": len(self.questions),
        }


class PriorityQuestionSelector:
    """Pure reader that orders a company's question pool by employee status."""

    def __init__(self, store: Store, tracker: Optional[QuestionMasteryTracker] = None):
        self._store = store
        self._tracker = tracker or QuestionMasteryTracker(store)

    def _pool(self, company_id: str, topic_ids: Optional[Sequence[str]]):
        topics = self._store.list_topics(company_id)
        if topic_ids:
            wanted = set(topic_ids)
            topics = [t for t in topics if t.id in wanted]
        topic_map = {t.id: t for t in topics}
        questions = self._store.list_questions(list(topic_map.keys()), active_only=True)
        return questions, topic_map

    def select(
        self,
        employee_id: Optional[str],
        company_id: str,
        limit: int,
        topic_ids: Optional[Sequence[str]] = None,
    ) -> Selection:
        if limit < 1:
            raise ValidationError("limit must be a positive integer", limit=limit)
        if not company_id:
            raise ValidationError("companyId required")

        questions, topic_map = self._pool(company_id, topic_ids)
        if not questions:
            log_event(logger, "question_selection", companyId=company_id, strategy=STRATEGY_NO_QUESTIONS)
            return Selection(questions=[], strategy=STRATEGY_NO_QUESTIONS)

        # enumerate() index keeps insertion order as the final tie-breaker
        indexed = list(enumerate(questions))

        if not employee_id:
            ordered = sorted(indexed, key=lambda iq: (iq[1].difficulty_level, iq[0]))
            chosen = [
                QuestionWithStatus(q, QuestionStatus.UNANSWERED, topic_map.get(q.topic_id))
                for _, q in ordered[:limit]
            ]
            strategy = STRATEGY_FALLBACK
        else:
            statuses = self._tracker.statuses_for(employee_id, questions)
            rank = {status: i for i, status in enumerate(PRIORITY_ORDER)}
            ordered = sorted(
                indexed,
                key=lambda iq: (rank[statuses[iq[1].id]], iq[1].difficulty_level, iq[0]),
            )
            chosen = [
                QuestionWithStatus(q, statuses[q.id], topic_map.get(q.topic_id))
                for _, q in ordered[:limit]
            ]
            strategy = STRATEGY_PRIORITY

        seen = {}
        for item in chosen:
            if item.topic is not None and item.topic.id not in seen:
                seen[item.topic.id] = item.topic

        counts = {s.value: 0 for s in QuestionStatus}
        for item in chosen:
            counts[item.status.value] += 1
        log_event(
            logger,
            "question_selection",
            employeeId=employee_id,
            companyId=company_id,
            strategy=strategy,
            poolSize=len(questions),
            selected=len(chosen),
            statusCounts=counts,
        )
        return Selection(questions=chosen, strategy=strategy, topics=list(seen.values()))
