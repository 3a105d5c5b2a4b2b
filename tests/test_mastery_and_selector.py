from datetime import timedelta

import pytest

from roleplay_api.errors import ValidationError
from roleplay_api.mastery import QuestionMasteryTracker, mastery_percentage
from roleplay_api.models import Attempt, Question, QuestionStatus, Topic, utcnow
from roleplay_api.selector import (
    STRATEGY_FALLBACK,
    STRATEGY_NO_QUESTIONS,
    STRATEGY_PRIORITY,
    PriorityQuestionSelector,
)
from roleplay_api.store import InMemoryStore

from conftest import COMPANY, seed_knowledge


def _attempt(qid, ok, employee="emp-1", at=None):
    return Attempt(employee_id=employee, question_id=qid, is_correct=ok, graded_at=at or utcnow())


def test_mastery_percentage_rounds_and_handles_empty():
    assert mastery_percentage(0, 0) == 0
    assert mastery_percentage(2, 3) == 67
    assert mastery_percentage(3, 3) == 100


def test_status_follows_latest_attempt(store):
    tracker = QuestionMasteryTracker(store)
    assert tracker.status_for("emp-1", "q-hours") is QuestionStatus.UNANSWERED

    t0 = utcnow()
    store.record_attempt(_attempt("q-hours", False, at=t0))
    assert tracker.status_for("emp-1", "q-hours") is QuestionStatus.INCORRECT

    store.record_attempt(_attempt("q-hours", True, at=t0 + timedelta(seconds=5)))
    assert tracker.status_for("emp-1", "q-hours") is QuestionStatus.CORRECT

    # An older attempt arriving late never supersedes a newer one
    store.record_attempt(_attempt("q-hours", False, at=t0 - timedelta(seconds=5)))
    assert tracker.status_for("emp-1", "q-hours") is QuestionStatus.CORRECT


def test_topic_summaries(store):
    store.record_attempt(_attempt("q-hours", True))
    store.record_attempt(_attempt("q-returns", False))
    [summary] = QuestionMasteryTracker(store).topic_summaries("emp-1", COMPANY)
    assert summary["topicId"] == "t-ops"
    assert summary["totalQuestions"] == 3
    assert (summary["unanswered"], summary["incorrect"], summary["correct"]) == (1, 1, 1)
    assert summary["masteryPercentage"] == 33


def test_priority_order_unanswered_then_incorrect_then_correct(store):
    store.record_attempt(_attempt("q-hours", True))
    store.record_attempt(_attempt("q-returns", False))

    sel = PriorityQuestionSelector(store).select("emp-1", COMPANY, limit=10)

    assert sel.strategy == STRATEGY_PRIORITY
    assert [q.question.id for q in sel.questions] == ["q-spill", "q-returns", "q-hours"]
    assert [q.status for q in sel.questions] == [
        QuestionStatus.UNANSWERED,
        QuestionStatus.INCORRECT,
        QuestionStatus.CORRECT,
    ]
    assert [t.id for t in sel.topics] == ["t-ops"]


def test_select_is_deterministic_and_limited(store):
    selector = PriorityQuestionSelector(store)
    first = selector.select("emp-1", COMPANY, limit=2).to_dict()
    second = selector.select("emp-1", COMPANY, limit=2).to_dict()
    assert first == second
    assert [q["id"] for q in first["questions"]] == ["q-hours", "q-returns"]
    assert first["totalQuestions"] == 2


def test_ties_keep_insertion_order():
    store = InMemoryStore()
    store.upsert_topic(Topic(id="t", company_id=COMPANY, name="T"))
    for qid in ("b", "a", "c"):
        store.upsert_question(Question(id=qid, topic_id="t", prompt=qid, canonical_answer=qid, difficulty_level=2))
    sel = PriorityQuestionSelector(store).select("emp-1", COMPANY, limit=3)
    assert [q.question.id for q in sel.questions] == ["b", "a", "c"]


def test_topic_filter_and_inactive_questions(store):
    store.upsert_topic(Topic(id="t-other", company_id=COMPANY, name="Other"))
    store.upsert_question(Question(id="q-x", topic_id="t-other", prompt="x", canonical_answer="x"))
    store.upsert_question(Question(id="q-off", topic_id="t-other", prompt="y", canonical_answer="y", is_active=False))

    sel = PriorityQuestionSelector(store).select("emp-1", COMPANY, limit=10, topic_ids=["t-other"])
    assert [q.question.id for q in sel.questions] == ["q-x"]


def test_no_questions_strategy():
    sel = PriorityQuestionSelector(InMemoryStore()).select("emp-1", COMPANY, limit=5)
    assert sel.strategy == STRATEGY_NO_QUESTIONS
    assert sel.questions == []


def test_fallback_without_employee_orders_by_difficulty(store):
    store.record_attempt(_attempt("q-hours", True))
    sel = PriorityQuestionSelector(store).select(None, COMPANY, limit=10)
    assert sel.strategy == STRATEGY_FALLBACK
    assert [q.question.id for q in sel.questions] == ["q-hours", "q-returns", "q-spill"]
    assert all(q.status is QuestionStatus.UNANSWERED for q in sel.questions)


@pytest.mark.parametrize("limit, company", [(0, COMPANY), (-1, COMPANY), (5, "")])
def test_select_rejects_bad_arguments(limit, company):
    with pytest.raises(ValidationError):
        PriorityQuestionSelector(seed_knowledge(InMemoryStore())).select("emp-1", company, limit=limit)
