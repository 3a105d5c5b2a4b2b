import sys
import os
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import roleplay_api.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Default: deterministic providers and an in-memory store unless a test opts in
os.environ.setdefault("AI_PROVIDER_GRADING", "mock")
os.environ.setdefault("CONVERSATION_PROVIDER", "mock")
os.environ.setdefault("STORE_BACKEND", "memory")

from roleplay_api.models import Question, Topic  # noqa: E402
from roleplay_api.store import InMemoryStore  # noqa: E402

COMPANY = "company-1"

STORE_HOURS_Q = "What are our store hours?"
RETURNS_Q = "What is the return policy?"
SPILL_Q = "Who do you call for a spill?"


def seed_knowledge(store, company_id: str = COMPANY):
    """One topic with three questions of rising difficulty."""
    store.upsert_topic(Topic(id="t-ops", company_id=company_id, name="Store Operations", category="operations"))
    store.upsert_question(Question(
        id="q-hours", topic_id="t-ops", prompt=STORE_HOURS_Q,
        canonical_answer="9am-5pm, Mon-Fri", difficulty_level=1,
    ))
    store.upsert_question(Question(
        id="q-returns", topic_id="t-ops", prompt=RETURNS_Q,
        canonical_answer="30 days with receipt", difficulty_level=2,
    ))
    store.upsert_question(Question(
        id="q-spill", topic_id="t-ops", prompt=SPILL_Q,
        canonical_answer="The floor manager", difficulty_level=3,
    ))
    return store


def qa_transcript(*pairs):
    """Provider-shaped transcript payload from (question, answer) pairs."""
    entries = []
    t = 0.0
    for q, a in pairs:
        entries.append({"role": "agent", "message": q, "time_in_call_secs": t})
        entries.append({"role": "user", "message": a, "time_in_call_secs": t + 4})
        t += 10
    return {"transcript": entries}


@pytest.fixture
def store():
    return seed_knowledge(InMemoryStore())
