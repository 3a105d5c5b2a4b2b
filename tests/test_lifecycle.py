import pytest

from roleplay_api.assessment import AssessmentEngine
from roleplay_api.errors import AnalysisRequired, Conflict, NotFound, UpstreamUnavailable, ValidationError
from roleplay_api.lifecycle import SessionLifecycleController
from roleplay_api.models import (
    AssessmentStatus,
    CreateSessionRequest,
    SessionState,
    TrainingMode,
)
from roleplay_api.providers.base import ConversationProvider
from roleplay_api.providers.mock import MockConversationProvider, MockGradingClient
from roleplay_api.retry import FetchError
from roleplay_api.store import InMemoryStore

from conftest import COMPANY, SPILL_Q, STORE_HOURS_Q, qa_transcript, seed_knowledge


class CountingGrader(MockGradingClient):
    def __init__(self, fail=False):
        super().__init__()
        self.calls = 0
        self.fail = fail

    async def grade(self, *args, **kwargs):
        self.calls += 1
        if self.fail:
            raise RuntimeError("grader down")
        return await super().grade(*args, **kwargs)


class NotReadyProvider(ConversationProvider):
    async def get_conversation(self, ref):
        raise FetchError(5, 404, "conversation not found", "retries exhausted")

    async def get_transcript(self, ref):
        raise AssertionError("not reached")


def _controller(store=None, provider=None, grader=None):
    store = store or seed_knowledge(InMemoryStore())
    grader = grader or CountingGrader()
    provider = provider or MockConversationProvider()
    return SessionLifecycleController(store, provider, AssessmentEngine(store, grader)), store, provider, grader


def _req(sid, mode=TrainingMode.THEORY, scenario="scn-1", employee="emp-1"):
    return CreateSessionRequest(
        id=sid, employee_id=employee, company_id=COMPANY, training_mode=mode, scenario_id=scenario
    )


def test_create_is_idempotent():
    ctl, store, _, _ = _controller()
    first, created = ctl.create_session(_req("s-1"))
    again, created_again = ctl.create_session(_req("s-1"))
    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.started_at == first.started_at
    assert len(store.list_sessions(company_id=COMPANY)) == 1


def test_create_treats_store_duplicate_as_existing(monkeypatch):
    ctl, store, _, _ = _controller()
    ctl.create_session(_req("s-1"))
    real_get = store.get_session
    calls = {"n": 0}

    def racing_get(session_id):
        # Pre-check misses as if a concurrent writer had not committed yet
        calls["n"] += 1
        return None if calls["n"] == 1 else real_get(session_id)

    monkeypatch.setattr(store, "get_session", racing_get)
    session, created = ctl.create_session(_req("s-1"))
    assert created is False
    assert session.id == "s-1"


@pytest.mark.asyncio
async def test_gate_blocks_until_previous_theory_session_is_completed():
    ctl, _, _, _ = _controller()
    ctl.create_session(_req("s-1"))

    with pytest.raises(AnalysisRequired) as ei:
        ctl.create_session(_req("s-2"))
    assert ei.value.blocking_session_id == "s-1"
    assert ei.value.status_code == 423
    assert ei.value.to_dict()["blockingSessionId"] == "s-1"

    # Other scenarios, other employees and other modes are not gated
    assert ctl.create_session(_req("s-3", scenario="scn-2"))[1] is True
    assert ctl.create_session(_req("s-4", employee="emp-2"))[1] is True
    assert ctl.create_session(_req("s-5", mode=TrainingMode.SERVICE_PRACTICE))[1] is True

    ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5 Monday to Friday")))
    await ctl.assess("s-1")
    assert ctl.create_session(_req("s-2"))[1] is True


@pytest.mark.asyncio
async def test_link_fetches_transcript_and_reconciles_duration():
    provider = MockConversationProvider()
    payload = qa_transcript((STORE_HOURS_Q, "9 to 5 Monday to Friday"))
    payload["metadata"] = {"call_duration_secs": 61}
    provider.add("conv-1", payload)
    ctl, _, _, _ = _controller(provider=provider)
    ctl.create_session(_req("s-1"))

    session = await ctl.link_conversation("s-1", "conv-1")

    assert session.state is SessionState.TRANSCRIPT_FETCHED
    assert session.external_conversation_ref == "conv-1"
    assert len(session.transcript) == 2
    assert session.duration_seconds == 61


@pytest.mark.asyncio
async def test_link_falls_back_to_turn_span_for_duration():
    provider = MockConversationProvider()
    provider.add("conv-1", qa_transcript((STORE_HOURS_Q, "9 to 5"), (SPILL_Q, "The floor manager")))
    ctl, _, _, _ = _controller(provider=provider)
    ctl.create_session(_req("s-1"))

    session = await ctl.link_conversation("s-1", "conv-1")
    # Offsets 0s .. 14s
    assert session.duration_seconds == 14


@pytest.mark.asyncio
async def test_link_not_ready_leaves_session_linked():
    ctl, _, _, _ = _controller(provider=NotReadyProvider())
    ctl.create_session(_req("s-1"))

    with pytest.raises(UpstreamUnavailable) as ei:
        await ctl.link_conversation("s-1", "conv-1")
    assert ei.value.retryable is True
    assert ei.value.details["lastStatus"] == 404

    session = ctl.get_session("s-1")
    assert session.state is SessionState.LINKED
    assert session.assessment_status is AssessmentStatus.PENDING


@pytest.mark.asyncio
async def test_link_to_a_different_conversation_conflicts():
    provider = MockConversationProvider()
    ctl, _, _, _ = _controller(provider=provider)
    ctl.create_session(_req("s-1"))
    await ctl.link_conversation("s-1", "conv-1")
    with pytest.raises(Conflict):
        await ctl.link_conversation("s-1", "conv-2")


@pytest.mark.asyncio
async def test_assess_caches_completed_result():
    ctl, _, _, grader = _controller()
    ctl.create_session(_req("s-1"))
    ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5 Monday to Friday")))

    first = await ctl.assess("s-1")
    second = await ctl.assess("s-1")

    assert first.from_cache is False
    assert second.from_cache is True
    assert grader.calls == 1
    assert second.to_dict()["assessment"] == first.to_dict()["assessment"]
    assert first.to_dict()["assessment"]["summary"]["accuracy"] == 100

    forced = await ctl.assess("s-1", force=True)
    assert forced.from_cache is False
    assert grader.calls == 2


@pytest.mark.asyncio
async def test_assess_fetches_transcript_for_linked_session():
    provider = MockConversationProvider()
    ctl, _, _, _ = _controller(provider=provider)
    ctl.create_session(_req("s-1"))
    await ctl.link_conversation("s-1", "conv-late")
    # Provider finishes processing after the first link attempt
    provider.add("conv-late", qa_transcript((SPILL_Q, "The floor manager")))

    outcome = await ctl.assess("s-1")

    assert outcome.session.state is SessionState.ASSESSED
    assert outcome.session.assessment_result.summary.correct_answers == 1


@pytest.mark.asyncio
async def test_assess_non_theory_mode_is_recorded_ungraded():
    ctl, _, _, grader = _controller()
    ctl.create_session(_req("s-1", mode=TrainingMode.SERVICE_PRACTICE))
    ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5")))

    outcome = await ctl.assess("s-1")

    assert outcome.session.state is SessionState.RECORDED
    assert outcome.session.assessment_result.kind == "ungraded"
    assert grader.calls == 0


@pytest.mark.asyncio
async def test_grading_outage_marks_session_failed_and_keeps_it_resumable():
    store = seed_knowledge(InMemoryStore())
    grader = CountingGrader(fail=True)
    ctl, _, _, _ = _controller(store=store, grader=grader)
    ctl.create_session(_req("s-1"))
    ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5 Monday to Friday")))

    with pytest.raises(UpstreamUnavailable):
        await ctl.assess("s-1")

    session = ctl.get_session("s-1")
    assert session.assessment_status is AssessmentStatus.FAILED
    assert session.assessment_result.kind == "failed"
    assert [s.id for s in ctl.list_unanalyzed(COMPANY)] == ["s-1"]

    grader.fail = False
    outcome = await ctl.assess("s-1")
    assert outcome.session.assessment_status is AssessmentStatus.COMPLETED
    assert ctl.list_unanalyzed(COMPANY) == []


def test_save_transcript_never_shrinks():
    ctl, _, _, _ = _controller()
    ctl.create_session(_req("s-1"))
    ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5"), (SPILL_Q, "The floor manager")))
    with pytest.raises(Conflict):
        ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5")))
    assert len(ctl.get_session("s-1").transcript) == 4


def test_unknown_session_is_not_found():
    ctl, _, _, _ = _controller()
    with pytest.raises(NotFound):
        ctl.get_session("missing")


@pytest.mark.asyncio
async def test_assess_without_transcript_leaves_session_open():
    ctl, _, _, grader = _controller()
    ctl.create_session(_req("s-1"))

    with pytest.raises(ValidationError) as ei:
        await ctl.assess("s-1")
    assert ei.value.message == "No transcript found for this session"
    assert grader.calls == 0

    session = ctl.get_session("s-1")
    assert session.assessment_status is AssessmentStatus.PENDING
    assert session.assessment_result is None
    with pytest.raises(AnalysisRequired):
        ctl.create_session(_req("s-2"))

    # A transcript arriving afterwards is still accepted and graded
    ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5 Monday to Friday")))
    outcome = await ctl.assess("s-1")
    assert outcome.session.assessment_status is AssessmentStatus.COMPLETED
    assert outcome.session.assessment_result.summary.total_questions == 1


@pytest.mark.asyncio
async def test_linked_conversation_still_empty_is_rejected():
    ctl, _, _, _ = _controller()
    ctl.create_session(_req("s-1"))
    await ctl.link_conversation("s-1", "conv-empty")

    with pytest.raises(ValidationError):
        await ctl.assess("s-1")
    assert ctl.get_session("s-1").assessment_status is AssessmentStatus.PENDING


@pytest.mark.asyncio
async def test_transcript_without_exchanges_completes_with_zero_summary():
    ctl, _, _, grader = _controller()
    ctl.create_session(_req("s-1"))
    ctl.save_transcript("s-1", [{"role": "agent", "message": "Hello and welcome!"}])

    outcome = await ctl.assess("s-1")

    assert outcome.session.assessment_status is AssessmentStatus.COMPLETED
    assert outcome.session.assessment_result.summary.total_questions == 0
    assert grader.calls == 0


@pytest.mark.asyncio
async def test_forced_rerun_during_outage_keeps_completed_result():
    grader = CountingGrader()
    ctl, _, _, _ = _controller(grader=grader)
    ctl.create_session(_req("s-1"))
    ctl.save_transcript("s-1", qa_transcript((STORE_HOURS_Q, "9 to 5 Monday to Friday")))
    first = await ctl.assess("s-1")

    grader.fail = True
    with pytest.raises(UpstreamUnavailable) as ei:
        await ctl.assess("s-1", force=True)
    assert ei.value.details["assessmentStatus"] == "completed"

    session = ctl.get_session("s-1")
    assert session.assessment_status is AssessmentStatus.COMPLETED
    assert session.to_json_dict()["assessmentResult"] == first.to_dict()["assessment"]
    assert ctl.create_session(_req("s-2"))[1] is True
