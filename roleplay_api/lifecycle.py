"""Training session lifecycle.

    created -> linked -> transcript_fetched -> assessed{completed|failed}
                       (ungraded modes) -> recorded

Every step is an idempotent upsert keyed by the client-generated session
id, so steps for one session are ordered by the caller awaiting them in
sequence; different sessions never share state beyond the store.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from prometheus_client import Counter, Histogram

from .assessment import AssessmentEngine
from .errors import AnalysisRequired, Conflict, DuplicateKeyError, NotFound, UpstreamUnavailable, ValidationError
from .log import get_logger, log_event
from .models import (
    AssessmentStatus,
    CreateSessionRequest,
    FailedAssessment,
    SessionState,
    TrainingMode,
    TrainingSession,
    UngradedRecording,
    utcnow,
)
from .providers.base import ConversationProvider
from .retry import FetchError
from .store import Store
from .transcript import call_duration, normalize, span_seconds

logger = get_logger("roleplay.api.lifecycle")

SESSIONS_CREATED_TOTAL = Counter(
    "roleplay_sessions_created_total",
    "Session create requests by mode and outcome",
    ["mode", "outcome"],
)
GATE_BLOCKS_TOTAL = Counter(
    "roleplay_session_gate_blocks_total",
    "Theory sessions refused because a previous session is not analyzed",
)
TRANSCRIPT_FETCH_TOTAL = Counter(
    "roleplay_transcript_fetch_total",
    "Provider transcript fetches by outcome",
    ["outcome"],
)
ASSESS_JOBS_TOTAL = Counter(
    "roleplay_assessment_jobs_total",
    "Assessment requests by outcome",
    ["status"],
)
ASSESS_JOB_SECONDS = Histogram(
    "roleplay_assessment_job_seconds",
    "Duration of assessment runs in seconds",
)

# Modes whose sessions are knowledge-graded
GRADED_MODES = frozenset({TrainingMode.THEORY})


@dataclass(frozen=True)
class AssessOutcome:
    session: TrainingSession
    from_cache: bool

    def to_dict(self) -> dict:
        s = self.session
        return {
            "sessionId": s.id,
            "assessmentStatus": s.assessment_status.value,
            "state": s.state.value,
            "fromCache": self.from_cache,
            "assessment": s.to_json_dict()["assessmentResult"],
        }


class SessionLifecycleController:
    def __init__(
        self,
        store: Store,
        provider: ConversationProvider,
        engine: AssessmentEngine,
        pipeline_timeout_seconds: float = 300.0,
    ):
        self._store = store
        self._provider = provider
        self._engine = engine
        self._pipeline_timeout = pipeline_timeout_seconds

    # ----- lookups -----
    def get_session(self, session_id: str) -> TrainingSession:
        session = self._store.get_session(session_id)
        if session is None:
            raise NotFound("Session not found", sessionId=session_id)
        return session

    def get_assessment(self, session_id: str) -> AssessOutcome:
        return AssessOutcome(session=self.get_session(session_id), from_cache=True)

    def list_unanalyzed(self, company_id: str) -> List[TrainingSession]:
        """Graded-mode sessions with conversation content still awaiting analysis."""
        if not company_id:
            raise ValidationError("companyId required")
        out = []
        for mode in GRADED_MODES:
            for s in self._store.list_sessions(company_id=company_id, mode=mode):
                if s.assessment_status is AssessmentStatus.COMPLETED:
                    continue
                if s.transcript or s.external_conversation_ref:
                    out.append(s)
        out.sort(key=lambda s: s.started_at)
        return out

    # ----- created -----
    def create_session(self, request: CreateSessionRequest) -> Tuple[TrainingSession, bool]:
        """Record a session start. Returns (session, created).

        A repeated id returns the stored record with created=False.
        """
        existing = self._store.get_session(request.id)
        if existing is not None:
            SESSIONS_CREATED_TOTAL.labels(mode=request.training_mode.value, outcome="duplicate").inc()
            log_event(logger, "session_create_duplicate", sessionId=request.id)
            return existing, False

        if request.training_mode is TrainingMode.THEORY and request.scenario_id:
            self._check_start_gate(request)

        session = TrainingSession(
            id=request.id,
            employee_id=request.employee_id,
            company_id=request.company_id,
            assignment_id=request.assignment_id,
            scenario_id=request.scenario_id,
            training_mode=request.training_mode,
            language=request.language or "en",
        )
        try:
            self._store.insert_session(session)
        except DuplicateKeyError:
            # Lost a concurrent create race; the other writer's record stands
            SESSIONS_CREATED_TOTAL.labels(mode=request.training_mode.value, outcome="duplicate").inc()
            log_event(logger, "session_create_race", sessionId=request.id)
            return self.get_session(request.id), False

        SESSIONS_CREATED_TOTAL.labels(mode=request.training_mode.value, outcome="created").inc()
        log_event(
            logger,
            "session_created",
            sessionId=session.id,
            employeeId=session.employee_id,
            scenarioId=session.scenario_id,
            trainingMode=session.training_mode.value,
        )
        return session, True

    def _check_start_gate(self, request: CreateSessionRequest) -> None:
        previous = self._store.latest_session(
            request.employee_id, request.scenario_id, TrainingMode.THEORY, exclude_id=request.id
        )
        if previous is None or previous.assessment_status is AssessmentStatus.COMPLETED:
            return
        GATE_BLOCKS_TOTAL.inc()
        log_event(
            logger,
            "session_gate_blocked",
            level=logging.WARNING,
            employeeId=request.employee_id,
            scenarioId=request.scenario_id,
            blockingSessionId=previous.id,
            blockingStatus=previous.assessment_status.value,
        )
        raise AnalysisRequired(previous.id, previous.assessment_status.value)

    # ----- transcript -----
    def save_transcript(
        self,
        session_id: str,
        transcript: Any,
        duration_seconds: Optional[int] = None,
        ended_at: Optional[datetime] = None,
    ) -> TrainingSession:
        """Store a client-captured transcript for a session still in progress."""
        session = self.get_session(session_id)
        if session.assessment_status is AssessmentStatus.COMPLETED:
            raise Conflict("Transcript cannot change after assessment", sessionId=session_id)
        turns = normalize(transcript)
        if len(turns) < len(session.transcript):
            raise Conflict(
                "Submitted transcript is shorter than the stored one",
                sessionId=session_id,
                storedTurns=len(session.transcript),
                submittedTurns=len(turns),
            )
        session.transcript = turns
        if duration_seconds is not None and duration_seconds >= 0:
            session.duration_seconds = int(duration_seconds)
        else:
            session.duration_seconds = span_seconds(turns) or session.duration_seconds
        session.ended_at = ended_at or utcnow()
        if session.state in (SessionState.CREATED, SessionState.LINKED):
            session.state = SessionState.TRANSCRIPT_FETCHED
        self._store.save_session(session)
        log_event(logger, "transcript_saved", sessionId=session_id, turns=len(turns),
                  durationSeconds=session.duration_seconds)
        return session

    # ----- linked -> transcript_fetched -----
    async def link_conversation(self, session_id: str, conversation_ref: str) -> TrainingSession:
        if not conversation_ref:
            raise ValidationError("conversationId required")
        session = self.get_session(session_id)
        if session.external_conversation_ref and session.external_conversation_ref != conversation_ref:
            raise Conflict(
                "Session is already linked to another conversation",
                sessionId=session_id,
                conversationId=session.external_conversation_ref,
            )
        if session.assessment_status is AssessmentStatus.COMPLETED:
            return session
        if session.external_conversation_ref != conversation_ref:
            session.external_conversation_ref = conversation_ref
            if session.state is SessionState.CREATED:
                session.state = SessionState.LINKED
            self._store.save_session(session)
            log_event(logger, "session_linked", sessionId=session_id, conversationId=conversation_ref)
        return await self._fetch_transcript(session)

    async def _fetch_transcript(self, session: TrainingSession) -> TrainingSession:
        ref = session.external_conversation_ref
        try:
            metadata, payload = await asyncio.wait_for(
                self._provider.fetch_conversation(ref), timeout=self._pipeline_timeout
            )
        except FetchError as e:
            TRANSCRIPT_FETCH_TOTAL.labels(outcome="not_ready" if e.not_ready else "error").inc()
            log_event(logger, "transcript_fetch_failed", level=logging.WARNING, sessionId=session.id,
                      conversationId=ref, attempts=e.attempts, lastStatus=e.last_status)
            raise UpstreamUnavailable(
                "Conversation transcript not available yet. Please try again in a few minutes.",
                sessionId=session.id,
                attempts=e.attempts,
                lastStatus=e.last_status,
                providerError=e.body[:500] if e.body else None,
            ) from e
        except asyncio.TimeoutError as e:
            TRANSCRIPT_FETCH_TOTAL.labels(outcome="timeout").inc()
            raise UpstreamUnavailable("Conversation fetch timed out", sessionId=session.id) from e

        turns = normalize(payload)
        if len(turns) >= len(session.transcript):
            session.transcript = turns
        else:
            log_event(logger, "transcript_fetch_shorter_kept_existing", sessionId=session.id,
                      storedTurns=len(session.transcript), fetchedTurns=len(turns))

        # Duration: provider call duration, else turn span, else what was recorded
        duration = call_duration(metadata) or call_duration(payload) or span_seconds(session.transcript)
        if duration:
            session.duration_seconds = duration
        session.state = SessionState.TRANSCRIPT_FETCHED
        self._store.save_session(session)
        TRANSCRIPT_FETCH_TOTAL.labels(outcome="success").inc()
        log_event(logger, "transcript_fetched", sessionId=session.id, conversationId=ref,
                  turns=len(session.transcript), durationSeconds=session.duration_seconds)
        return session

    # ----- transcript_fetched -> assessed -----
    async def assess(
        self,
        session_id: str,
        force: bool = False,
        transcript: Any = None,
        topic_ids: Optional[Sequence[str]] = None,
        request_id: Optional[str] = None,
    ) -> AssessOutcome:
        session = self.get_session(session_id)
        if session.assessment_status is AssessmentStatus.COMPLETED and not force:
            ASSESS_JOBS_TOTAL.labels(status="cache_hit").inc()
            log_event(logger, "assessment_cache_hit", requestId=request_id, sessionId=session_id)
            return AssessOutcome(session=session, from_cache=True)

        if transcript is not None:
            turns = normalize(transcript)
            if len(turns) >= len(session.transcript):
                session.transcript = turns

        if session.training_mode not in GRADED_MODES:
            session.assessment_result = UngradedRecording()
            session.assessment_status = AssessmentStatus.COMPLETED
            session.assessment_completed_at = utcnow()
            session.state = SessionState.RECORDED
            self._store.save_session(session)
            ASSESS_JOBS_TOTAL.labels(status="recorded").inc()
            log_event(logger, "session_recorded_ungraded", sessionId=session_id,
                      trainingMode=session.training_mode.value)
            return AssessOutcome(session=session, from_cache=False)

        if not session.transcript and session.external_conversation_ref:
            session = await self._fetch_transcript(session)
        if not session.transcript:
            # Nothing to grade yet; status stays as it was so a later transcript can still land
            ASSESS_JOBS_TOTAL.labels(status="no_transcript").inc()
            raise ValidationError("No transcript found for this session", sessionId=session_id)

        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._run_engine(session, topic_ids, request_id), timeout=self._pipeline_timeout
            )
        except (UpstreamUnavailable, asyncio.TimeoutError) as e:
            reason = e.message if isinstance(e, UpstreamUnavailable) else "assessment timed out"
            ASSESS_JOBS_TOTAL.labels(status="failed").inc()
            if session.assessment_status is AssessmentStatus.COMPLETED:
                # Forced re-run: the stored completed result stands
                log_event(logger, "assessment_rerun_failed", level=logging.ERROR, requestId=request_id,
                          sessionId=session_id, error=reason)
                raise UpstreamUnavailable(reason, sessionId=session_id, assessmentStatus="completed") from e
            session.assessment_result = FailedAssessment(error=reason)
            session.assessment_status = AssessmentStatus.FAILED
            session.state = SessionState.ASSESSED
            self._store.save_session(session)
            log_event(logger, "assessment_failed", level=logging.ERROR, requestId=request_id,
                      sessionId=session_id, error=reason)
            raise UpstreamUnavailable(reason, sessionId=session_id, assessmentStatus="failed") from e
        finally:
            ASSESS_JOB_SECONDS.observe(time.perf_counter() - t0)

        session.assessment_result = result
        session.assessment_status = AssessmentStatus.COMPLETED
        session.assessment_completed_at = utcnow()
        session.state = SessionState.ASSESSED
        self._store.save_session(session)
        ASSESS_JOBS_TOTAL.labels(status="completed").inc()
        return AssessOutcome(session=session, from_cache=False)

    async def _run_engine(self, session: TrainingSession, topic_ids, request_id):
        topics = self._store.list_topics(session.company_id)
        if topic_ids:
            wanted = set(topic_ids)
            topics = [t for t in topics if t.id in wanted]
        topic_map = {t.id: t for t in topics}
        bank = self._store.list_questions(list(topic_map.keys()), active_only=True)
        return await self._engine.assess(
            session.id,
            session.employee_id,
            session.transcript,
            bank,
            topics=topic_map,
            language=session.language,
            request_id=request_id,
        )
