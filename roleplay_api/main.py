from fastapi import APIRouter, Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, Response
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional
import json
import logging
import os
import time

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import Field

from roleplay_api.assessment import AssessmentEngine
from roleplay_api.config import Settings, _env_bool, _env_str
from roleplay_api.errors import TrainingError, ValidationError
from roleplay_api.lifecycle import SessionLifecycleController
from roleplay_api.log import get_logger, log_event
from roleplay_api.mastery import QuestionMasteryTracker
from roleplay_api.middleware.request_id import RequestIdMiddleware
from roleplay_api.models import CreateSessionRequest, Question, Topic, _Model
from roleplay_api.providers.base import ConversationProvider, GradingClient
from roleplay_api.providers.factory import get_conversation_provider, get_grading_client
from roleplay_api.retry import RetryPolicy
from roleplay_api.selector import PriorityQuestionSelector
from roleplay_api.store import Store, build_store

logger = get_logger("roleplay.api.http")

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "roleplay_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "roleplay_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)


@dataclass
class Services:
    """Everything a request handler needs, wired once per app."""

    settings: Settings
    store: Store
    provider: ConversationProvider
    grader: GradingClient
    engine: AssessmentEngine
    controller: SessionLifecycleController
    tracker: QuestionMasteryTracker
    selector: PriorityQuestionSelector

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
        provider: Optional[ConversationProvider] = None,
        grader: Optional[GradingClient] = None,
    ) -> "Services":
        settings = settings or Settings.from_env()
        if store is None:
            store = build_store(settings.store_backend, settings.sqlite_path)
        if provider is None:
            policy = RetryPolicy(
                max_attempts=settings.fetch_max_attempts,
                base_delay=settings.fetch_base_delay_seconds,
                max_auth_retries=settings.fetch_max_auth_retries,
            )
            provider = get_conversation_provider(policy=policy)
        if grader is None:
            grader = get_grading_client()
        engine = AssessmentEngine(
            store,
            grader,
            correctness_threshold=settings.correctness_threshold,
            grading_timeout_seconds=settings.grading_timeout_seconds,
            min_answer_chars=settings.min_answer_chars,
        )
        controller = SessionLifecycleController(
            store, provider, engine, pipeline_timeout_seconds=settings.pipeline_timeout_seconds
        )
        tracker = QuestionMasteryTracker(store)
        return cls(
            settings=settings,
            store=store,
            provider=provider,
            grader=grader,
            engine=engine,
            controller=controller,
            tracker=tracker,
            selector=PriorityQuestionSelector(store, tracker),
        )


# ----- request bodies -----
class TranscriptBody(_Model):
    transcript: Any = Field(default_factory=list)
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    ended_at: Optional[datetime] = None


class LinkBody(_Model):
    conversation_id: str = Field(min_length=1)


class AssessBody(_Model):
    force: bool = False
    transcript: Any = None
    topic_ids: Optional[List[str]] = None


router = APIRouter()


def _services(request: Request) -> Services:
    return request.app.state.services  # type: ignore[attr-defined]


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _split_ids(values: Optional[List[str]]) -> Optional[List[str]]:
    # Accept both ?topicIds=a&topicIds=b and ?topicIds=a,b
    if not values:
        return None
    out = [v.strip() for raw in values for v in raw.split(",") if v.strip()]
    return out or None


@router.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok"}


@router.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post(
    "/sessions",
    tags=["sessions"],
    description="Record the start of a training session. Repeating an id returns the stored record.",
)
async def create_session(request: Request, body: CreateSessionRequest):
    session, created = _services(request).controller.create_session(body)
    return JSONResponse(
        {"created": created, "session": session.to_json_dict()},
        status_code=201 if created else 200,
    )


# Declared before /sessions/{session_id} so the literal path wins
@router.get(
    "/sessions/unanalyzed",
    tags=["sessions"],
    description="Theory sessions of a company that still await analysis.",
)
async def list_unanalyzed(request: Request, companyId: str = Query("", description="Company ID")):
    sessions = _services(request).controller.list_unanalyzed(companyId.strip())
    return {"sessions": [s.to_json_dict() for s in sessions], "count": len(sessions)}


@router.get("/sessions/{session_id}", tags=["sessions"], description="Fetch one session.")
async def get_session(request: Request, session_id: str):
    return _services(request).controller.get_session(session_id).to_json_dict()


@router.post(
    "/sessions/{session_id}/transcript",
    tags=["sessions"],
    description="Store a client-captured transcript with duration and end time.",
)
async def save_transcript(request: Request, session_id: str, body: TranscriptBody):
    session = _services(request).controller.save_transcript(
        session_id, body.transcript, duration_seconds=body.duration_seconds, ended_at=body.ended_at
    )
    return session.to_json_dict()


@router.post(
    "/sessions/{session_id}/link",
    tags=["sessions"],
    description="Link a provider conversation and fetch its transcript (retried while the provider is processing).",
)
async def link_conversation(request: Request, session_id: str, body: LinkBody):
    session = await _services(request).controller.link_conversation(session_id, body.conversation_id)
    return session.to_json_dict()


@router.post(
    "/sessions/{session_id}/assess",
    tags=["assessments"],
    description="Run (or return the cached) knowledge assessment for a session.",
)
async def assess_session(
    request: Request,
    session_id: str,
    body: Optional[AssessBody] = Body(None),
):
    body = body or AssessBody()
    outcome = await _services(request).controller.assess(
        session_id,
        force=body.force,
        transcript=body.transcript,
        topic_ids=body.topic_ids,
        request_id=_request_id(request),
    )
    return outcome.to_dict()


@router.get(
    "/sessions/{session_id}/assessment",
    tags=["assessments"],
    description="Return the stored assessment state of a session.",
)
async def get_assessment(request: Request, session_id: str):
    return _services(request).controller.get_assessment(session_id).to_dict()


@router.get(
    "/questions/priority",
    tags=["questions"],
    description="Questions ordered unanswered, then incorrect, then correct; easier first within a status.",
)
async def priority_questions(
    request: Request,
    companyId: str = Query("", description="Company ID"),
    employeeId: Optional[str] = Query(None, description="Employee ID; omitted selects by difficulty only"),
    limit: int = Query(10, description="Maximum number of questions"),
    topicIds: Optional[List[str]] = Query(None, description="Restrict to these topics"),
):
    selection = _services(request).selector.select(
        (employeeId or "").strip() or None,
        companyId.strip(),
        limit,
        topic_ids=_split_ids(topicIds),
    )
    return selection.to_dict()


@router.get(
    "/questions/progress",
    tags=["questions"],
    description="Per-topic mastery of an employee across a company's knowledge base.",
)
async def question_progress(
    request: Request,
    employeeId: str = Query("", description="Employee ID"),
    companyId: str = Query("", description="Company ID"),
):
    if not employeeId.strip() or not companyId.strip():
        raise ValidationError("employeeId and companyId required")
    topics = _services(request).tracker.topic_summaries(employeeId.strip(), companyId.strip())
    return {"employeeId": employeeId.strip(), "topics": topics}


@router.post("/topics", tags=["knowledge"], description="Create or replace a knowledge topic.")
async def upsert_topic(request: Request, body: Topic):
    _services(request).store.upsert_topic(body)
    return body.to_json_dict()


@router.post("/questions", tags=["knowledge"], description="Create or replace a topic question.")
async def upsert_question(request: Request, body: Question):
    _services(request).store.upsert_question(body)
    return body.to_json_dict()


async def _training_error_handler(request: Request, exc: TrainingError):
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    log_event(
        logger,
        "request_failed",
        level=level,
        requestId=_request_id(request),
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        detail=exc.message,
    )
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    errors = json.loads(json.dumps(exc.errors(), default=str))
    return JSONResponse(
        {"detail": "invalid request", "code": ValidationError.code, "errors": errors},
        status_code=ValidationError.status_code,
    )


def _cors_origins() -> List[str]:
    raw = _env_str("CORS_ALLOW_ORIGINS", "http://localhost:3000")
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the HTTP app; tests pass pre-wired services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc: Services = app.state.services  # type: ignore[attr-defined]
        log_event(
            logger,
            "startup",
            store=type(svc.store).__name__,
            conversationProvider=getattr(svc.provider, "provider_name", "unknown"),
            gradingProvider=getattr(svc.grader, "provider_name", "unknown"),
            gradingModel=svc.grader.model,
        )
        try:
            yield
        finally:
            close = getattr(svc.store, "close", None)
            if close is not None:
                close()

    app = FastAPI(
        title="Role-play Training API",
        description="Training sessions, transcript retrieval, knowledge assessment and question prioritization.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services or Services.build()  # type: ignore[attr-defined]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
        allow_credentials=_env_bool("CORS_ALLOW_CREDENTIALS", False),
    )
    app.add_middleware(RequestIdMiddleware)

    @app.middleware("http")
    async def _http_metrics_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = getattr(response, "status_code", 500)
            return response
        finally:
            # Route template, not the raw path: session ids must not become label values
            route = request.scope.get("route")
            path = getattr(route, "path", None) or "<unmatched>"
            status_class = f"{status_code // 100}xx"
            HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)

    app.add_exception_handler(TrainingError, _training_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        openapi_schema["tags"] = [
            {"name": "meta", "description": "Service metadata and liveness"},
            {"name": "sessions", "description": "Training session lifecycle"},
            {"name": "assessments", "description": "Knowledge assessment runs and results"},
            {"name": "questions", "description": "Question prioritization and mastery progress"},
            {"name": "knowledge", "description": "Knowledge base topics and questions"},
        ]
        openapi_schema["servers"] = [
            {"url": os.getenv("PUBLIC_API_URL", "http://localhost:8000"), "description": "Local dev"}
        ]
        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[assignment]
    return app


app = create_app()
