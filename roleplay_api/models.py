from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ASSESSMENT_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Model(BaseModel):
    # Wire format is camelCase; Python code uses snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class TrainingMode(str, Enum):
    THEORY = "theory"
    SERVICE_PRACTICE = "service_practice"
    RECOMMENDATION = "recommendation"


class AssessmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionState(str, Enum):
    CREATED = "created"
    LINKED = "linked"
    TRANSCRIPT_FETCHED = "transcript_fetched"
    ASSESSED = "assessed"
    # Terminal state for modes that are recorded but never graded
    RECORDED = "recorded"


class QuestionStatus(str, Enum):
    UNANSWERED = "unanswered"
    INCORRECT = "incorrect"
    CORRECT = "correct"


class Turn(_Model):
    speaker: Literal["assistant", "user"]
    text: str
    offset_ms: int = 0


class Topic(_Model):
    id: str
    company_id: str
    name: str
    category: Optional[str] = None


class Question(_Model):
    id: str
    topic_id: str
    prompt: str
    canonical_answer: str
    difficulty_level: int = 1
    is_active: bool = True


class Attempt(_Model):
    employee_id: str
    question_id: str
    session_id: Optional[str] = None
    is_correct: bool
    answer_text: str = ""
    score: Optional[int] = None
    graded_at: datetime = Field(default_factory=utcnow)


# ----- Assessment results (tagged union, versioned) -----

class AssessmentSummary(_Model):
    total_questions: int = 0
    correct_answers: int = 0
    incorrect_answers: int = 0
    accuracy: int = 0
    average_score: int = 0


class QuestionResult(_Model):
    question_id: str
    question_asked: str
    user_answer: str
    canonical_answer: str
    is_correct: bool
    score: int
    feedback: str = ""
    topic_id: Optional[str] = None
    difficulty_level: Optional[int] = None


class UngradedExchange(_Model):
    index: int
    question_asked: str
    error: str


class TheoryAssessment(_Model):
    kind: Literal["theory"] = "theory"
    schema_version: int = ASSESSMENT_SCHEMA_VERSION
    summary: AssessmentSummary = Field(default_factory=AssessmentSummary)
    question_results: List[QuestionResult] = Field(default_factory=list)
    processed_exchanges: int = 0
    matched_questions: int = 0
    ungraded_exchanges: List[UngradedExchange] = Field(default_factory=list)
    analyzed_at: datetime = Field(default_factory=utcnow)


class UngradedRecording(_Model):
    kind: Literal["ungraded"] = "ungraded"
    schema_version: int = ASSESSMENT_SCHEMA_VERSION
    reason: str = "mode_not_graded"
    recorded_at: datetime = Field(default_factory=utcnow)


class FailedAssessment(_Model):
    kind: Literal["failed"] = "failed"
    schema_version: int = ASSESSMENT_SCHEMA_VERSION
    error: str
    failed_at: datetime = Field(default_factory=utcnow)


AssessmentResult = Annotated[
    Union[TheoryAssessment, UngradedRecording, FailedAssessment],
    Field(discriminator="kind"),
]


class TrainingSession(_Model):
    id: str
    employee_id: str
    company_id: str
    assignment_id: Optional[str] = None
    scenario_id: Optional[str] = None
    training_mode: TrainingMode
    language: str = "en"
    external_conversation_ref: Optional[str] = None
    transcript: List[Turn] = Field(default_factory=list)
    duration_seconds: int = 0
    state: SessionState = SessionState.CREATED
    assessment_status: AssessmentStatus = AssessmentStatus.PENDING
    assessment_result: Optional[AssessmentResult] = None
    assessment_completed_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None


class CreateSessionRequest(_Model):
    id: str = Field(min_length=1)
    employee_id: str = Field(min_length=1)
    company_id: str = Field(min_length=1)
    training_mode: TrainingMode
    assignment_id: Optional[str] = None
    scenario_id: Optional[str] = None
    language: str = "en"
