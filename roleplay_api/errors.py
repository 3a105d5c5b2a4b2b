from typing import Any, Dict, List, Optional


class TrainingError(Exception):
    """Base for every failure the session pipeline reports to callers.

    Each failure is scoped to a single session and leaves it resumable.
    """

    code: str = "training_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.retryable:
            out["retryable"] = True
        out.update(self.details)
        return out


class NotFound(TrainingError):
    code = "not_found"
    status_code = 404


class Conflict(TrainingError):
    code = "conflict"
    status_code = 409


class AnalysisRequired(Conflict):
    """Raised by the start gate while a prior theory session is unassessed."""

    code = "ANALYSIS_REQUIRED"
    status_code = 423

    def __init__(self, blocking_session_id: str, blocking_status: Optional[str] = None):
        super().__init__(
            "You must analyze your previous theory session before starting a new one",
            blockingSessionId=blocking_session_id,
            blockingStatus=blocking_status,
            requiresAnalysis=True,
        )
        self.blocking_session_id = blocking_session_id


class UpstreamUnavailable(TrainingError):
    code = "upstream_unavailable"
    status_code = 503
    retryable = True


class ValidationError(TrainingError):
    code = "validation_error"
    status_code = 400


class PartialGradingFailure(TrainingError):
    """Some exchanges could not be graded; reported alongside the graded set."""

    code = "partial_grading_failure"
    status_code = 200

    def __init__(self, ungraded: List[Dict[str, Any]]):
        super().__init__(
            f"{len(ungraded)} exchange(s) could not be graded",
            ungradedCount=len(ungraded),
        )
        self.ungraded = ungraded


class DuplicateKeyError(Exception):
    """Store-level signal that a record with the same primary key exists."""

    def __init__(self, key: str):
        super().__init__(f"duplicate key: {key}")
        self.key = key
