import os
from dataclasses import dataclass

# Load environment variables from .env if available, but avoid during pytest to keep tests deterministic
if "PYTEST_CURRENT_TEST" not in os.environ:
    from dotenv import load_dotenv

    load_dotenv(override=False)


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name, "1" if default else "0").strip().lower()
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime tuning read once per process from the environment."""

    # Retrying fetch client (conversation provider)
    fetch_max_attempts: int = 5
    fetch_base_delay_seconds: float = 1.0
    fetch_max_auth_retries: int = 2
    # Grading
    grading_timeout_seconds: float = 30.0
    correctness_threshold: int = 80
    min_answer_chars: int = 3
    # Overall wall-clock bound for link/assess pipelines
    pipeline_timeout_seconds: float = 300.0
    http_timeout_seconds: float = 30.0
    # Storage
    store_backend: str = "memory"
    sqlite_path: str = "roleplay_training.db"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            fetch_max_attempts=max(1, _env_int("FETCH_MAX_ATTEMPTS", 5)),
            fetch_base_delay_seconds=max(0.0, _env_float("FETCH_BASE_DELAY_SECONDS", 1.0)),
            fetch_max_auth_retries=max(0, _env_int("FETCH_MAX_AUTH_RETRIES", 2)),
            grading_timeout_seconds=_env_float("GRADING_TIMEOUT_SECONDS", 30.0),
            correctness_threshold=_env_int("CORRECTNESS_THRESHOLD", 80),
            min_answer_chars=max(1, _env_int("MIN_ANSWER_CHARS", 3)),
            pipeline_timeout_seconds=_env_float("PIPELINE_TIMEOUT_SECONDS", 300.0),
            http_timeout_seconds=_env_float("AI_HTTP_TIMEOUT_SECONDS", 30.0),
            store_backend=_env_str("STORE_BACKEND", "memory").lower(),
            sqlite_path=_env_str("SQLITE_PATH", "roleplay_training.db"),
        )
