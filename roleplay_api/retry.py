"""Bounded exponential backoff around calls to external providers.

The conversational-AI provider answers 404 while it is still rendering an
artifact (transcript, audio) and occasionally answers 401 on a healthy key.
Both are retried; everything else fails fast with the provider's body.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
from prometheus_client import Counter

from .log import get_logger, log_event

logger = get_logger("roleplay.api.retry")

FETCH_ATTEMPTS_TOTAL = Counter(
    "roleplay_fetch_attempts_total",
    "Provider fetch attempts by outcome",
    ["outcome"],
)


class Decision(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    RETRY_AUTH = "retry_auth"
    FAIL = "fail"


# Statuses a provider uses while an artifact is still being processed
NOT_READY_STATUSES = frozenset({404, 425})


def default_classifier(status: int) -> Decision:
    if 200 <= status < 300:
        return Decision.SUCCESS
    if status in NOT_READY_STATUSES:
        return Decision.RETRY
    if status == 401:
        return Decision.RETRY_AUTH
    return Decision.FAIL


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_auth_retries: int = 2
    classify: Callable[[int], Decision] = field(default=default_classifier)

    def delay_for(self, attempt: int) -> float:
        """Delay slept after failed attempt number `attempt` (1-based)."""
        return self.base_delay * (self.multiplier ** (attempt - 1))


class FetchError(Exception):
    """Terminal failure after retries were exhausted or a fail-fast status."""

    def __init__(self, attempts: int, last_status: Optional[int], body: str = "", reason: str = ""):
        msg = f"fetch failed after {attempts} attempt(s)"
        if last_status is not None:
            msg += f" (status {last_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.attempts = attempts
        self.last_status = last_status
        self.body = body
        self.reason = reason

    @property
    def not_ready(self) -> bool:
        return self.last_status in NOT_READY_STATUSES


async def fetch_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "fetch",
) -> httpx.Response:
    """Call `send` until it succeeds, a fail-fast status arrives, or attempts run out.

    `sleep` is injectable so tests can drive the backoff with a fake clock.
    Cancellation of the surrounding task interrupts the backoff sleep.
    """
    policy = policy or RetryPolicy()
    max_attempts = max(1, policy.max_attempts)
    auth_retries = 0
    last_status: Optional[int] = None
    last_body = ""
    last_reason = ""

    for attempt in range(1, max_attempts + 1):
        try:
            resp = await send()
        except httpx.TransportError as e:
            # Network hiccups are retried like a not-ready artifact
            last_status, last_body, last_reason = None, "", f"{type(e).__name__}: {e}"
            FETCH_ATTEMPTS_TOTAL.labels(outcome="network_error").inc()
            decision = Decision.RETRY
        else:
            last_status = resp.status_code
            decision = policy.classify(resp.status_code)
            if decision is Decision.SUCCESS:
                FETCH_ATTEMPTS_TOTAL.labels(outcome="success").inc()
                if attempt > 1:
                    log_event(logger, "fetch_succeeded_after_retry", label=label, attempt=attempt)
                return resp
            last_body = (resp.text or "")[:1024]
            last_reason = ""

        if decision is Decision.RETRY_AUTH:
            auth_retries += 1
            if auth_retries > policy.max_auth_retries:
                decision = Decision.FAIL
                last_reason = "auth retries exhausted"

        if decision is Decision.FAIL:
            FETCH_ATTEMPTS_TOTAL.labels(outcome="fail").inc()
            log_event(
                logger,
                "fetch_failed",
                level=logging.WARNING,
                label=label,
                attempt=attempt,
                status=last_status,
                body=last_body[:200],
            )
            raise FetchError(attempt, last_status, last_body, last_reason or "non-retryable status")

        if attempt >= max_attempts:
            break

        FETCH_ATTEMPTS_TOTAL.labels(outcome="retry").inc()
        delay = policy.delay_for(attempt)
        log_event(
            logger,
            "fetch_retry",
            label=label,
            attempt=attempt,
            maxAttempts=max_attempts,
            status=last_status,
            backoff_ms=int(delay * 1000),
        )
        await sleep(delay)

    FETCH_ATTEMPTS_TOTAL.labels(outcome="exhausted").inc()
    log_event(
        logger,
        "fetch_exhausted",
        level=logging.WARNING,
        label=label,
        attempts=max_attempts,
        status=last_status,
    )
    raise FetchError(max_attempts, last_status, last_body, last_reason or "retries exhausted")
