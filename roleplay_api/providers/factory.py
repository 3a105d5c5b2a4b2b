import os
from typing import Optional

from ..retry import RetryPolicy
from .base import ConversationProvider, GradingClient
from .mock import MockConversationProvider, MockGradingClient


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def get_grading_client(provider: Optional[str] = None, model: Optional[str] = None) -> GradingClient:
    """Return a grading client based on env or explicit overrides.

    Env precedence:
      - AI_PROVIDER_GRADING
      - AI_PROVIDER
      - defaults to 'mock'
    Model from AI_GRADING_MODEL if not given.
    """
    prov = (provider or _env_str("AI_PROVIDER_GRADING") or _env_str("AI_PROVIDER") or "mock").lower()
    mdl = model or _env_str("AI_GRADING_MODEL") or None

    if prov in ("mock", "test"):
        return MockGradingClient(model=mdl)

    if prov in ("openrouter", "router"):
        try:
            from .openrouter import OpenRouterGradingClient
            return OpenRouterGradingClient(model=mdl)
        except RuntimeError:
            # Fallback to mock if keys are not available
            return MockGradingClient(model=mdl)

    if prov in ("google", "gemini"):
        try:
            from .google import GoogleGradingClient
            return GoogleGradingClient(model=mdl)
        except RuntimeError:
            return MockGradingClient(model=mdl)

    # Unknown -> mock
    return MockGradingClient(model=mdl)


def get_conversation_provider(
    provider: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
) -> ConversationProvider:
    """Return a conversation provider; env CONVERSATION_PROVIDER, default 'mock'."""
    prov = (provider or _env_str("CONVERSATION_PROVIDER") or "mock").lower()

    if prov in ("elevenlabs", "11labs"):
        try:
            from .elevenlabs import ElevenLabsConversationProvider
            return ElevenLabsConversationProvider(policy=policy)
        except RuntimeError:
            return MockConversationProvider()

    return MockConversationProvider()
