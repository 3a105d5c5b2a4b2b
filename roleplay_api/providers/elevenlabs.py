import os
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from ..log import get_logger, log_event
from ..retry import FetchError, RetryPolicy, fetch_with_retry
from .base import ConversationProvider

logger = get_logger("roleplay.api.elevenlabs")

BASE_URL = "https://api.elevenlabs.io/v1/convai"


class ElevenLabsConversationProvider(ConversationProvider):
    """ElevenLabs Conversational AI: conversation metadata and transcripts.

    The conversation endpoint answers 404 until the platform has finished
    processing the call, so every request goes through `fetch_with_retry`.
    """

    provider_name: str = "elevenlabs"

    def __init__(self, policy: Optional[RetryPolicy] = None, timeout: Optional[float] = None):
        api_key = os.getenv("ELEVENLABS_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("ELEVENLABS_API_KEY is required for ElevenLabs provider")
        self._api_key = api_key
        self._base_url = (os.getenv("ELEVENLABS_BASE_URL") or BASE_URL).rstrip("/")
        if timeout is None:
            try:
                timeout = float(os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 30)
            except ValueError:
                timeout = 30.0
        self._timeout = timeout
        self._policy = policy or RetryPolicy(max_attempts=5)

    async def _get_json(self, path: str, label: str) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {
            "xi-api-key": self._api_key,
            "Accept": "application/json",
            "User-Agent": "roleplay-training-api/0.1.0",
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:

            async def _send():
                return await client.get(url, headers=headers)

            resp = await fetch_with_retry(_send, self._policy, label=label)
        try:
            data = resp.json()
        except ValueError as e:
            log_event(logger, "elevenlabs_invalid_json", level=logging.WARNING, path=path)
            raise FetchError(1, resp.status_code, (resp.text or "")[:1024], "invalid JSON body") from e
        return data if isinstance(data, dict) else {}

    async def get_conversation(self, ref: str) -> Dict[str, Any]:
        return await self._get_json(f"/conversations/{ref}", label="elevenlabs_conversation")

    async def get_transcript(self, ref: str) -> Dict[str, Any]:
        # The transcript is embedded in the conversation document
        return await self._get_json(f"/conversations/{ref}", label="elevenlabs_transcript")

    async def fetch_conversation(self, ref: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        # Metadata and transcript live in the same document; one retry cycle serves both
        doc = await self._get_json(f"/conversations/{ref}", label="elevenlabs_conversation")
        return doc, doc
