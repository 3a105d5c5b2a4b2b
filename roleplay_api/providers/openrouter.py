import os
import logging
from typing import Any, Dict, Optional

import httpx

from ..log import get_logger, log_event
from .base import GradingClient, GradingResponseError, coerce_grade
from .grading_prompt import extract_json_object, system_prompt, user_prompt

logger = get_logger("roleplay.api.openrouter")

URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterGradingClient(GradingClient):
    provider_name: str = "openrouter"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or os.getenv("AI_GRADING_MODEL") or "openai/gpt-4o-mini")
        api_key = os.getenv("OPENROUTER_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is required for OpenRouter provider")
        self._api_key = api_key
        # Default 30s; can override via AI_HTTP_TIMEOUT_SECONDS or OPENROUTER_TIMEOUT_SECONDS
        try:
            self._timeout = float(os.getenv("OPENROUTER_TIMEOUT_SECONDS") or os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 30)
        except ValueError:
            self._timeout = 30.0
        # Origin metadata (optional but recommended by OpenRouter)
        self._referer = os.getenv("PUBLIC_APP_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"
        self._title = os.getenv("OPENROUTER_APP_TITLE", "Roleplay Training API").strip() or "Roleplay Training API"

    async def grade(
        self,
        question: str,
        canonical_answer: str,
        user_answer: str,
        topic: Optional[str] = None,
        language: str = "en",
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "User-Agent": "roleplay-training-api/0.1.0",
            "HTTP-Referer": self._referer,
            "X-Title": self._title,
        }
        if request_id:
            headers["X-Request-Id"] = request_id

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt(language)},
                {"role": "user", "content": user_prompt(question, canonical_answer, user_answer, topic)},
            ],
            "temperature": 0,
            "max_tokens": 300,
            # Prefer structured JSON when supported
            "response_format": {"type": "json_object"},
        }

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(URL, headers=headers, json=payload)
            if resp.status_code >= 400:
                log_event(
                    logger,
                    "openrouter_grade_http_error",
                    level=logging.ERROR,
                    status=resp.status_code,
                    body=(resp.text or "")[:1024],
                    model=self.model,
                )
                raise RuntimeError(f"OpenRouter grade error {resp.status_code}: {resp.text}")
            data = resp.json()

        try:
            msg = (((data or {}).get("choices") or [{}])[0].get("message") or {})
            obj = extract_json_object(msg.get("content") or "")
        except (ValueError, AttributeError, IndexError) as e:
            raise GradingResponseError(f"unparseable grader reply: {e}") from e
        return coerce_grade(obj)
