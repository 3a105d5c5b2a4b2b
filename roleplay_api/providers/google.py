import os
import logging
from typing import Any, Dict, Optional

import httpx

from ..log import get_logger, log_event
from .base import GradingClient, GradingResponseError, coerce_grade
from .grading_prompt import extract_json_object, system_prompt, user_prompt

logger = get_logger("roleplay.api.google")

BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GoogleGradingClient(GradingClient):
    provider_name: str = "google"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or os.getenv("AI_GRADING_MODEL") or "gemini-1.5-flash")
        api_key = os.getenv("GOOGLE_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("GOOGLE_API_KEY is required for Google provider")
        self._api_key = api_key
        try:
            self._timeout = float(os.getenv("GOOGLE_TIMEOUT_SECONDS") or os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 30)
        except ValueError:
            self._timeout = 30.0

    async def grade(
        self,
        question: str,
        canonical_answer: str,
        user_answer: str,
        topic: Optional[str] = None,
        language: str = "en",
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Grade one answer with Gemini generateContent.

        Endpoint: POST {BASE_URL}/models/{model}:generateContent?key=API_KEY
        """
        url = f"{BASE_URL}/models/{self.model}:generateContent?key={self._api_key}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "roleplay-training-api/0.1.0",
        }
        if request_id:
            headers["X-Request-Id"] = request_id

        # Enforce JSON response to increase parsing reliability across models
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": user_prompt(question, canonical_answer, user_answer, topic)}],
                }
            ],
            "generationConfig": {
                "temperature": 0,
                "candidateCount": 1,
                "maxOutputTokens": 300,
                "responseMimeType": "application/json",
            },
            "systemInstruction": {"parts": [{"text": system_prompt(language)}]},
        }

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(url, headers=headers, json=payload)
            if resp.status_code >= 400:
                log_event(
                    logger,
                    "google_grade_http_error",
                    level=logging.ERROR,
                    status=resp.status_code,
                    body=(resp.text or "")[:1024],
                    model=self.model,
                )
                raise RuntimeError(f"Google grade error {resp.status_code}: {resp.text}")
            data = resp.json()

        # Response shape: { candidates: [ { content: { parts: [ { text } ] } } ] }
        candidates = (data or {}).get("candidates") or []
        if not candidates:
            raise GradingResponseError("no_candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            raise GradingResponseError("no_parts")
        try:
            obj = extract_json_object(parts[0].get("text") or "")
        except ValueError as e:
            raise GradingResponseError(f"unparseable grader reply: {e}") from e
        return coerce_grade(obj)
