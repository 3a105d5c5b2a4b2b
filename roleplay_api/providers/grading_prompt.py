import json
from typing import Any, Dict, Optional

# Feedback is written in the trainee's session language
LANGUAGE_NAMES = {
    "en": "English",
    "ru": "Russian",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "ar": "Arabic",
    "hi": "Hindi",
    "cs": "Czech",
    "nl": "Dutch",
    "pl": "Polish",
    "ka": "Georgian",
}


def language_name(code: Optional[str]) -> str:
    return LANGUAGE_NAMES.get((code or "en").strip().lower(), "English")


def system_prompt(language: str) -> str:
    lang = language_name(language)
    return (
        "You are an examiner grading employee answers in a workplace knowledge check. "
        "Compare the employee's answer with the expected answer. "
        "Consider factual accuracy, completeness and demonstrated understanding; "
        "allow reasonable variations in wording, abbreviations and language. "
        "Return STRICT JSON with keys: isCorrect (boolean), score (integer 0-100), feedback (string). "
        f"Write the feedback in {lang}, at most 100 words. "
        "Do not include any commentary outside of the JSON."
    )


def user_prompt(question: str, canonical_answer: str, user_answer: str, topic: Optional[str]) -> str:
    head = f"Topic: {topic}\n" if topic else ""
    return (
        f"{head}Question: {question}\n"
        f"Expected answer: {canonical_answer}\n"
        f"Employee answer: {user_answer}"
    )


def extract_json_object(content_text: str) -> Dict[str, Any]:
    """Parse the first JSON object in a model reply, tolerating fences and prose."""
    text = (content_text or "").strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if len(lines) > 2 and lines[-1].lstrip().startswith("```"):
            text = "\n".join(lines[1:-1]).strip()
    if not (text.startswith("{") and text.endswith("}")):
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            text = text[start : end + 1]
    obj = json.loads(text)
    if not isinstance(obj, dict):
        raise ValueError("expected a JSON object")
    return obj
