from typing import Any, Dict, List, Optional

from .models import Turn

# Provider role labels -> canonical speaker
_ROLE_MAP = {
    "agent": "assistant",
    "assistant": "assistant",
    "ai": "assistant",
    "bot": "assistant",
    "avatar": "assistant",
    "user": "user",
    "human": "user",
    "employee": "user",
    "customer": "user",
}


def _entries(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    inner = payload.get("transcript")
    # Some conversation payloads nest the list one level deeper
    if isinstance(inner, dict):
        inner = inner.get("transcript")
    if inner is None:
        inner = payload.get("messages")
    return inner if isinstance(inner, list) else []


def _text_of(entry: Dict[str, Any]) -> str:
    for key in ("message", "content", "text"):
        val = entry.get(key)
        if isinstance(val, str):
            return val
    return ""


def _offset_ms(entry: Dict[str, Any], previous: int) -> int:
    secs = entry.get("time_in_call_secs")
    if isinstance(secs, (int, float)) and not isinstance(secs, bool):
        return int(round(secs * 1000))
    for key in ("offsetMs", "offset_ms", "timestamp"):
        val = entry.get(key)
        if isinstance(val, (int, float)) and not isinstance(val, bool):
            return int(val)
    return previous


def normalize(payload: Any) -> List[Turn]:
    """Convert a provider conversation record into ordered canonical turns.

    Empty turns are dropped; every non-empty turn is kept in its original
    order. A missing or malformed payload yields an empty list.
    """
    turns: List[Turn] = []
    previous = 0
    for entry in _entries(payload):
        if isinstance(entry, Turn):
            entry = entry.model_dump(by_alias=True)
        if not isinstance(entry, dict):
            continue
        text = _text_of(entry).strip()
        if not text:
            continue
        role = str(entry.get("role") or entry.get("speaker") or "").strip().lower()
        speaker = _ROLE_MAP.get(role, "user")
        offset = _offset_ms(entry, previous)
        previous = offset
        turns.append(Turn(speaker=speaker, text=text, offset_ms=offset))
    return turns


def call_duration(payload: Any) -> Optional[int]:
    """Provider-reported call duration in whole seconds, if present."""
    if not isinstance(payload, dict):
        return None
    meta = payload.get("metadata")
    if not isinstance(meta, dict):
        return None
    secs = meta.get("call_duration_secs")
    if isinstance(secs, (int, float)) and not isinstance(secs, bool) and secs > 0:
        return int(round(secs))
    return None


def span_seconds(turns: List[Turn]) -> Optional[int]:
    """Seconds between the first and last turn offsets, if measurable."""
    if len(turns) < 2:
        return None
    span = turns[-1].offset_ms - turns[0].offset_ms
    if span <= 0:
        return None
    return int(round(span / 1000))
