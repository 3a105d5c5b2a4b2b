import json
import logging
import os
from typing import Any


def get_logger(name: str) -> logging.Logger:
    """Return a logger that emits plain JSON lines under Uvicorn.

    - honor LOG_LEVEL env (default INFO)
    - attach a StreamHandler if none present
    - disable propagate to avoid duplicate logs with Uvicorn root handlers
    """
    logger = logging.getLogger(name)
    lvl = getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)
    if not isinstance(lvl, int):
        lvl = logging.INFO
    logger.setLevel(lvl)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setLevel(lvl)
        h.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(h)
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    # Never fail the caller on logging errors
    try:
        logger.log(level, json.dumps({"event": event, **fields}, default=str))
    except Exception:
        pass
