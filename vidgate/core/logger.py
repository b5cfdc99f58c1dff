# vidgate/core/logger.py
from __future__ import annotations

"""
Vidgate — Logging (Loguru)
--------------------------
- Pretty console logs by default; JSON lines with `LOG_JSON=true`
- `request_id` (bound by the request-id middleware) on every line
- stdlib loggers (uvicorn, fastapi, starlette, vidgate, redis) routed into Loguru
- Optional rotating file sink (`LOG_TO_FILE`)
- Grant material scrubbed from messages before any sink sees them

All knobs come from `Settings` (`LOG_LEVEL`, `LOG_JSON`, `LOG_TO_FILE`,
`LOG_DIR`, `LOG_FILE`, `LOG_ROTATION`, `APP_DEBUG`).
"""

import json
import logging
import re
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict

from loguru import logger

if TYPE_CHECKING:
    from vidgate.core.config import Settings

_CONFIGURED = False

_INTERCEPTED = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "starlette", "vidgate", "redis")

# Query parameters and headers that make a URL usable by whoever reads the log
_SECRET_PARAMS = re.compile(
    r"(?i)\b(Signature|X-Amz-Signature|X-Amz-Credential|X-Amz-Security-Token|token|Authorization)"
    r"([=:]\s*)(Bearer\s+)?[^&\s\"',]+"
)
# Path-embedded playback tokens: https://host/<jwt>/manifest/...
_JWT_LIKE = re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]+")


def redact(message: str) -> str:
    """Mask signatures, credentials and tokens inside a log message."""
    message = _SECRET_PARAMS.sub(lambda m: f"{m.group(1)}{m.group(2)}***", message)
    return _JWT_LIKE.sub("***", message)


def _scrub(record) -> None:
    record["message"] = redact(record["message"])


# ─────────────────────────────────────────────────────────────
# 🧾 Formatters
# ─────────────────────────────────────────────────────────────
def _fmt_pretty(record):
    record["extra"].setdefault("request_id", "N/A")
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level> | request_id={extra[request_id]}\n{exception}"
    )


def _fmt_json(record):
    """One JSON object per line; bound extras are merged without clobbering core keys."""
    payload: Dict[str, Any] = {
        "time": record["time"].strftime("%Y-%m-%dT%H:%M:%S.%f%z"),
        "level": record["level"].name,
        "logger": record["name"],
        "func": record["function"],
        "line": record["line"],
        "message": record["message"],
        "request_id": record["extra"].get("request_id", "N/A"),
    }
    for k, v in record["extra"].items():
        if k != "_json" and k not in payload:
            payload[k] = v
    record["extra"]["_json"] = json.dumps(payload, ensure_ascii=False, default=str)
    return "{extra[_json]}\n{exception}"


# ─────────────────────────────────────────────────────────────
# 🔁 Intercept stdlib logging → Loguru
# ─────────────────────────────────────────────────────────────
class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


# ─────────────────────────────────────────────────────────────
# 📤 Sinks
# ─────────────────────────────────────────────────────────────
def configure_logging(settings: "Settings") -> None:
    """Install sinks and the stdlib intercept once per process."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = settings.LOG_LEVEL.upper()
    fmt = _fmt_json if settings.LOG_JSON else _fmt_pretty

    logger.remove()
    logger.configure(patcher=_scrub)
    logger.add(
        sys.stdout,
        level=level,
        format=fmt,
        enqueue=True,
        backtrace=settings.APP_DEBUG,
        diagnose=settings.APP_DEBUG,
    )

    if settings.LOG_TO_FILE:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / settings.LOG_FILE),
            rotation=settings.LOG_ROTATION,
            level=level,
            format=fmt,
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )

    for name in _INTERCEPTED:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.setLevel(level)
        std_logger.propagate = False

    _CONFIGURED = True


__all__ = ["configure_logging", "InterceptHandler", "redact", "logger"]
