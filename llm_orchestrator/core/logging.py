"""Logging setup and request-scoped log context.

Records emitted through a ``ContextLogger`` carry ``request_id`` and
``provider_id``; both formatters render them when present.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from llm_orchestrator.core.config import Settings, settings as default_settings

CONTEXT_FIELDS = ("request_id", "provider_id")


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps bound context onto every record.

    Usage:
        log = ContextLogger(logger, {"request_id": request.request_id})
        log.info("Dispatching")
        log.bind(provider_id="openai").warning("Retrying")
    """

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **context})


def _context(record: logging.LogRecord) -> dict:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if getattr(record, name, None)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable lines with the request context appended in brackets."""

    def __init__(self):
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        tags = " ".join(f"{k}={v}" for k, v in context.items())
        first, newline, rest = line.partition("\n")
        return f"{first} [{tags}]{newline}{rest}"


def setup_logging(settings: Settings | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    settings = settings or default_settings
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if settings.log_json else ConsoleFormatter())
    root.addHandler(handler)

    # Per-request lines from httpx duplicate our own
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
