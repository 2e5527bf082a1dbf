"""Centralised logging configuration for the enrichment backend.

Batch workers log through :class:`ContextAdapter` so every line written while
processing a detection carries its ids; the JSON file handler keeps them as
separate keys for filtering.
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

CONTEXT_FIELDS = ("run_id", "image_id", "detection_id", "stage")
NOISY_LOGGERS = ("urllib3", "httpx", "anthropic", "PIL")


class _JSONFormatter(logging.Formatter):
    """Emit one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


class ContextAdapter(logging.LoggerAdapter):
    """Attach pipeline ids to every record; per-call ``extra`` wins."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context) -> "ContextAdapter":
        merged = dict(self.extra)
        merged.update({k: v for k, v in context.items() if v is not None})
        return ContextAdapter(self.logger, merged)


def get_context_logger(name: str, **context) -> ContextAdapter:
    return ContextAdapter(
        logging.getLogger(name), {k: v for k, v in context.items() if v is not None}
    )


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(levelname)s %(threadName)s %(name)s: %(message)s")
    )
    return handler


def _file_handler(log_dir: Path, level: int):
    """JSON lines, 10 MB x 5 backups; None when the directory is not writable."""
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            str(log_dir / "app.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except PermissionError:
        logging.warning(
            "Cannot write to %s, file logging disabled, using console only.",
            log_dir / "app.log",
        )
        return None
    handler.setLevel(level)
    handler.setFormatter(_JSONFormatter())
    return handler


def configure_logging(app):
    """Install console and rotating JSON file handlers on the root logger once."""
    if getattr(app, "_logging_configured", False):
        return
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    log_dir = Path(os.getenv("LOG_DIR") or Path(app.root_path) / "logs")

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(_console_handler(level))
    file_handler = _file_handler(log_dir, level)
    if file_handler:
        root.addHandler(file_handler)

    # HTTP clients log every request at INFO/DEBUG
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    app.logger.setLevel(level)
    app._logging_configured = True
