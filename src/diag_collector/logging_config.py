"""Log setup for the collector: redacting formatters tagged with the node being captured."""

from __future__ import annotations

import contextvars
import json
import logging
import time
from typing import Any, TextIO

from diag_collector.secrets import redact_string, redact_structure

LOG_FORMATS = ("text", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_CONFIGURED = False

# node fields for the capture running on this thread, empty outside a capture
_node_context: contextvars.ContextVar[dict[str, str]] = contextvars.ContextVar("node_context", default={})


def get_log_context() -> dict[str, str]:
    return dict(_node_context.get())


class LogContext:
    """Tag every log line written inside the block with ``host`` and/or ``role``.

    Worker threads start with an empty context, so the fleet orchestrator opens
    one of these inside every per-host task. Nested blocks add to the outer
    fields and restore them on exit.
    """

    def __init__(self, *, host: str | None = None, role: str | None = None) -> None:
        self.fields = {key: value for key, value in (("host", host), ("role", role)) if value}
        self._token: contextvars.Token | None = None

    def __enter__(self) -> LogContext:
        self._token = _node_context.set({**_node_context.get(), **self.fields})
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _node_context.reset(self._token)
            self._token = None


def _redacted_message(record: logging.LogRecord) -> str:
    msg = str(redact_structure(record.msg))
    args = redact_structure(record.args)
    if args:
        try:
            msg = msg % args
        except (TypeError, ValueError):
            pass
    return redact_string(msg)


class TextFormatter(logging.Formatter):
    """``<time> | <level> | <logger> | <message>``, plus `` | host=... role=...`` during a capture."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        self.converter = time.gmtime

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = self._style.format(record)
        context = get_log_context()
        if context:
            line += " | " + " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return line

    def format(self, record: logging.LogRecord) -> str:
        message = _redacted_message(record)
        original_msg, original_args = record.msg, record.args
        record.msg, record.args = message, None
        try:
            return redact_string(super().format(record))
        finally:
            record.msg, record.args = original_msg, original_args


class JsonFormatter(logging.Formatter):
    """One JSON object per line; capture lines carry ``context: {host, role}``."""

    def __init__(self) -> None:
        super().__init__()
        self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": _redacted_message(record),
        }
        context = get_log_context()
        if context:
            payload["context"] = redact_structure(context)
        if record.exc_info:
            payload["exc_info"] = redact_string(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(
    *,
    level: str | int | None = None,
    fmt: str = "text",
    stream: TextIO | None = None,
) -> None:
    """Install the root handler once per process; later calls are ignored."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    root = logging.getLogger()
    if isinstance(level, int):
        root.setLevel(level)
    else:
        root.setLevel(logging.getLevelNamesMapping().get(str(level or "INFO").upper(), logging.INFO))

    if not root.handlers:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonFormatter() if fmt.lower() == "json" else TextFormatter())
        root.addHandler(handler)

    _CONFIGURED = True


def add_logging_args(parser: Any) -> None:
    group = parser.add_argument_group("logging")
    group.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: INFO)",
    )
    group.add_argument(
        "--log-format",
        default="text",
        choices=LOG_FORMATS,
        help="Logging format (default: text); json writes one object per line",
    )
