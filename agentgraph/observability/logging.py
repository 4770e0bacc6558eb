"""
Log formatting for agentgraph runs.

The executor stores ``run_id``, ``graph_id`` and the current ``node_id`` in a
ContextVar; both formatters read it, so plain ``logger.info(...)`` calls made
anywhere inside a step (connector code included) are tagged with the run
they belong to. Every run walks in its own asyncio task and therefore sees
only its own context.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


def _clean(value: Any) -> Any:
    return strip_ansi_codes(value) if isinstance(value, str) else value


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: level, logger, message, run context and known extras."""

    EXTRA_FIELDS = ("event", "latency_ms", "node_id", "attempt", "status")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        entry.update(
            {
                name: _clean(getattr(record, name))
                for name in self.EXTRA_FIELDS
                if getattr(record, name, None) is not None
            }
        )
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colored level, then ``[run:<last 8> | graph:<id> | node:<id>]`` and the message."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _prefix(context: dict[str, Any]) -> str:
        parts = []
        if context.get("run_id"):
            parts.append(f"run:{context['run_id'][-8:]}")
        if context.get("graph_id"):
            parts.append(f"graph:{context['graph_id']}")
        if context.get("node_id"):
            parts.append(f"node:{context['node_id']}")
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        prefix = self._prefix(trace_context.get() or {})
        event = getattr(record, "event", None)
        suffix = f" [{event}]" if event is not None else ""

        level = f"{color}[{record.levelname:<8}]{self.RESET}"
        message = f"{level} {prefix}{record.getMessage()}{suffix}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single root handler. Call once per process (CLI, server, tests).

    ``format`` is ``"json"``, ``"human"`` or ``"auto"``; auto picks JSON when
    ``LOG_FORMAT=json`` or ``ENV=production``.
    """
    if format == "auto":
        wants_json = os.getenv("LOG_FORMAT", "").lower() == "json"
        production = os.getenv("ENV", "development").lower() == "production"
        format = "json" if wants_json or production else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if format == "json":
        # Route aiohttp's own loggers through the JSON handler
        for name in ("aiohttp.access", "aiohttp.server"):
            aiohttp_logger = logging.getLogger(name)
            aiohttp_logger.handlers.clear()
            aiohttp_logger.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """Merge fields into the current task's context; ``None`` clears a field's value."""
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
