"""Logging setup for checkout runs.

Every formatter routes its output through the secret redaction helpers, so a
mirror URL with embedded credentials or an ``Authorization`` header can be
logged without leaking. ``LogContext`` scopes records to one acquisition
(owner, repo, staging id); the JSON formatter emits those fields at the top
level, the text formatter as a ``[owner/repo]`` tag.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import time
from typing import Any

from checkout_core.exceptions import CheckoutError
from checkout_core.secrets import redact_string, redact_structure

LOG_LEVEL_ENV = "CHECKOUT_LOG_LEVEL"
LOG_FORMAT_ENV = "CHECKOUT_LOG_FORMAT"

_CONFIGURED = False

_scope: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "checkout_log_scope", default=None
)


def get_log_context() -> dict[str, Any]:
    scope = _scope.get()
    return dict(scope) if scope else {}


class LogContext:
    """Bind fields to every record emitted inside the block.

    Nested blocks add to (and may override) the enclosing fields; leaving a
    block restores what was bound before it.
    """

    def __init__(self, **fields: Any) -> None:
        self.fields = {k: v for k, v in fields.items() if v is not None}
        self._token: contextvars.Token | None = None

    def __enter__(self) -> LogContext:
        self._token = _scope.set({**get_log_context(), **self.fields})
        return self

    def __exit__(self, *exc: Any) -> None:
        if self._token is not None:
            _scope.reset(self._token)
            self._token = None


def _scope_tag(scope: dict[str, Any]) -> str:
    if not scope:
        return ""
    parts = []
    if "owner" in scope and "repo" in scope:
        parts.append(f"{scope['owner']}/{scope['repo']}")
    parts.extend(f"{k}={v}" for k, v in scope.items() if k not in ("owner", "repo"))
    return f"[{' '.join(parts)}] "


def _render_message(record: logging.LogRecord) -> str:
    msg = redact_structure(record.msg)
    args = redact_structure(record.args)
    if args:
        try:
            return redact_string(str(msg) % args)
        except (TypeError, ValueError):
            pass
    return redact_string(str(msg))


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        original = record.msg, record.args
        record.msg = _scope_tag(redact_structure(get_log_context())) + _render_message(record)
        record.args = None
        try:
            formatted = super().format(record)
        finally:
            record.msg, record.args = original
        return redact_string(formatted)


class JsonFormatter(logging.Formatter):
    """One JSON object per record; scope fields and error fields at top level."""

    reserved = ("timestamp", "level", "logger", "message", "exc_info", "error")

    def __init__(self) -> None:
        super().__init__()
        self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": _render_message(record),
        }
        for key, value in redact_structure(get_log_context()).items():
            if key not in self.reserved:
                payload[key] = value

        if record.exc_info:
            exc = record.exc_info[1]
            if isinstance(exc, CheckoutError):
                payload["error"] = redact_structure(exc.as_log_fields())
            payload["exc_info"] = redact_string(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if level is None:
        return logging.INFO
    return logging.getLevelNamesMapping().get(str(level).upper(), logging.INFO)


def configure_logging(*, level: str | int | None = None, fmt: str | None = None) -> None:
    """Install a redacting handler on the root logger once per process.

    ``level`` and ``fmt`` fall back to ``CHECKOUT_LOG_LEVEL`` and
    ``CHECKOUT_LOG_FORMAT`` (``text`` or ``json``).
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = level if level is not None else os.environ.get(LOG_LEVEL_ENV)
    fmt = (fmt or os.environ.get(LOG_FORMAT_ENV) or "text").lower()

    root = logging.getLogger()
    root.setLevel(_resolve_level(level))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter() if fmt == "json" else TextFormatter())
        root.addHandler(handler)

    # httpx logs every request URL at INFO, including mirror URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _CONFIGURED = True
