"""
recurgent — structured runtime logging

Purpose
- Route every component's structlog events into one JSON-lines file per
  runtime session, tagged with the correlation fields of the call in progress.

What should be included in this file
- ``LoggingConfig`` built from the ``[observability]`` config section.
- ``RuntimeLogging``: the queue-backed handler set owned by a ``Runtime``.
- ``correlation_scope`` binding ``trace_id`` / ``call_id`` across nested calls.

Functional requirements
- Emitting a log line never blocks a call; a full queue drops the record and
  counts it.
- Values under secret-looking keys and secret-looking substrings are redacted
  unless ``redact_secrets`` is off.
- ``close`` drains the queue, detaches the handlers and restores structlog
  defaults.
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
Redactor = Callable[[JSONValue], JSONValue]

ROOT_LOGGER_NAME: Final[str] = "recurgent"
REDACTED: Final[str] = "***REDACTED***"

_LEVELS: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_SECRET_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
)

_SECRET_PATTERNS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(r"(?i)\b(api[_-]?key|token|password|secret)\b(\s*[:=]\s*)[^\s,;]+"),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{12,}\b"), REDACTED),
)

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "correlation",
}

_CLOSE_DRAIN_SECONDS: Final[float] = 2.0

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "recurgent_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how runtime log lines are written."""

    log_dir: Path
    level: str = "INFO"
    redact_secrets: bool = True
    queue_size: int = 4096

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> LoggingConfig:
        return cls(
            log_dir=Path(str(section.get("log_dir", ".recurgent/logs/"))),
            level=str(section.get("log_level", "INFO")).upper(),
            redact_secrets=bool(section.get("redact_secrets", True)),
        )


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped_guard = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> Any:
        record.correlation = current_correlation()
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_guard:
                self.dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, session_id: str, redact: Redactor) -> None:
        super().__init__()
        self._session_id = session_id
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "at": _utc_iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": self._redact(record.getMessage()),
            "session_id": self._session_id,
        }
        correlation = getattr(record, "correlation", None)
        if isinstance(correlation, Mapping):
            line.update({str(key): str(value) for key, value in correlation.items()})
        fields = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        if fields:
            line["fields"] = self._redact(fields)
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class RuntimeLogging:
    """Queue-backed JSON-lines logging for one runtime session.

    Attaches to the ``recurgent`` logger, so every ``structlog.get_logger(__name__)``
    inside the package lands in ``<log_dir>/<session_id>.jsonl``.
    """

    def __init__(self, config: LoggingConfig, *, session_id: str | None = None) -> None:
        level = _LEVELS.get(config.level.upper())
        if level is None:
            raise ValueError(f"unsupported log level {config.level!r}")
        if config.queue_size <= 0:
            raise ValueError("queue_size must be > 0")

        self.session_id = session_id or uuid.uuid4().hex
        config.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = config.log_dir / f"{self.session_id}.jsonl"

        redact: Redactor = redact_secrets if config.redact_secrets else _unchanged
        self._file_handler = logging.FileHandler(self.log_path, encoding="utf-8")
        self._file_handler.setFormatter(
            _JsonLineFormatter(session_id=self.session_id, redact=redact)
        )
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=config.queue_size)
        self._queue_handler = _DroppingQueueHandler(self._queue)
        self._listener = logging.handlers.QueueListener(self._queue, self._file_handler)

        self._logger = logging.getLogger(ROOT_LOGGER_NAME)
        self._previous_level = self._logger.level
        self._previous_propagate = self._logger.propagate
        self._logger.setLevel(level)
        self._logger.propagate = False
        self._logger.addHandler(self._queue_handler)
        self._listener.start()
        _route_structlog()

        self._close_guard = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._close_guard:
            if self._closed:
                return
            self._closed = True

        self._logger.removeHandler(self._queue_handler)
        # The listener's stop sentinel needs one free slot.
        deadline = time.monotonic() + _CLOSE_DRAIN_SECONDS
        while self._queue.full() and time.monotonic() < deadline:
            time.sleep(0.01)
        self._listener.stop()
        self._file_handler.close()
        self._logger.setLevel(self._previous_level)
        self._logger.propagate = self._previous_propagate
        structlog.reset_defaults()


def current_correlation() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for log lines emitted in scope; ``None`` unbinds a key."""

    bound = current_correlation()
    for key, value in fields.items():
        if value is None:
            bound.pop(key, None)
        else:
            bound[key] = str(value)
    token = _CORRELATION.set(tuple(bound.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def redact_secrets(value: JSONValue, *, key: str | None = None) -> JSONValue:
    """Deep-redact secret-looking keys and substrings."""

    if key is not None and any(term in key.lower() for term in _SECRET_KEY_TERMS):
        return REDACTED
    if isinstance(value, str):
        for pattern, replacement in _SECRET_PATTERNS:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    if isinstance(value, dict):
        return {name: redact_secrets(item, key=name) for name, item in value.items()}
    return value


def _route_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def _unchanged(value: JSONValue) -> JSONValue:
    return value


def _utc_iso(epoch_seconds: float) -> str:
    stamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return repr(value)


__all__ = [
    "JSONValue",
    "LoggingConfig",
    "REDACTED",
    "ROOT_LOGGER_NAME",
    "Redactor",
    "RuntimeLogging",
    "correlation_scope",
    "current_correlation",
    "redact_secrets",
]
