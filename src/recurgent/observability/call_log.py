"""
recurgent — per-call observability records.

Purpose
- Emit exactly one structured, appendable record per controller call.

Functional requirements
- Records carry method identity, outcome status / error type / retriable flag,
  selected artifact checksum and its lifecycle state at selection time,
  guardrail violation kind and enforcement, contract pass/fail, and
  environment cache hit/miss.
- ``JsonLinesCallLog`` appends one canonical JSON object per line and is safe
  to share between threads.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator


@dataclass(slots=True)
class CallRecord:
    """Facts about one resolved call."""

    role: str
    method: str
    trace_id: str
    call_id: str
    parent_call_id: str | None
    depth: int
    timestamp: str = field(default_factory=lambda: _utc_now_iso())
    runtime: str = "python"
    model: str | None = None
    outcome_status: str | None = None
    error_type: str | None = None
    retriable: bool | None = None
    duration_ms: float | None = None
    artifact_source: str | None = None
    artifact_checksum: str | None = None
    lifecycle_state_at_selection: str | None = None
    lifecycle_decision: str | None = None
    generation_attempts: int = 0
    guardrail_violation: str | None = None
    guardrail_enforced: bool | None = None
    guardrail_recovery_attempts: int = 0
    execution_repair_attempts: int = 0
    outcome_repair_attempts: int = 0
    contract_applied: bool = False
    contract_passed: bool | None = None
    contract_mismatch: str | None = None
    env_id: str | None = None
    environment_cache_hit: bool | None = None
    env_resolve_ms: float | None = None
    env_install_ms: float | None = None
    worker_pid: int | None = None
    worker_restart_count: int | None = None
    dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CallRecordSink(Protocol):
    """Destination for per-call records."""

    def emit(self, record: CallRecord) -> None: ...


class InMemoryCallLog:
    """Thread-safe in-memory sink."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[CallRecord] = []

    def emit(self, record: CallRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[CallRecord]:
        with self._lock:
            return list(self._records)

    def __iter__(self) -> Iterator[CallRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonLinesCallLog:
    """Append-only JSON-lines sink."""

    def __init__(self, path: Path | str, *, logger: Any | None = None) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, record: CallRecord) -> None:
        line = json.dumps(
            record.to_dict(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=repr,
        )
        with self._lock, self._path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        self._logger.debug(
            "call_record_written",
            role=record.role,
            method=record.method,
            outcome_status=record.outcome_status,
        )

    def read(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        with self._lock:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "CallRecord",
    "CallRecordSink",
    "InMemoryCallLog",
    "JsonLinesCallLog",
]
