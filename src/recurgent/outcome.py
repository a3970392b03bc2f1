"""Call-boundary value types: ``Outcome``, ``CallContext`` and ``CallRequest``."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Final

from recurgent.errors import RecurgentError, is_retriable

OUTCOME_WIRE_KEY: Final[str] = "__recurgent_outcome__"


class OutcomeStatus(StrEnum):
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Outcome:
    """Tagged result of a call; the only value that crosses the controller boundary."""

    status: OutcomeStatus
    value: Any = None
    error_type: str | None = None
    error_message: str | None = None
    retriable: bool = False
    role: str | None = None
    method: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", OutcomeStatus(self.status))
        if self.status is OutcomeStatus.ERROR and not self.error_type:
            raise ValueError("error outcomes require error_type")
        if self.status is OutcomeStatus.OK and self.error_type is not None:
            raise ValueError("ok outcomes must not carry error_type")
        object.__setattr__(self, "metadata", dict(self.metadata))

    @classmethod
    def ok(
        cls,
        value: Any = None,
        *,
        role: str | None = None,
        method: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Outcome:
        return cls(
            status=OutcomeStatus.OK,
            value=value,
            role=role,
            method=method,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def error(
        cls,
        error_type: str,
        error_message: str,
        *,
        retriable: bool | None = None,
        role: str | None = None,
        method: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Outcome:
        return cls(
            status=OutcomeStatus.ERROR,
            error_type=str(error_type),
            error_message=error_message,
            retriable=is_retriable(str(error_type)) if retriable is None else bool(retriable),
            role=role,
            method=method,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def from_exception(
        cls,
        exc: RecurgentError,
        *,
        role: str | None = None,
        method: str | None = None,
    ) -> Outcome:
        return cls.error(
            exc.error_type,
            exc.message,
            retriable=exc.retriable,
            role=role,
            method=method,
            metadata=exc.metadata,
        )

    @property
    def is_ok(self) -> bool:
        return self.status is OutcomeStatus.OK

    @property
    def is_error(self) -> bool:
        return self.status is OutcomeStatus.ERROR

    def with_identity(self, *, role: str, method: str) -> Outcome:
        return replace(
            self,
            role=self.role or role,
            method=self.method or method,
        )

    def with_metadata(self, **extra: Any) -> Outcome:
        merged = dict(self.metadata)
        merged.update(extra)
        return replace(self, metadata=merged)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "value": self.value,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "retriable": self.retriable,
            "role": self.role,
            "method": self.method,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Outcome:
        return cls(
            status=OutcomeStatus(str(payload.get("status", "error"))),
            value=payload.get("value"),
            error_type=payload.get("error_type"),
            error_message=payload.get("error_message"),
            retriable=bool(payload.get("retriable", False)),
            role=payload.get("role"),
            method=payload.get("method"),
            metadata=dict(payload.get("metadata") or {}),
        )


def encode_wire_value(value: Any) -> Any:
    """Wrap ``Outcome`` values so they survive a JSON round trip."""

    if isinstance(value, Outcome):
        return {OUTCOME_WIRE_KEY: value.to_dict()}
    return value


def decode_wire_value(value: Any) -> Any:
    if isinstance(value, Mapping) and set(value) == {OUTCOME_WIRE_KEY}:
        return Outcome.from_dict(value[OUTCOME_WIRE_KEY])
    return value


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class CallContext:
    """Explicit per-call lineage threaded through delegated sub-calls."""

    trace_id: str
    call_id: str
    parent_call_id: str | None = None
    depth: int = 0

    def __post_init__(self) -> None:
        if self.depth < 0:
            raise ValueError("depth must be >= 0")
        if not self.trace_id or not self.call_id:
            raise ValueError("trace_id and call_id must not be empty")

    @classmethod
    def root(cls, *, trace_id: str | None = None) -> CallContext:
        return cls(trace_id=trace_id or _new_id(), call_id=_new_id())

    def child(self) -> CallContext:
        return CallContext(
            trace_id=self.trace_id,
            call_id=_new_id(),
            parent_call_id=self.call_id,
            depth=self.depth + 1,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "call_id": self.call_id,
            "parent_call_id": self.parent_call_id,
            "depth": self.depth,
        }


@dataclass(frozen=True, slots=True)
class CallRequest:
    """One role method invocation; immutable after creation."""

    role: str
    method: str
    args: tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)
    context: CallContext = field(default_factory=CallContext.root)
    contract: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, str) or not self.role.strip():
            raise ValueError("role must be a non-empty string")
        if not isinstance(self.method, str) or not self.method.strip():
            raise ValueError("method must be a non-empty string")
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "kwargs", MappingProxyType(dict(self.kwargs)))


__all__ = [
    "CallContext",
    "CallRequest",
    "OUTCOME_WIRE_KEY",
    "Outcome",
    "OutcomeStatus",
    "decode_wire_value",
    "encode_wire_value",
]
