"""
recurgent — code provider contract

Purpose
- Request model and protocol for the external code-generation collaborator.

What should be included in this file
- ``GenerationRequest`` with model, role, method, prompt context, feedback,
  attempt number and timeout.
- ``CodeProvider`` protocol returning ``{"code": ..., "dependencies": [...]}``.
- Normalization of arbitrary provider exceptions into ``ProviderError``.

Non-functional requirements
- Concrete LLM bindings live outside this package; tests inject fakes.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

from recurgent.errors import ProviderError, ProviderTimeoutError

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _coerce_json_value(value: object, *, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path} keys must be strings")
            out[key] = _coerce_json_value(item, path=f"{path}.{key}")
        return out
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_coerce_json_value(item, path=f"{path}[]") for item in value]
    return repr(value)


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """One generation attempt for a role method."""

    model: str
    role: str
    method: str
    prompt_context: Mapping[str, JSONValue] = field(default_factory=dict)
    feedback: str | None = None
    attempt: int = 1
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "model", _validate_non_empty_str(self.model, "GenerationRequest.model")
        )
        object.__setattr__(
            self, "role", _validate_non_empty_str(self.role, "GenerationRequest.role")
        )
        object.__setattr__(
            self, "method", _validate_non_empty_str(self.method, "GenerationRequest.method")
        )
        if self.attempt < 1:
            raise ValueError("GenerationRequest.attempt must be >= 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("GenerationRequest.timeout_seconds must be > 0")
        context = _coerce_json_value(
            dict(self.prompt_context), path="GenerationRequest.prompt_context"
        )
        object.__setattr__(self, "prompt_context", context)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "model": self.model,
            "role": self.role,
            "method": self.method,
            "prompt_context": dict(self.prompt_context),
            "feedback": self.feedback,
            "attempt": self.attempt,
            "timeout_seconds": self.timeout_seconds,
        }


@runtime_checkable
class CodeProvider(Protocol):
    """Produces a method body plus an optional dependency manifest."""

    def generate(self, request: GenerationRequest) -> Mapping[str, Any]: ...


def provider_name(provider: object) -> str:
    name = getattr(provider, "name", None)
    if isinstance(name, str) and name.strip():
        return name.strip()
    return type(provider).__name__


def normalize_provider_exception(exc: BaseException, *, provider: str) -> ProviderError:
    """Map a non-``ProviderError`` exception into the provider error family."""

    if isinstance(exc, ProviderError):
        return exc
    detail = _normalize_detail(exc)
    if _looks_like_timeout(exc):
        return ProviderTimeoutError(detail, provider=provider)
    return ProviderError(
        provider=provider,
        code="provider",
        detail=detail,
        retryable=True,
        metadata={"exception_class": type(exc).__name__},
    )


def _looks_like_timeout(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    lowered = f"{type(exc).__name__} {exc}".lower()
    return "timeout" in lowered or "timed out" in lowered


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


__all__ = [
    "CodeProvider",
    "GenerationRequest",
    "JSONValue",
    "normalize_provider_exception",
    "provider_name",
]
