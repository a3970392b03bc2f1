"""
recurgent — generation retry engine

Purpose
- Turn provider payloads into validated ``GeneratedArtifact`` values with
  bounded, feedback-driven retries.

Functional requirements
- Reject non-mapping payloads, empty code, code that does not compile and
  invalid dependency manifests.
- Retry up to ``max_attempts``; each retry carries the previous failure as
  ``feedback``. Exhaustion raises the last classified error.
- Provider timeouts never exceed the remaining call deadline.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from recurgent.constants import DEFAULT_MAX_GENERATION_ATTEMPTS, DEFAULT_PROVIDER_TIMEOUT_SECONDS
from recurgent.environment.manifest import DependencyManifest, normalize_manifest
from recurgent.errors import (
    InvalidCodeError,
    ProviderError,
    ProviderTimeoutError,
    RecurgentError,
)
from recurgent.execution.program import compile_program
from recurgent.synthesis.provider import (
    CodeProvider,
    GenerationRequest,
    normalize_provider_exception,
    provider_name,
)
from recurgent.utils.hashing import sha256_json


def compute_checksum(code: str, dependencies: DependencyManifest) -> str:
    """Content address of generated code plus its manifest."""

    return "sha256:" + sha256_json({"code": code, "dependencies": dependencies.to_list()})


@dataclass(frozen=True, slots=True)
class GeneratedArtifact:
    code: str
    dependencies: DependencyManifest
    checksum: str

    @classmethod
    def build(cls, code: str, dependencies: DependencyManifest | None = None) -> GeneratedArtifact:
        manifest = dependencies if dependencies is not None else DependencyManifest()
        return cls(code=code, dependencies=manifest, checksum=compute_checksum(code, manifest))


@dataclass(frozen=True, slots=True)
class GenerationResult:
    artifact: GeneratedArtifact
    attempts: int


def validate_payload(payload: object, *, provider: str) -> GeneratedArtifact:
    """Validate one provider payload and build the artifact."""

    if not isinstance(payload, Mapping):
        raise InvalidCodeError(
            f"provider payload must be an object, got {type(payload).__name__}", provider=provider
        )
    code = payload.get("code")
    if not isinstance(code, str) or not code.strip():
        raise InvalidCodeError("provider returned empty code", provider=provider)
    try:
        compile_program(code)
    except (SyntaxError, ValueError) as exc:
        raise InvalidCodeError(
            f"generated code does not compile: {exc}", provider=provider
        ) from exc
    manifest = normalize_manifest(payload.get("dependencies"))
    return GeneratedArtifact.build(code, manifest)


class GenerationEngine:
    """Bounded generate-validate loop around a ``CodeProvider``."""

    def __init__(
        self,
        provider: CodeProvider,
        *,
        model: str = "default",
        max_attempts: int = DEFAULT_MAX_GENERATION_ATTEMPTS,
        provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be > 0")
        self._provider = provider
        self._provider_name = provider_name(provider)
        self._model = model
        self._max_attempts = max_attempts
        self._provider_timeout_seconds = float(provider_timeout_seconds)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def model(self) -> str:
        return self._model

    def generate(
        self,
        role: str,
        method: str,
        prompt_context: Mapping[str, Any],
        *,
        timeout_seconds: float | None = None,
        feedback: str | None = None,
    ) -> GenerationResult:
        started = self._clock()
        current_feedback = feedback
        last_error: RecurgentError | None = None

        for attempt in range(1, self._max_attempts + 1):
            request_timeout = self._provider_timeout_seconds
            if timeout_seconds is not None:
                remaining = timeout_seconds - (self._clock() - started)
                if remaining <= 0:
                    exhausted = ProviderTimeoutError(
                        "call deadline expired before generation completed",
                        provider=self._provider_name,
                    )
                    exhausted.metadata["generation_attempts"] = attempt - 1
                    raise exhausted from last_error
                request_timeout = min(request_timeout, remaining)

            request = GenerationRequest(
                model=self._model,
                role=role,
                method=method,
                prompt_context=prompt_context,
                feedback=current_feedback,
                attempt=attempt,
                timeout_seconds=request_timeout,
            )
            try:
                artifact = self._attempt(request)
            except RecurgentError as exc:
                last_error = exc
                self._logger.warning(
                    "generation_attempt_failed",
                    role=role,
                    method=method,
                    attempt=attempt,
                    error_type=exc.error_type,
                    detail=exc.message,
                )
                if isinstance(exc, ProviderError) and not exc.retriable:
                    break
                current_feedback = _feedback_for(exc, attempt=attempt, prior=feedback)
                continue

            self._logger.info(
                "generation_succeeded",
                role=role,
                method=method,
                attempts=attempt,
                checksum=artifact.checksum,
                dependencies=artifact.dependencies.requirements(),
            )
            return GenerationResult(artifact=artifact, attempts=attempt)

        assert last_error is not None
        last_error.metadata["generation_attempts"] = min(attempt, self._max_attempts)
        raise last_error

    def _attempt(self, request: GenerationRequest) -> GeneratedArtifact:
        try:
            payload = self._provider.generate(request)
        except ProviderError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise normalize_provider_exception(exc, provider=self._provider_name) from exc
        return validate_payload(payload, provider=self._provider_name)


def _feedback_for(exc: RecurgentError, *, attempt: int, prior: str | None) -> str:
    message = f"attempt {attempt} failed ({exc.error_type}): {exc.message}"
    if prior:
        return f"{prior}\n{message}"
    return message


__all__ = [
    "GeneratedArtifact",
    "GenerationEngine",
    "GenerationResult",
    "compute_checksum",
    "validate_payload",
]
