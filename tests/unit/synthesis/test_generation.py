"""Unit tests for the generation retry engine."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from recurgent.environment.manifest import normalize_manifest
from recurgent.errors import (
    InvalidCodeError,
    InvalidDependencyManifestError,
    ProviderError,
    ProviderTimeoutError,
)
from recurgent.synthesis.generation import (
    GeneratedArtifact,
    GenerationEngine,
    compute_checksum,
    validate_payload,
)
from recurgent.synthesis.provider import GenerationRequest


class ScriptedProvider:
    name = "scripted"

    def __init__(self, *responses: object) -> None:
        self._responses = list(responses)
        self.requests: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> Mapping[str, Any]:
        self.requests.append(request)
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response  # type: ignore[return-value]


class SteppingClock:
    def __init__(self, step: float) -> None:
        self._now = 0.0
        self._step = step

    def __call__(self) -> float:
        current = self._now
        self._now += self._step
        return current


def test_first_valid_payload_wins() -> None:
    provider = ScriptedProvider({"code": "result = 1", "dependencies": [{"name": "Rich"}]})
    engine = GenerationEngine(provider, model="test-model")

    result = engine.generate("calc", "one", {"role": "calc"})

    assert result.attempts == 1
    assert result.artifact.code == "result = 1"
    assert result.artifact.dependencies.names == ("rich",)
    assert provider.requests[0].model == "test-model"
    assert provider.requests[0].feedback is None


def test_invalid_code_is_retried_with_feedback() -> None:
    provider = ScriptedProvider({"code": "return ("}, {"code": "return 2"})
    engine = GenerationEngine(provider, max_attempts=2)

    result = engine.generate("calc", "two", {}, feedback="earlier hint")

    assert result.attempts == 2
    second = provider.requests[1]
    assert second.attempt == 2
    assert second.feedback is not None
    assert second.feedback.startswith("earlier hint\nattempt 1 failed (invalid_code)")


def test_exhaustion_raises_last_error_with_attempt_count() -> None:
    provider = ScriptedProvider({"code": " "}, {"code": "def broken(:"})
    engine = GenerationEngine(provider, max_attempts=2)

    with pytest.raises(InvalidCodeError) as excinfo:
        engine.generate("calc", "three", {})

    assert "does not compile" in excinfo.value.message
    assert excinfo.value.metadata["generation_attempts"] == 2


def test_invalid_manifest_is_retried() -> None:
    provider = ScriptedProvider(
        {"code": "result = 1", "dependencies": "rich"},
        {"code": "result = 1", "dependencies": []},
    )

    result = GenerationEngine(provider).generate("calc", "four", {})

    assert result.attempts == 2
    assert "invalid_dependency_manifest" in (provider.requests[1].feedback or "")


def test_arbitrary_provider_exceptions_are_normalized() -> None:
    provider = ScriptedProvider(TimeoutError("read timed out"), ConnectionError("reset"))
    engine = GenerationEngine(provider, max_attempts=2)

    with pytest.raises(ProviderError) as excinfo:
        engine.generate("calc", "five", {})

    assert excinfo.value.code == "provider"
    assert excinfo.value.metadata["exception_class"] == "ConnectionError"
    assert "timeout" in (provider.requests[1].feedback or "")


def test_non_retryable_provider_error_stops_immediately() -> None:
    denied = ProviderError(provider="scripted", code="auth", detail="bad key", retryable=False)
    provider = ScriptedProvider(denied, {"code": "result = 1"})

    with pytest.raises(ProviderError, match="code=auth"):
        GenerationEngine(provider, max_attempts=3).generate("calc", "six", {})

    assert len(provider.requests) == 1


def test_provider_timeout_is_bounded_by_deadline() -> None:
    provider = ScriptedProvider({"code": "return ("}, {"code": "result = 1"})
    engine = GenerationEngine(
        provider, max_attempts=3, provider_timeout_seconds=60.0, clock=SteppingClock(1.0)
    )

    engine.generate("calc", "seven", {}, timeout_seconds=10.0)

    timeouts = [request.timeout_seconds for request in provider.requests]
    assert timeouts[0] is not None and timeouts[0] <= 10.0
    assert timeouts[1] is not None and timeouts[1] < timeouts[0]


def test_expired_deadline_raises_timeout() -> None:
    provider = ScriptedProvider({"code": "return ("})
    engine = GenerationEngine(provider, max_attempts=3, clock=SteppingClock(5.0))

    with pytest.raises(ProviderTimeoutError) as excinfo:
        engine.generate("calc", "eight", {}, timeout_seconds=6.0)

    assert excinfo.value.metadata["generation_attempts"] == 1


def test_validate_payload_rejects_non_mapping() -> None:
    with pytest.raises(InvalidCodeError, match="must be an object"):
        validate_payload(["result = 1"], provider="scripted")
    with pytest.raises(InvalidDependencyManifestError):
        validate_payload({"code": "result = 1", "dependencies": [{"name": ""}]}, provider="x")


@settings(max_examples=50, deadline=None)
@given(
    code=st.text(min_size=1, max_size=40),
    names=st.lists(st.from_regex(r"[a-z][a-z0-9]{0,6}", fullmatch=True), unique=True, max_size=4),
)
def test_checksum_is_deterministic_over_manifest_order(code: str, names: list[str]) -> None:
    forward = normalize_manifest([{"name": name} for name in names])
    backward = normalize_manifest([{"name": name} for name in reversed(names)])

    checksum = compute_checksum(code, forward)

    assert checksum.startswith("sha256:")
    assert compute_checksum(code, backward) == checksum
    assert GeneratedArtifact.build(code, forward).checksum == checksum
    assert compute_checksum(code + " ", forward) != checksum
