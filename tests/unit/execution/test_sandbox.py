"""Unit tests for in-process sandbox execution."""

from __future__ import annotations

from typing import Any

import pytest

from recurgent.environment.manifest import normalize_manifest
from recurgent.errors import (
    ContextIntegrityError,
    DependencyActivationError,
    ErrorType,
    ExecutionError,
    RegistryIntegrityError,
)
from recurgent.execution.sandbox import ExecutionSandbox, check_context_integrity
from recurgent.outcome import Outcome

NO_DEPS = normalize_manifest([])


def _execute(sandbox: ExecutionSandbox, code: str, **kwargs: Any) -> Any:
    params: dict[str, Any] = {
        "role": "calc",
        "method": "run",
        "code": code,
        "dependencies": NO_DEPS,
        "context": {},
    }
    params.update(kwargs)
    return sandbox.execute(**params)


def test_in_process_run_returns_value_and_mutates_context() -> None:
    context: dict[str, Any] = {"memory": []}

    result = _execute(
        ExecutionSandbox(),
        "context['memory'].append(args[0])\nresult = len(context['memory'])",
        context=context,
        args=(7,),
    )

    assert result.value == 1
    assert context == {"memory": [7]}
    assert result.env_id is None
    assert result.duration_ms >= 0


def test_program_exception_becomes_execution_error() -> None:
    with pytest.raises(ExecutionError) as excinfo:
        _execute(ExecutionSandbox(), "raise KeyError('missing')")

    assert excinfo.value.exception_class == "KeyError"
    assert excinfo.value.metadata["exception_class"] == "KeyError"
    assert "KeyError" in excinfo.value.message


def test_names_do_not_leak_between_calls() -> None:
    sandbox = ExecutionSandbox()
    _execute(sandbox, "global leaked\nleaked = 1")

    with pytest.raises(ExecutionError, match="NameError"):
        _execute(sandbox, "result = leaked")


def test_outcome_and_delegate_are_injected() -> None:
    calls: list[tuple[str, str, tuple[Any, ...]]] = []

    def delegate(role: str, method: str, *args: Any, **kwargs: Any) -> Outcome:
        calls.append((role, method, args))
        return Outcome.ok(args[0] * 10)

    result = _execute(
        ExecutionSandbox(),
        "inner = delegate('helper', 'scale', 4)\nresult = Outcome.ok(inner.value + 1)",
        delegate=delegate,
    )

    assert calls == [("helper", "scale", (4,))]
    assert result.value == Outcome.ok(41)


def test_missing_delegate_raises_execution_error() -> None:
    with pytest.raises(ExecutionError, match="not available"):
        _execute(ExecutionSandbox(), "delegate('helper', 'run')")


def test_callable_left_in_context_is_a_recoverable_integrity_failure() -> None:
    with pytest.raises(ContextIntegrityError) as excinfo:
        _execute(ExecutionSandbox(), "context['items'] = [1, lambda: 2]")

    assert excinfo.value.path == "context['items'][1]"
    assert excinfo.value.error_type == ErrorType.GUARDRAIL_VIOLATION
    assert excinfo.value.metadata["violation_type"] == "context_integrity_violation"


def test_callable_already_in_context_is_fatal_before_running() -> None:
    context: dict[str, Any] = {"hook": len}

    with pytest.raises(RegistryIntegrityError) as excinfo:
        _execute(ExecutionSandbox(), "context['ran'] = True", context=context)

    assert excinfo.value.role == "calc"
    assert "ran" not in context


def test_check_context_integrity_accepts_plain_data() -> None:
    check_context_integrity({"a": {"b": [1, "x", None]}, "c": (1.5,)})
    with pytest.raises(RegistryIntegrityError):
        check_context_integrity({"mod": pytest})


def test_dependencies_without_worker_stack_fail_activation() -> None:
    with pytest.raises(DependencyActivationError):
        _execute(
            ExecutionSandbox(),
            "result = 1",
            dependencies=normalize_manifest([{"name": "rich"}]),
        )
