"""
recurgent — execution sandbox

Purpose
- Run a generated program either in-process (no dependencies) or in the
  dependency worker for its environment.

Functional requirements
- In-process programs get a fresh namespace per call exposing only builtins,
  ``Outcome`` and ``delegate``; names they define die with the namespace.
- Uncaught exceptions become ``ExecutionError``.
- The shared context must hold data only. Code objects already present before
  a run raise the fatal ``RegistryIntegrityError``; code objects left behind by
  the run raise ``ContextIntegrityError`` so the caller can roll back and repair.

Non-functional requirements
- In-process code cannot be preempted; call deadlines are enforced by the
  controller at stage boundaries and by the worker round-trip timeout.
"""

from __future__ import annotations

import builtins
import time
from collections.abc import Callable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from types import ModuleType
from typing import Any

import structlog

from recurgent.environment.manager import EnvironmentManager
from recurgent.environment.manifest import DependencyManifest
from recurgent.errors import (
    ContextIntegrityError,
    DependencyActivationError,
    ExecutionError,
    RecurgentError,
    RegistryIntegrityError,
)
from recurgent.execution.program import compile_program, load_program
from recurgent.execution.worker import WorkerSupervisor
from recurgent.outcome import Outcome

DelegateFunction = Callable[..., Outcome]


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Value produced by one program run plus execution-path facts."""

    value: Any
    duration_ms: float
    env_id: str | None = None
    environment_cache_hit: bool | None = None
    env_resolve_ms: float | None = None
    env_install_ms: float | None = None
    worker_pid: int | None = None
    worker_restart_count: int | None = None


def _no_delegate(role: str, method: str, *args: Any, **kwargs: Any) -> Outcome:
    raise RuntimeError(f"delegate({role!r}, {method!r}) is not available in this execution")


class ExecutionSandbox:
    """Execute generated programs in-process or through a dependency worker."""

    def __init__(
        self,
        *,
        environment_manager: EnvironmentManager | None = None,
        worker_supervisor: WorkerSupervisor | None = None,
        logger: Any | None = None,
    ) -> None:
        self._environment_manager = environment_manager
        self._worker_supervisor = worker_supervisor
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def execute(
        self,
        *,
        role: str,
        method: str,
        code: str,
        dependencies: DependencyManifest,
        context: MutableMapping[str, Any],
        args: Sequence[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
        delegate: DelegateFunction | None = None,
    ) -> ExecutionResult:
        check_context_integrity(context, role=role, method=method)
        if dependencies:
            result = self._execute_in_worker(
                role=role,
                method=method,
                code=code,
                dependencies=dependencies,
                context=context,
                args=args,
                kwargs=kwargs or {},
                timeout_seconds=timeout_seconds,
            )
        else:
            result = self._execute_in_process(
                role=role,
                method=method,
                code=code,
                context=context,
                args=args,
                kwargs=kwargs or {},
                delegate=delegate,
            )
        leaked = _find_non_data(context, "context")
        if leaked is not None:
            raise ContextIntegrityError(
                f"generated code stored a callable or module in the shared context at {leaked}",
                path=leaked,
            )
        return result

    def _execute_in_process(
        self,
        *,
        role: str,
        method: str,
        code: str,
        context: MutableMapping[str, Any],
        args: Sequence[Any],
        kwargs: Mapping[str, Any],
        delegate: DelegateFunction | None,
    ) -> ExecutionResult:
        started = time.monotonic()
        namespace: dict[str, Any] = {
            "__builtins__": builtins,
            "__name__": f"recurgent_program_{method}",
            "Outcome": Outcome,
            "delegate": delegate or _no_delegate,
        }
        try:
            compiled = compile_program(code, filename=f"<recurgent:{role}.{method}>")
            program = load_program(compiled, namespace)
            value = program(context, tuple(args), dict(kwargs))
        except RegistryIntegrityError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._logger.debug(
                "program_raised",
                role=role,
                method=method,
                exception_class=type(exc).__name__,
            )
            raise ExecutionError(
                f"{type(exc).__name__}: {exc}", exception_class=type(exc).__name__
            ) from exc
        return ExecutionResult(value=value, duration_ms=_elapsed_ms(started))

    def _execute_in_worker(
        self,
        *,
        role: str,
        method: str,
        code: str,
        dependencies: DependencyManifest,
        context: MutableMapping[str, Any],
        args: Sequence[Any],
        kwargs: Mapping[str, Any],
        timeout_seconds: float | None,
    ) -> ExecutionResult:
        if self._environment_manager is None or self._worker_supervisor is None:
            raise DependencyActivationError(
                "code declares dependencies but no environment manager"
                " or worker supervisor is configured",
                metadata={"dependencies": dependencies.requirements()},
            )

        started = time.monotonic()
        environment = self._environment_manager.ensure_environment(
            dependencies, timeout_seconds=timeout_seconds
        )
        remaining = None
        if timeout_seconds is not None:
            remaining = max(0.001, timeout_seconds - (time.monotonic() - started))
        try:
            worker_result = self._worker_supervisor.run_in_worker(
                env_id=environment.env_id,
                site_packages=environment.site_packages,
                code=code,
                role=role,
                method=method,
                context=context,
                args=args,
                kwargs=kwargs,
                timeout_seconds=remaining,
            )
        except RecurgentError as exc:
            exc.metadata.setdefault("env_id", environment.env_id)
            exc.metadata.setdefault("environment_cache_hit", environment.cache_hit)
            raise

        context.clear()
        context.update(worker_result.context)
        return ExecutionResult(
            value=worker_result.value,
            duration_ms=_elapsed_ms(started),
            env_id=environment.env_id,
            environment_cache_hit=environment.cache_hit,
            env_resolve_ms=environment.timings.resolve_ms,
            env_install_ms=environment.timings.install_ms,
            worker_pid=worker_result.worker_pid,
            worker_restart_count=worker_result.restart_count,
        )


def check_context_integrity(
    context: Mapping[str, Any], *, role: str | None = None, method: str | None = None
) -> None:
    """Raise ``RegistryIntegrityError`` when ``context`` holds code objects."""

    offending = _find_non_data(context, "context")
    if offending is not None:
        raise RegistryIntegrityError(
            f"shared context already holds a callable or module at {offending}",
            role=role,
            method=method,
        )


def _find_non_data(value: object, path: str) -> str | None:
    if isinstance(value, ModuleType) or callable(value):
        return path
    if isinstance(value, Mapping):
        for key, item in value.items():
            found = _find_non_data(item, f"{path}[{key!r}]")
            if found is not None:
                return found
    elif isinstance(value, (list, tuple, set, frozenset)):
        for index, item in enumerate(value):
            found = _find_non_data(item, f"{path}[{index}]")
            if found is not None:
                return found
    return None


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000.0, 3)


__all__ = [
    "DelegateFunction",
    "ExecutionResult",
    "ExecutionSandbox",
    "check_context_integrity",
]
