"""Integration tests for the dependency worker subprocess lifecycle."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from recurgent.errors import (
    ErrorType,
    ExecutionError,
    NonSerializableResultError,
    WorkerCrashError,
    WorkerTimeoutError,
)
from recurgent.execution.worker import WorkerResult, WorkerSupervisor

pytestmark = pytest.mark.integration

ENV_ID = "env-integration"


@pytest.fixture
def site_packages(tmp_path: Path) -> Path:
    path = tmp_path / "envs" / ENV_ID / "site-packages"
    path.mkdir(parents=True)
    (path / "fakepkg").mkdir()
    (path / "fakepkg" / "__init__.py").write_text("ANSWER = 42\n", encoding="utf-8")
    return path


@pytest.fixture
def supervisor() -> Iterator[WorkerSupervisor]:
    workers = WorkerSupervisor(default_timeout_seconds=20.0, terminate_grace_seconds=1.0)
    try:
        yield workers
    finally:
        workers.shutdown()


def _run(
    supervisor: WorkerSupervisor,
    site_packages: Path,
    code: str,
    *,
    context: dict[str, object] | None = None,
    args: tuple[object, ...] = (),
    timeout_seconds: float | None = None,
) -> WorkerResult:
    return supervisor.run_in_worker(
        env_id=ENV_ID,
        site_packages=site_packages,
        code=code,
        role="calc",
        method="add",
        context=context or {},
        args=args,
        timeout_seconds=timeout_seconds,
    )


def test_worker_runs_program_against_installed_packages(
    supervisor: WorkerSupervisor, site_packages: Path
) -> None:
    code = (
        "import fakepkg\n"
        "context['total'] = context.get('total', 0) + args[0]\n"
        "print('stdout noise must not corrupt the protocol')\n"
        "return {'total': context['total'], 'answer': fakepkg.ANSWER}\n"
    )

    first = _run(supervisor, site_packages, code, context={"total": 1}, args=(2,))
    second = _run(supervisor, site_packages, code, context=first.context, args=(3,))

    assert first.value == {"total": 3, "answer": 42}
    assert first.context == {"total": 3}
    assert second.value == {"total": 6, "answer": 42}
    assert first.worker_pid == second.worker_pid
    assert second.restart_count == 0
    assert supervisor.worker_pid(ENV_ID) == first.worker_pid


def test_program_errors_keep_the_worker(supervisor: WorkerSupervisor, site_packages: Path) -> None:
    baseline = _run(supervisor, site_packages, "return 1\n")

    with pytest.raises(ExecutionError) as excinfo:
        _run(supervisor, site_packages, "raise ValueError('bad input')\n")
    with pytest.raises(NonSerializableResultError):
        _run(supervisor, site_packages, "return {1, 2}\n")

    assert excinfo.value.metadata["exception_class"] == "ValueError"
    assert "bad input" in excinfo.value.message
    assert supervisor.worker_pid(ENV_ID) == baseline.worker_pid
    assert supervisor.restart_count(ENV_ID) == 0


@pytest.mark.parametrize(
    ("field", "context", "args"),
    [
        ("args", {}, ({1, 2},)),
        ("context", {"seen": {"a"}}, ()),
        ("context", {"ratio": float("nan")}, ()),
    ],
)
def test_non_json_request_fails_before_spawning_a_worker(
    supervisor: WorkerSupervisor,
    site_packages: Path,
    field: str,
    context: dict[str, object],
    args: tuple[object, ...],
) -> None:
    with pytest.raises(NonSerializableResultError) as excinfo:
        _run(supervisor, site_packages, "return 1\n", context=context, args=args)

    assert excinfo.value.retriable is False
    assert excinfo.value.metadata == {"direction": "request", "field": field}
    assert supervisor.worker_pid(ENV_ID) is None


def test_non_json_kwargs_are_rejected(supervisor: WorkerSupervisor, site_packages: Path) -> None:
    with pytest.raises(NonSerializableResultError) as excinfo:
        supervisor.run_in_worker(
            env_id=ENV_ID,
            site_packages=site_packages,
            code="return 1\n",
            role="calc",
            method="add",
            context={},
            kwargs={"when": object()},
        )

    assert excinfo.value.metadata["field"] == "kwargs"


def test_worker_crash_is_retriable_and_respawns(
    supervisor: WorkerSupervisor, site_packages: Path
) -> None:
    baseline = _run(supervisor, site_packages, "return 1\n")

    with pytest.raises(WorkerCrashError) as excinfo:
        _run(supervisor, site_packages, "import os\nos._exit(3)\n")

    assert excinfo.value.error_type == ErrorType.WORKER_CRASH
    assert excinfo.value.retriable is True
    assert excinfo.value.metadata["reason"] == "exited"
    assert excinfo.value.metadata["worker_restart_count"] == 1

    recovered = _run(supervisor, site_packages, "return 2\n")

    assert recovered.value == 2
    assert recovered.restart_count == 1
    assert recovered.worker_pid != baseline.worker_pid


def test_worker_timeout_kills_and_replaces_worker(
    supervisor: WorkerSupervisor, site_packages: Path
) -> None:
    with pytest.raises(WorkerTimeoutError) as excinfo:
        _run(supervisor, site_packages, "while True:\n    pass\n", timeout_seconds=1.0)

    assert excinfo.value.error_type == ErrorType.WORKER_CRASH
    assert excinfo.value.metadata["reason"] == "timeout"
    assert excinfo.value.metadata["timeout_seconds"] == 1.0
    assert supervisor.restart_count(ENV_ID) == 1
    assert supervisor.worker_pid(ENV_ID) is None

    assert _run(supervisor, site_packages, "return 'alive'\n").value == "alive"


def test_shutdown_is_idempotent(supervisor: WorkerSupervisor, site_packages: Path) -> None:
    _run(supervisor, site_packages, "return 1\n")

    supervisor.shutdown()
    supervisor.shutdown()

    assert supervisor.worker_pid(ENV_ID) is None
