"""
recurgent — worker supervisor

Purpose
- Own one long-lived worker subprocess per ``env_id`` and run generated
  programs in it over a JSON-lines pipe.

What should be included in this file
- Spawn with the environment's ``site-packages`` first on ``PYTHONPATH``.
- Request/response framing with ``ipc_version`` and ``call_id`` checks.
- Timeout handling that kills the whole process tree.

Functional requirements
- Abnormal exit, broken pipe, invalid JSON, mismatched ``call_id`` or no reply
  before the deadline raise a retriable ``WorkerCrashError`` and discard the
  worker; the next call spawns a replacement and ``restart_count`` grows.
- ``non_serializable_result`` and ``execution`` responses map to their typed
  errors without discarding the worker.
- Arguments and context that cannot cross the pipe as JSON are rejected with
  ``NonSerializableResultError`` before any worker is touched.
"""

from __future__ import annotations

import contextlib
import json
import os
import queue
import subprocess
import sys
import threading
import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import psutil
import structlog

from recurgent.constants import (
    DEFAULT_WORKER_TERMINATE_GRACE_SECONDS,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    WORKER_IPC_VERSION,
)
from recurgent.errors import (
    ExecutionError,
    NonSerializableResultError,
    WorkerCrashError,
    WorkerTimeoutError,
)
from recurgent.execution.program import is_json_compatible
from recurgent.outcome import decode_wire_value

WORKER_MODULE = "recurgent.execution.worker_entrypoint"
WORKER_STDERR_FILENAME = "worker-stderr.log"

_EOF = object()


@dataclass(frozen=True, slots=True)
class WorkerResult:
    """Successful worker round trip."""

    value: Any
    context: dict[str, Any]
    worker_pid: int
    restart_count: int


def _package_parent() -> Path:
    return Path(__file__).resolve().parents[2]


class _WorkerProcess:
    """A single spawned worker and its stdout reader thread."""

    def __init__(
        self,
        *,
        env_id: str,
        site_packages: Path,
        python_executable: str,
        stderr_path: Path | None,
        extra_env: Mapping[str, str],
    ) -> None:
        self.env_id = env_id
        python_path = [str(site_packages), str(_package_parent())]
        env = {"PATH": os.environ.get("PATH", "")}
        env.update(extra_env)
        env["PYTHONPATH"] = os.pathsep.join(python_path)
        env["PYTHONUNBUFFERED"] = "1"
        env["PYTHONIOENCODING"] = "utf-8"

        self._stderr_handle: IO[bytes] | None = None
        stderr_target: Any = subprocess.DEVNULL
        if stderr_path is not None:
            stderr_path.parent.mkdir(parents=True, exist_ok=True)
            self._stderr_handle = stderr_path.open("ab")
            stderr_target = self._stderr_handle

        self._process = subprocess.Popen(
            [python_executable, "-m", WORKER_MODULE],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=stderr_target,
            env=env,
            cwd=str(site_packages.parent),
            text=True,
            encoding="utf-8",
            bufsize=1,
            start_new_session=True,
        )
        self._responses: queue.Queue[object] = queue.Queue()
        self._reader = threading.Thread(
            target=self._read_stdout,
            name=f"recurgent-worker-{self._process.pid}",
            daemon=True,
        )
        self._reader.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def alive(self) -> bool:
        return self._process.poll() is None

    def request(self, payload: Mapping[str, Any], *, timeout_seconds: float) -> dict[str, Any]:
        stdin = self._process.stdin
        if stdin is None or not self.alive:
            raise WorkerCrashError(
                "worker is not running",
                metadata={"reason": "exited", "returncode": self._process.returncode},
            )
        line = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        try:
            stdin.write(line + "\n")
            stdin.flush()
        except (BrokenPipeError, OSError) as exc:
            raise WorkerCrashError(
                f"worker pipe closed: {exc}", metadata={"reason": "broken_pipe"}
            ) from exc

        try:
            raw = self._responses.get(timeout=timeout_seconds)
        except queue.Empty as exc:
            raise WorkerTimeoutError(
                f"worker did not respond within {timeout_seconds} seconds",
                timeout_seconds=timeout_seconds,
            ) from exc

        if raw is _EOF:
            returncode = self._process.wait(timeout=1.0)
            raise WorkerCrashError(
                f"worker exited with code {returncode}",
                metadata={"reason": "exited", "returncode": returncode},
            )
        try:
            response = json.loads(str(raw))
        except ValueError as exc:
            raise WorkerCrashError(
                f"worker sent invalid JSON: {exc}", metadata={"reason": "invalid_json"}
            ) from exc
        if not isinstance(response, dict):
            raise WorkerCrashError(
                "worker response must be a JSON object", metadata={"reason": "invalid_json"}
            )
        if response.get("ipc_version") != WORKER_IPC_VERSION:
            raise WorkerCrashError(
                f"worker ipc_version mismatch: {response.get('ipc_version')!r}",
                metadata={"reason": "ipc_version_mismatch"},
            )
        if response.get("call_id") != payload.get("call_id"):
            raise WorkerCrashError(
                "worker response call_id mismatch",
                metadata={
                    "reason": "call_id_mismatch",
                    "expected": payload.get("call_id"),
                    "actual": response.get("call_id"),
                },
            )
        return response

    def kill(self, *, grace_seconds: float) -> None:
        _kill_process_tree(self._process.pid, grace_seconds=grace_seconds)
        with contextlib.suppress(subprocess.TimeoutExpired):
            self._process.wait(timeout=grace_seconds)
        self.close_streams()

    def shutdown(self, *, grace_seconds: float) -> None:
        stdin = self._process.stdin
        if stdin is not None and not stdin.closed:
            with contextlib.suppress(OSError):
                stdin.close()
        try:
            self._process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            _kill_process_tree(self._process.pid, grace_seconds=grace_seconds)
        self.close_streams()

    def close_streams(self) -> None:
        for stream in (self._process.stdin, self._process.stdout):
            if stream is not None and not stream.closed:
                with contextlib.suppress(OSError):
                    stream.close()
        if self._stderr_handle is not None and not self._stderr_handle.closed:
            self._stderr_handle.close()

    def _read_stdout(self) -> None:
        stdout = self._process.stdout
        if stdout is None:
            self._responses.put(_EOF)
            return
        # The stream is closed underneath us when the worker is killed.
        with contextlib.suppress(OSError, ValueError):
            for line in stdout:
                if line.strip():
                    self._responses.put(line)
        self._responses.put(_EOF)


def _kill_process_tree(pid: int, *, grace_seconds: float) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        processes = [*parent.children(recursive=True), parent]
    except psutil.NoSuchProcess:
        processes = [parent]
    for process in processes:
        with contextlib.suppress(psutil.NoSuchProcess):
            process.terminate()
    _, alive = psutil.wait_procs(processes, timeout=grace_seconds)
    for process in alive:
        with contextlib.suppress(psutil.NoSuchProcess):
            process.kill()
    psutil.wait_procs(alive, timeout=grace_seconds)


def _check_request_payload(
    role: str,
    method: str,
    *,
    context: Mapping[str, Any],
    args: Sequence[Any],
    kwargs: Mapping[str, Any],
) -> None:
    for field_name, value in (("context", context), ("args", args), ("kwargs", kwargs)):
        if not is_json_compatible(value):
            raise NonSerializableResultError(
                f"{role}.{method} {field_name} cannot be sent to a dependency worker as JSON",
                metadata={"direction": "request", "field": field_name},
            )


@dataclass(slots=True)
class _WorkerSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    process: _WorkerProcess | None = None
    restart_count: int = 0


class WorkerSupervisor:
    """Route worker executions to one reusable subprocess per ``env_id``."""

    def __init__(
        self,
        *,
        python_executable: str | None = None,
        default_timeout_seconds: float = DEFAULT_WORKER_TIMEOUT_SECONDS,
        terminate_grace_seconds: float = DEFAULT_WORKER_TERMINATE_GRACE_SECONDS,
        extra_env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        self._python_executable = python_executable or sys.executable
        self._default_timeout_seconds = float(default_timeout_seconds)
        self._terminate_grace_seconds = float(terminate_grace_seconds)
        self._extra_env = dict(extra_env or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._slots_guard = threading.Lock()
        self._slots: dict[str, _WorkerSlot] = {}

    def run_in_worker(
        self,
        *,
        env_id: str,
        site_packages: Path,
        code: str,
        role: str,
        method: str,
        context: Mapping[str, Any],
        args: Sequence[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> WorkerResult:
        """Execute ``code`` in the worker for ``env_id`` and return its result."""

        _check_request_payload(role, method, context=context, args=args, kwargs=kwargs or {})
        timeout = self._default_timeout_seconds if timeout_seconds is None else timeout_seconds
        slot = self._slot_for(env_id)
        payload = {
            "ipc_version": WORKER_IPC_VERSION,
            "call_id": uuid.uuid4().hex,
            "role": role,
            "method": method,
            "code": code,
            "context": dict(context),
            "args": list(args),
            "kwargs": dict(kwargs or {}),
        }

        with slot.lock:
            worker = self._ensure_worker(slot, env_id=env_id, site_packages=site_packages)
            started = time.monotonic()
            try:
                response = worker.request(payload, timeout_seconds=max(timeout, 0.001))
            except WorkerCrashError as exc:
                self._discard(slot, worker, reason=str(exc.metadata.get("reason", "crash")))
                exc.metadata.setdefault("worker_pid", worker.pid)
                exc.metadata["worker_restart_count"] = slot.restart_count
                raise
            restart_count = slot.restart_count

        self._logger.debug(
            "worker_call_completed",
            env_id=env_id,
            role=role,
            method=method,
            worker_pid=worker.pid,
            duration_ms=round((time.monotonic() - started) * 1000.0, 3),
        )
        return self._result_from_response(
            response, worker_pid=worker.pid, restart_count=restart_count
        )

    def restart_count(self, env_id: str) -> int:
        with self._slots_guard:
            slot = self._slots.get(env_id)
        return 0 if slot is None else slot.restart_count

    def worker_pid(self, env_id: str) -> int | None:
        with self._slots_guard:
            slot = self._slots.get(env_id)
        if slot is None or slot.process is None:
            return None
        return slot.process.pid

    def shutdown(self) -> None:
        """Stop every worker; safe to call more than once."""

        with self._slots_guard:
            slots = list(self._slots.items())
        for env_id, slot in slots:
            with slot.lock:
                if slot.process is None:
                    continue
                slot.process.shutdown(grace_seconds=self._terminate_grace_seconds)
                self._logger.debug("worker_stopped", env_id=env_id)
                slot.process = None

    def _slot_for(self, env_id: str) -> _WorkerSlot:
        with self._slots_guard:
            slot = self._slots.get(env_id)
            if slot is None:
                slot = _WorkerSlot()
                self._slots[env_id] = slot
            return slot

    def _ensure_worker(
        self, slot: _WorkerSlot, *, env_id: str, site_packages: Path
    ) -> _WorkerProcess:
        if slot.process is not None and slot.process.alive:
            return slot.process
        if slot.process is not None:
            self._discard(slot, slot.process, reason="exited")
        try:
            slot.process = _WorkerProcess(
                env_id=env_id,
                site_packages=site_packages,
                python_executable=self._python_executable,
                stderr_path=site_packages.parent / WORKER_STDERR_FILENAME,
                extra_env=self._extra_env,
            )
        except OSError as exc:
            raise WorkerCrashError(
                f"unable to start worker: {exc}", metadata={"reason": "spawn_failed"}
            ) from exc
        self._logger.info("worker_spawned", env_id=env_id, worker_pid=slot.process.pid)
        return slot.process

    def _discard(self, slot: _WorkerSlot, worker: _WorkerProcess, *, reason: str) -> None:
        worker.kill(grace_seconds=self._terminate_grace_seconds)
        slot.process = None
        slot.restart_count += 1
        self._logger.warning(
            "worker_crash",
            env_id=worker.env_id,
            worker_pid=worker.pid,
            reason=reason,
            restart_count=slot.restart_count,
        )

    def _result_from_response(
        self, response: Mapping[str, Any], *, worker_pid: int, restart_count: int
    ) -> WorkerResult:
        metadata = {"worker_pid": worker_pid, "worker_restart_count": restart_count}
        if response.get("status") == "ok":
            context = response.get("context")
            return WorkerResult(
                value=decode_wire_value(response.get("value")),
                context=dict(context) if isinstance(context, Mapping) else {},
                worker_pid=worker_pid,
                restart_count=restart_count,
            )

        message = str(response.get("error_message") or "worker reported an error")
        error_type = response.get("error_type")
        if error_type == "non_serializable_result":
            raise NonSerializableResultError(message, metadata=metadata)
        if error_type == "execution":
            raise ExecutionError(
                message,
                exception_class=response.get("exception_class"),
                metadata=metadata,
            )
        raise WorkerCrashError(message, metadata={**metadata, "reason": "worker_error"})


__all__ = [
    "WORKER_MODULE",
    "WorkerResult",
    "WorkerSupervisor",
]
