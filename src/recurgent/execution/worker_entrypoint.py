"""
recurgent — dependency worker entrypoint

Purpose
- Long-lived subprocess that executes generated programs inside a prepared
  package environment, one JSON-lines request at a time.

Functional requirements
- Every response echoes ``ipc_version`` and the request ``call_id``.
- Results and the mutated context must be JSON-serializable; otherwise the
  response is a ``non_serializable_result`` error.
- Generated code writing to stdout must not corrupt the protocol stream.

Run as ``python -m recurgent.execution.worker_entrypoint``.
"""

from __future__ import annotations

import builtins
import contextlib
import json
import sys
from typing import IO, Any

from recurgent.constants import WORKER_IPC_VERSION
from recurgent.execution.program import compile_program, is_json_compatible, load_program
from recurgent.outcome import Outcome, encode_wire_value


def _unavailable_delegate(role: str, method: str, *args: Any, **kwargs: Any) -> Any:
    raise RuntimeError(
        f"delegate({role!r}, {method!r}) is unavailable inside a dependency worker"
    )


def handle_request(request: dict[str, Any]) -> dict[str, Any]:
    """Execute one decoded request and build its response payload."""

    call_id = str(request.get("call_id") or "unknown")
    if request.get("ipc_version") != WORKER_IPC_VERSION:
        return _error(
            call_id,
            "worker_crash",
            f"unsupported ipc_version {request.get('ipc_version')!r}",
        )

    method = str(request.get("method") or "unknown_method")
    context = request.get("context") or {}
    args = tuple(request.get("args") or ())
    kwargs = dict(request.get("kwargs") or {})

    try:
        code_object = compile_program(
            str(request.get("code") or ""), filename=f"<recurgent-worker:{method}>"
        )
        namespace: dict[str, Any] = {
            "__builtins__": builtins,
            "__name__": f"recurgent_worker_{method}",
            "Outcome": Outcome,
            "delegate": _unavailable_delegate,
        }
        program = load_program(code_object, namespace)
        with contextlib.redirect_stdout(sys.stderr):
            value = program(context, args, kwargs)
    except Exception as exc:  # noqa: BLE001
        return _error(
            call_id,
            "execution",
            f"{type(exc).__name__}: {exc}",
            exception_class=type(exc).__name__,
        )

    encoded = encode_wire_value(value)
    if not is_json_compatible(encoded) or not is_json_compatible(context):
        return _error(
            call_id,
            "non_serializable_result",
            "worker result or context is not JSON-serializable",
        )
    return {
        "ipc_version": WORKER_IPC_VERSION,
        "call_id": call_id,
        "status": "ok",
        "value": encoded,
        "context": context,
    }


def _error(
    call_id: str,
    error_type: str,
    message: str,
    *,
    exception_class: str | None = None,
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "ipc_version": WORKER_IPC_VERSION,
        "call_id": call_id,
        "status": "error",
        "error_type": error_type,
        "error_message": message,
    }
    if exception_class is not None:
        response["exception_class"] = exception_class
    return response


def serve(stdin: IO[str], stdout: IO[str]) -> int:
    """Answer requests until ``stdin`` reaches EOF."""

    for line in stdin:
        if not line.strip():
            continue
        try:
            request = json.loads(line)
        except ValueError as exc:
            response = _error("unknown", "worker_crash", f"invalid request JSON: {exc}")
        else:
            if isinstance(request, dict):
                response = handle_request(request)
            else:
                response = _error("unknown", "worker_crash", "request must be a JSON object")
        stdout.write(json.dumps(response, separators=(",", ":"), ensure_ascii=False) + "\n")
        stdout.flush()
    return 0


def main() -> int:
    return serve(sys.stdin, sys.stdout)


if __name__ == "__main__":
    raise SystemExit(main())
