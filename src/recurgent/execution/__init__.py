"""Program compilation, in-process sandbox and dependency worker supervision."""

from recurgent.execution.program import compile_program, is_json_compatible, load_program
from recurgent.execution.sandbox import (
    ExecutionResult,
    ExecutionSandbox,
    check_context_integrity,
)
from recurgent.execution.worker import WorkerResult, WorkerSupervisor

__all__ = [
    "ExecutionResult",
    "ExecutionSandbox",
    "WorkerResult",
    "WorkerSupervisor",
    "check_context_integrity",
    "compile_program",
    "is_json_compatible",
    "load_program",
]
