"""Compile generated method bodies into callable programs.

Generated code is a method *body*: it reads ``context``, ``args`` and
``kwargs``, and either assigns ``result`` or uses ``return``. The body is
spliced into a function template with ``ast`` so the same compilation path is
shared by the in-process sandbox, the worker entrypoint and generation-time
validation.
"""

from __future__ import annotations

import ast
from collections.abc import Callable, Mapping
from types import CodeType
from typing import Any, Final

PROGRAM_FUNCTION_NAME: Final[str] = "__recurgent_program__"

_TEMPLATE: Final[str] = (
    f"def {PROGRAM_FUNCTION_NAME}(context, args, kwargs):\n"
    "    result = None\n"
    "    return result\n"
)

ProgramFunction = Callable[[dict[str, Any], tuple[Any, ...], dict[str, Any]], Any]


def compile_program(code: str, *, filename: str = "<recurgent>") -> CodeType:
    """Wrap ``code`` as the body of the program function and compile it.

    Raises ``SyntaxError`` (or ``ValueError`` for NUL bytes) when the body is
    not valid Python.
    """

    body = ast.parse(code, filename=filename, mode="exec").body
    module = ast.parse(_TEMPLATE, filename=filename, mode="exec")
    function = module.body[0]
    assert isinstance(function, ast.FunctionDef)
    function.body[1:1] = body
    ast.fix_missing_locations(module)
    return compile(module, filename, "exec")


def load_program(code_object: CodeType, namespace: dict[str, Any]) -> ProgramFunction:
    """Execute the compiled module in ``namespace`` and return the program function."""

    exec(code_object, namespace)  # noqa: S102
    program = namespace[PROGRAM_FUNCTION_NAME]
    if not callable(program):
        raise TypeError(f"{PROGRAM_FUNCTION_NAME} is not callable")
    return program


def is_json_compatible(value: object) -> bool:
    """Return ``True`` when ``value`` is built only from JSON types."""

    if value is None or isinstance(value, (bool, int, str)):
        return True
    if isinstance(value, float):
        return value == value and value not in (float("inf"), float("-inf"))
    if isinstance(value, (list, tuple)):
        return all(is_json_compatible(item) for item in value)
    if isinstance(value, Mapping):
        return all(isinstance(key, str) and is_json_compatible(item) for key, item in value.items())
    return False


__all__ = [
    "PROGRAM_FUNCTION_NAME",
    "ProgramFunction",
    "compile_program",
    "is_json_compatible",
    "load_program",
]
