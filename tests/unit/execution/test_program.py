"""Unit tests for method-body compilation."""

from __future__ import annotations

import pytest

from recurgent.execution.program import (
    PROGRAM_FUNCTION_NAME,
    compile_program,
    is_json_compatible,
    load_program,
)


def _run(code: str, *args: object, **kwargs: object) -> object:
    program = load_program(compile_program(code), {"__builtins__": __builtins__})
    return program({}, args, kwargs)


def test_result_assignment_and_return_are_equivalent() -> None:
    assert _run("result = args[0] + args[1]", 2, 3) == 5
    assert _run("return kwargs['x'] * 2", x=4) == 8
    assert _run("pass") is None


def test_body_may_define_helpers() -> None:
    code = "def double(value):\n    return value * 2\nresult = [double(item) for item in args]"

    assert _run(code, 1, 2) == [2, 4]


def test_context_is_shared_by_reference() -> None:
    program = load_program(compile_program("context['count'] = context.get('count', 0) + 1"), {})
    context: dict[str, object] = {}

    program(context, (), {})
    program(context, (), {})

    assert context == {"count": 2}


def test_invalid_body_raises_syntax_error() -> None:
    with pytest.raises(SyntaxError):
        compile_program("return (")


def test_load_program_exposes_function_in_namespace() -> None:
    namespace: dict[str, object] = {}
    load_program(compile_program("result = 1"), namespace)

    assert callable(namespace[PROGRAM_FUNCTION_NAME])


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ({"a": [1, 2.5, None, True, "x"]}, True),
        ((1, 2), True),
        (float("nan"), False),
        (float("inf"), False),
        ({1: "x"}, False),
        ({"a": {1, 2}}, False),
        (object(), False),
    ],
)
def test_is_json_compatible(value: object, expected: bool) -> None:
    assert is_json_compatible(value) is expected
