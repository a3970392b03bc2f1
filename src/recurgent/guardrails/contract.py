"""
recurgent — outcome contract validation

Purpose
- Check a successful outcome's value against a caller-supplied deliverable
  contract and record adherence for scoring.

What should be included in this file
- ``OutcomeContract`` normalization (deliverable, acceptance, failure policy).
- ``ContractValidator.validate`` producing a ``ContractResult`` with mismatch
  metadata.
- A restricted ``ast`` evaluator for acceptance expressions over ``value``.

Functional requirements
- Validation is observational unless ``failure_policy`` says otherwise.
- Error outcomes and missing contracts are not validated.
- Acceptance expressions cannot call arbitrary functions, reach attributes or
  import anything.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from recurgent.guardrails.policy import shape_of
from recurgent.outcome import Outcome

FAILURE_POLICIES: Final[tuple[str, ...]] = (
    "return_error",
    "fallback_role",
    "continue_with_partials",
)
DELIVERABLE_TYPES: Final[tuple[str, ...]] = ("object", "array")
PROPERTY_TYPES: Final[dict[str, tuple[type, ...]]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (Mapping,),
    "array": (list, tuple),
    "null": (type(None),),
}


class ContractError(ValueError):
    """Raised for malformed contracts or acceptance expressions."""


# ---------------------------------------------------------------------------
# Restricted expression evaluation
# ---------------------------------------------------------------------------

_BIN_OPS: Final[dict[type[ast.operator], Callable[[Any, Any], Any]]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}
_CMP_OPS: Final[dict[type[ast.cmpop], Callable[[Any, Any], bool]]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}
_FUNCTIONS: Final[dict[str, Callable[..., Any]]] = {
    "len": len,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "any": any,
    "all": all,
}

_DISALLOWED_NODES: Final[tuple[type[ast.AST], ...]] = (
    ast.Attribute,
    ast.Lambda,
    ast.NamedExpr,
    ast.ListComp,
    ast.DictComp,
    ast.SetComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.Starred,
    ast.JoinedStr,
)


def compile_acceptance(expression: str) -> ast.Expression:
    """Parse ``expression`` and reject any construct outside the allowed subset."""

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise ContractError(f"acceptance expression is not valid: {expression!r}") from exc
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id != "value" and node.id not in _FUNCTIONS:
            raise ContractError(f"acceptance expression may only reference 'value': {node.id!r}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise ContractError("acceptance expression calls a disallowed function")
            if node.keywords:
                raise ContractError("acceptance expression calls may not use keywords")
        if isinstance(node, _DISALLOWED_NODES):
            raise ContractError(
                f"acceptance expression uses disallowed syntax {type(node).__name__}"
            )
    return tree


def evaluate_acceptance(expression: str, value: Any) -> bool:
    tree = compile_acceptance(expression)
    return bool(_eval(tree.body, value))


def _eval(node: ast.AST, value: Any) -> Any:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id == "value":
            return value
        raise ContractError(f"unknown name {node.id!r}")
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for item in node.values:
                result = _eval(item, value)
                if not result:
                    return result
            return result
        result = False
        for item in node.values:
            result = _eval(item, value)
            if result:
                return result
        return result
    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, value)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval(node.left, value), _eval(node.right, value))
    if isinstance(node, ast.Compare):
        left = _eval(node.left, value)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = _eval(comparator, value)
            if not _CMP_OPS[type(op)](left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.Subscript):
        container = _eval(node.value, value)
        return container[_eval(node.slice, value)]
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
        return _FUNCTIONS[node.func.id](*(_eval(arg, value) for arg in node.args))
    if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
        items = [_eval(item, value) for item in node.elts]
        if isinstance(node, ast.Set):
            return set(items)
        return tuple(items) if isinstance(node, ast.Tuple) else items
    if isinstance(node, ast.Dict):
        return {
            _eval(key, value): _eval(item, value)
            for key, item in zip(node.keys, node.values, strict=True)
            if key is not None
        }
    if isinstance(node, ast.IfExp):
        return _eval(node.body, value) if _eval(node.test, value) else _eval(node.orelse, value)
    raise ContractError(f"unsupported expression node {type(node).__name__}")


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Deliverable:
    type: str | None = None
    required: tuple[str, ...] = ()
    min_items: int | None = None
    properties: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OutcomeContract:
    deliverable: Deliverable | None = None
    acceptance: tuple[str, ...] = ()
    failure_policy: str | None = None
    fallback_role: str | None = None

    @classmethod
    def normalize(cls, raw: OutcomeContract | Mapping[str, Any] | None) -> OutcomeContract | None:
        if raw is None or isinstance(raw, OutcomeContract):
            return raw
        if not isinstance(raw, Mapping):
            raise ContractError("contract must be a mapping")
        deliverable = _deliverable(raw.get("deliverable"))
        acceptance_raw = raw.get("acceptance") or ()
        if isinstance(acceptance_raw, str):
            acceptance_raw = (acceptance_raw,)
        acceptance: list[str] = []
        for item in acceptance_raw:
            expression = item.get("assert") if isinstance(item, Mapping) else item
            if not isinstance(expression, str) or not expression.strip():
                raise ContractError("acceptance entries must be expression strings")
            compile_acceptance(expression.strip())
            acceptance.append(expression.strip())
        policy = raw.get("failure_policy")
        if policy is not None and policy not in FAILURE_POLICIES:
            raise ContractError(f"unsupported failure_policy {policy!r}")
        fallback_role = raw.get("fallback_role")
        named = isinstance(fallback_role, str) and bool(fallback_role.strip())
        if policy == "fallback_role" and not named:
            raise ContractError("failure_policy 'fallback_role' requires fallback_role")
        return cls(
            deliverable=deliverable,
            acceptance=tuple(acceptance),
            failure_policy=policy,
            fallback_role=fallback_role.strip() if isinstance(fallback_role, str) else None,
        )


def _deliverable(raw: object) -> Deliverable | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ContractError("deliverable must be a mapping")
    kind = raw.get("type")
    if kind is not None:
        kind = str(kind).strip().lower()
        if kind not in DELIVERABLE_TYPES:
            raise ContractError(f"unsupported deliverable type {kind!r}")
    required = raw.get("required") or ()
    if isinstance(required, str) or not isinstance(required, Sequence):
        raise ContractError("deliverable.required must be a list of keys")
    min_items = raw.get("min_items")
    if min_items is not None and (
        isinstance(min_items, bool) or not isinstance(min_items, int) or min_items < 0
    ):
        raise ContractError("deliverable.min_items must be a non-negative integer")
    properties = raw.get("properties") or {}
    if not isinstance(properties, Mapping):
        raise ContractError("deliverable.properties must be a mapping")
    normalized_properties: dict[str, str] = {}
    for key, expected in properties.items():
        type_name = expected.get("type") if isinstance(expected, Mapping) else expected
        if type_name not in PROPERTY_TYPES:
            raise ContractError(f"deliverable.properties.{key} has unsupported type {type_name!r}")
        normalized_properties[str(key)] = str(type_name)
    return Deliverable(
        type=kind,
        required=tuple(dict.fromkeys(str(key).strip() for key in required if str(key).strip())),
        min_items=min_items,
        properties=normalized_properties,
    )


@dataclass(frozen=True, slots=True)
class ContractResult:
    applied: bool = False
    passed: bool | None = None
    mismatch: str | None = None
    expected_shape: str | None = None
    actual_shape: str | None = None
    expected_keys: tuple[str, ...] = ()
    actual_keys: tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.applied and self.passed is False

    def metadata(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "expected_shape": self.expected_shape,
            "actual_shape": self.actual_shape,
            "expected_keys": list(self.expected_keys),
            "actual_keys": list(self.actual_keys),
            "mismatch": self.mismatch,
        }
        payload.update(self.details)
        return payload


_NOT_APPLIED: Final[ContractResult] = ContractResult()


class ContractValidator:
    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def validate(
        self,
        contract: OutcomeContract | Mapping[str, Any] | None,
        outcome: Outcome,
    ) -> ContractResult:
        normalized = OutcomeContract.normalize(contract)
        if normalized is None or not outcome.is_ok:
            return _NOT_APPLIED
        if normalized.deliverable is None and not normalized.acceptance:
            return _NOT_APPLIED

        value = outcome.value
        result = self._check_deliverable(normalized.deliverable, value)
        if result is None:
            result = self._check_acceptance(normalized.acceptance, value)
        if result is None:
            result = ContractResult(
                applied=True,
                passed=True,
                actual_shape=_coarse_shape(value),
                actual_keys=_keys(value),
            )
        if result.failed:
            self._logger.info(
                "contract_mismatch",
                role=outcome.role,
                method=outcome.method,
                mismatch=result.mismatch,
                failure_policy=normalized.failure_policy,
            )
        return result

    def _check_deliverable(
        self, deliverable: Deliverable | None, value: Any
    ) -> ContractResult | None:
        if deliverable is None or deliverable.type is None:
            return None
        expected_keys = deliverable.required
        if deliverable.type == "object":
            if not isinstance(value, Mapping):
                return _failure("type_mismatch", "object", value, expected_keys)
            missing = [key for key in expected_keys if key not in value]
            if missing:
                return _failure(
                    "missing_required_key", "object", value, expected_keys, missing_keys=missing
                )
            for key, type_name in deliverable.properties.items():
                if key not in value:
                    continue
                if not _matches_type(value[key], type_name):
                    return _failure(
                        "property_type_mismatch",
                        "object",
                        value,
                        expected_keys,
                        constraint_path=f"deliverable.properties.{key}",
                        expected_type=type_name,
                        actual_type=shape_of(value[key]).split(":", 1)[0],
                    )
            return None
        if not isinstance(value, (list, tuple)):
            return _failure("type_mismatch", "array", value, ())
        if deliverable.min_items is not None and len(value) < deliverable.min_items:
            return _failure(
                "min_items_violation",
                "array",
                value,
                (),
                constraint_path="deliverable.min_items",
                expected_min_items=deliverable.min_items,
                actual_items=len(value),
            )
        return None

    def _check_acceptance(self, acceptance: Sequence[str], value: Any) -> ContractResult | None:
        for expression in acceptance:
            try:
                accepted = evaluate_acceptance(expression, value)
            except (LookupError, TypeError, ValueError, ArithmeticError) as exc:
                return _failure(
                    "acceptance_error",
                    _coarse_shape(value),
                    value,
                    (),
                    expression=expression,
                    error=f"{type(exc).__name__}: {exc}",
                )
            if not accepted:
                return _failure(
                    "acceptance_failed", _coarse_shape(value), value, (), expression=expression
                )
        return None


def _matches_type(value: Any, type_name: str) -> bool:
    if type_name in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, PROPERTY_TYPES[type_name])


def _coarse_shape(value: Any) -> str:
    return shape_of(value).split(":", 1)[0]


def _keys(value: Any) -> tuple[str, ...]:
    if isinstance(value, Mapping):
        return tuple(str(key) for key in value)
    return ()


def _failure(
    mismatch: str,
    expected_shape: str,
    value: Any,
    expected_keys: Sequence[str],
    **details: Any,
) -> ContractResult:
    return ContractResult(
        applied=True,
        passed=False,
        mismatch=mismatch,
        expected_shape=expected_shape,
        actual_shape=_coarse_shape(value),
        expected_keys=tuple(expected_keys),
        actual_keys=_keys(value),
        details=details,
    )


__all__ = [
    "FAILURE_POLICIES",
    "ContractError",
    "ContractResult",
    "ContractValidator",
    "Deliverable",
    "OutcomeContract",
    "compile_acceptance",
    "evaluate_acceptance",
]
