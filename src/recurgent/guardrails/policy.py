"""
recurgent — guardrail policy engine

Purpose
- Check generated code and its outcome against the role's active profile and
  the runtime's code policy, and shape the resulting violations into repair
  feedback.

What should be included in this file
- AST discovery of the shared-context keys a program reads and writes.
- Value shape families (``object:<keys>``, ``array``, ``number``, ...).
- Continuity evaluation for ``shared_state_slot`` and ``return_shape_family``.
- Code checks rejecting mutation of runtime internals.
- Recoverable vs terminal classification and top-level exhaustion
  normalization.

Functional requirements
- Violations are always reported; ``enforced`` comes from the profile, else
  the configured default.
- Only passing values are stored as coordination observations, so a drifting
  method never redefines the convention its siblings follow.
"""

from __future__ import annotations

import ast
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Final

import structlog

from recurgent.constants import TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE
from recurgent.errors import ErrorType, GuardrailViolationError
from recurgent.guardrails.profile_registry import RoleProfileRegistry
from recurgent.guardrails.role_profile import RoleConstraint, RoleProfile
from recurgent.outcome import CallContext, Outcome

NORMALIZATION_POLICY: Final[str] = "guardrail_exhaustion_boundary_v1"
CONTEXT_NAME: Final[str] = "context"

TERMINAL_GUARDRAIL_MESSAGE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"missing credential", re.IGNORECASE),
    re.compile(r"api key", re.IGNORECASE),
    re.compile(r"unsupported runtime capability", re.IGNORECASE),
    re.compile(r"external service unavailable", re.IGNORECASE),
)

_PROTECTED_NAMES: Final[frozenset[str]] = frozenset({"delegate", "Outcome", "__builtins__"})
_MUTATING_METHODS: Final[frozenset[str]] = frozenset(
    {"update", "pop", "popitem", "setdefault", "clear", "__setitem__", "__delitem__"}
)


# ---------------------------------------------------------------------------
# State keys
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StateKeyAccess:
    key: str
    write: bool
    line: int
    col: int


class _ContextKeyVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.accesses: list[StateKeyAccess] = []

    def visit_Subscript(self, node: ast.Subscript) -> None:
        key = _context_subscript_key(node)
        if key is not None:
            write = isinstance(node.ctx, (ast.Store, ast.Del))
            self.accesses.append(StateKeyAccess(key, write, node.lineno, node.col_offset))
        self.generic_visit(node)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        if isinstance(node.target, ast.Subscript):
            key = _context_subscript_key(node.target)
            if key is not None:
                self.accesses.append(
                    StateKeyAccess(key, True, node.target.lineno, node.target.col_offset)
                )
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if (
            isinstance(func, ast.Attribute)
            and isinstance(func.value, ast.Name)
            and func.value.id == CONTEXT_NAME
            and node.args
            and isinstance(node.args[0], ast.Constant)
            and isinstance(node.args[0].value, str)
        ):
            if func.attr in ("get",):
                self.accesses.append(
                    StateKeyAccess(node.args[0].value, False, node.lineno, node.col_offset)
                )
            elif func.attr in ("setdefault", "pop"):
                self.accesses.append(
                    StateKeyAccess(node.args[0].value, True, node.lineno, node.col_offset)
                )
        self.generic_visit(node)


def _context_subscript_key(node: ast.Subscript) -> str | None:
    if not (isinstance(node.value, ast.Name) and node.value.id == CONTEXT_NAME):
        return None
    index = node.slice
    if isinstance(index, ast.Constant) and isinstance(index.value, str):
        return index.value
    return None


def state_key_accesses(code: str) -> list[StateKeyAccess]:
    """Context key reads and writes in source order; unparsable code yields none."""

    try:
        tree = ast.parse(code)
    except SyntaxError:
        return []
    visitor = _ContextKeyVisitor()
    visitor.visit(tree)
    # AugAssign targets are also visited as Store subscripts.
    seen: set[tuple[str, bool, int, int]] = set()
    ordered: list[StateKeyAccess] = []
    for access in sorted(visitor.accesses, key=lambda item: (item.line, item.col)):
        marker = (access.key, access.write, access.line, access.col)
        if marker not in seen:
            seen.add(marker)
            ordered.append(access)
    return ordered


def primary_state_key(code: str) -> str | None:
    """First written context key, else the first read key."""

    accesses = state_key_accesses(code)
    for access in accesses:
        if access.write:
            return access.key
    return accesses[0].key if accesses else None


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------


def shape_of(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object:" + ",".join(sorted(str(key) for key in value))
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__.lower()


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConstraintViolation:
    constraint: str
    kind: str
    mode: str
    expected: str
    actual: str
    message: str
    correction_hint: str
    guardrail_class: str = "recoverable_guardrail"

    @property
    def violation_type(self) -> str:
        return f"{self.kind}_drift"

    def to_dict(self) -> dict[str, Any]:
        return {
            "constraint": self.constraint,
            "kind": self.kind,
            "mode": self.mode,
            "violation_type": self.violation_type,
            "expected": self.expected,
            "actual": self.actual,
            "message": self.message,
            "correction_hint": self.correction_hint,
            "guardrail_class": self.guardrail_class,
        }


@dataclass(frozen=True, slots=True)
class GuardrailReport:
    profile_version: int | None = None
    evaluated: bool = False
    enforced: bool = False
    checked_constraints: int = 0
    violations: tuple[ConstraintViolation, ...] = ()
    state_key: str | None = None
    shape: str | None = None
    pending_observations: tuple[tuple[str, str, str], ...] = field(default=(), repr=False)

    @property
    def passed(self) -> bool:
        return not self.violations

    @property
    def pass_rate(self) -> float:
        if self.checked_constraints == 0:
            return 1.0
        passed = self.checked_constraints - len(self.violations)
        return round(passed / self.checked_constraints, 4)

    @property
    def first_violation(self) -> ConstraintViolation | None:
        return self.violations[0] if self.violations else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile_version": self.profile_version,
            "evaluated": self.evaluated,
            "enforced": self.enforced,
            "passed": self.passed,
            "pass_rate": self.pass_rate,
            "violations": [item.to_dict() for item in self.violations],
        }


def classify_violation(message: str) -> str:
    if any(pattern.search(message) for pattern in TERMINAL_GUARDRAIL_MESSAGE_PATTERNS):
        return "terminal_guardrail"
    return "recoverable_guardrail"


# ---------------------------------------------------------------------------
# Code checks
# ---------------------------------------------------------------------------


def _is_sys_modules(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Attribute)
        and node.attr == "modules"
        and isinstance(node.value, ast.Name)
        and node.value.id == "sys"
    )


def _is_builtins_ref(node: ast.AST) -> bool:
    if isinstance(node, ast.Name) and node.id in ("__builtins__", "builtins"):
        return True
    return False


class _CodePolicyVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.findings: list[tuple[int, str]] = []

    def _flag(self, node: ast.AST, message: str) -> None:
        self.findings.append((getattr(node, "lineno", 0), message))

    def _check_target(self, target: ast.AST) -> None:
        if isinstance(target, ast.Name) and target.id in _PROTECTED_NAMES:
            self._flag(target, f"rebinding runtime name {target.id!r} is not allowed")
        elif isinstance(target, ast.Subscript) and _is_sys_modules(target.value):
            self._flag(target, "writing to sys.modules is not allowed")
        elif isinstance(target, ast.Subscript) and _is_builtins_ref(target.value):
            self._flag(target, "mutating __builtins__ is not allowed")
        elif isinstance(target, ast.Attribute) and _is_builtins_ref(target.value):
            self._flag(target, "mutating builtins is not allowed")
        elif isinstance(target, (ast.Tuple, ast.List)):
            for element in target.elts:
                self._check_target(element)

    def visit_Assign(self, node: ast.Assign) -> None:
        for target in node.targets:
            self._check_target(target)
        self.generic_visit(node)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        self._check_target(node.target)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        self._check_target(node.target)
        self.generic_visit(node)

    def visit_Delete(self, node: ast.Delete) -> None:
        for target in node.targets:
            self._check_target(target)
        self.generic_visit(node)

    def visit_Global(self, node: ast.Global) -> None:
        for name in node.names:
            if name in _PROTECTED_NAMES:
                self._flag(node, f"rebinding runtime name {name!r} is not allowed")
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        if node.name in _PROTECTED_NAMES:
            self._flag(node, f"rebinding runtime name {node.name!r} is not allowed")
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if isinstance(func, ast.Attribute) and func.attr in _MUTATING_METHODS:
            if _is_sys_modules(func.value):
                self._flag(node, "writing to sys.modules is not allowed")
            elif _is_builtins_ref(func.value):
                self._flag(node, "mutating __builtins__ is not allowed")
        if (
            isinstance(func, ast.Name)
            and func.id in ("setattr", "delattr")
            and node.args
            and _is_builtins_ref(node.args[0])
        ):
            self._flag(node, "mutating builtins is not allowed")
        self.generic_visit(node)


def check_code_policy(code: str) -> list[str]:
    """Messages for code that mutates runtime internals, in source order."""

    try:
        tree = ast.parse(code)
    except SyntaxError:
        return []
    visitor = _CodePolicyVisitor()
    visitor.visit(tree)
    return [message for _, message in sorted(visitor.findings, key=lambda item: item[0])]


# ---------------------------------------------------------------------------
# Boundary normalization
# ---------------------------------------------------------------------------


def normalize_top_level_exhaustion(outcome: Outcome, context: CallContext) -> Outcome:
    """Replace the message of a top-level guardrail exhaustion with the user-facing one."""

    if outcome.error_type != ErrorType.GUARDRAIL_RETRY_EXHAUSTED or context.depth != 0:
        return outcome
    metadata = dict(outcome.metadata)
    metadata["normalized"] = True
    metadata["normalization_policy"] = NORMALIZATION_POLICY
    metadata.setdefault("guardrail_class", "recoverable_guardrail")
    metadata.setdefault("raw_error_message", outcome.error_message)
    return replace(outcome, error_message=TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE, metadata=metadata)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class GuardrailPolicyEngine:
    """Evaluate role-profile continuity and code policy for one generated program."""

    def __init__(
        self,
        registry: RoleProfileRegistry | None = None,
        *,
        enforcement_default: bool = False,
        logger: Any | None = None,
    ) -> None:
        self._registry = registry
        self._enforcement_default = enforcement_default
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def active_profile(self, role: str) -> RoleProfile | None:
        return None if self._registry is None else self._registry.active(role)

    def enforced_for(self, profile: RoleProfile | None) -> bool:
        if profile is not None and profile.enforced is not None:
            return profile.enforced
        return self._enforcement_default

    def check_code(self, role: str, method: str, code: str) -> None:
        """Raise ``GuardrailViolationError`` when code mutates runtime internals."""

        findings = check_code_policy(code)
        if findings:
            message = "; ".join(findings)
            raise GuardrailViolationError(
                message,
                metadata={
                    "violation_type": "runtime_internal_mutation",
                    "guardrail_class": classify_violation(message),
                    "role": role,
                    "method": method,
                },
            )

    def evaluate(
        self,
        role: str,
        method: str,
        code: str,
        outcome: Outcome,
        *,
        profile: RoleProfile | None = None,
    ) -> GuardrailReport:
        active = profile if profile is not None else self.active_profile(role)
        state_key = primary_state_key(code)
        shape = shape_of(outcome.value) if outcome.is_ok else None
        if active is None:
            return GuardrailReport(state_key=state_key, shape=shape)

        constraints = active.constraints_for(method)
        violations: list[ConstraintViolation] = []
        pending: list[tuple[str, str, str]] = []
        checked = 0
        for constraint in constraints:
            actual = state_key if constraint.kind == "shared_state_slot" else shape
            if actual is None:
                continue
            checked += 1
            expected = self._expected_value(role, method, constraint)
            if expected is None or expected == actual:
                pending.append((constraint.name, constraint.kind, actual))
                continue
            violations.append(_violation(constraint, expected=expected, actual=actual))

        report = GuardrailReport(
            profile_version=active.version,
            evaluated=bool(constraints),
            enforced=self.enforced_for(active),
            checked_constraints=checked,
            violations=tuple(violations),
            state_key=state_key,
            shape=shape,
            pending_observations=tuple(pending),
        )
        if violations:
            first = violations[0]
            self._logger.warning(
                "guardrail_violation",
                role=role,
                method=method,
                constraint=first.constraint,
                violation_type=first.violation_type,
                expected=first.expected,
                actual=first.actual,
                enforced=report.enforced,
            )
        return report

    def commit_observations(self, role: str, method: str, report: GuardrailReport) -> None:
        """Store passing values as coordination observations for ``method``."""

        if self._registry is None:
            return
        for constraint_name, kind, value in report.pending_observations:
            self._registry.record_observation(
                role, constraint_name, kind=kind, method=method, value=value
            )

    def _expected_value(self, role: str, method: str, constraint: RoleConstraint) -> str | None:
        if constraint.mode == "prescriptive":
            return constraint.expected_value
        if self._registry is None:
            return None
        for observation in self._registry.observations(role, constraint.name):
            if observation.method == method or not constraint.applies_to(observation.method):
                continue
            return observation.value
        return None


def _violation(constraint: RoleConstraint, *, expected: str, actual: str) -> ConstraintViolation:
    label = "state key" if constraint.kind == "shared_state_slot" else "return shape"
    if constraint.mode == "prescriptive":
        message = f"{label} {actual!r} diverged from expected value {expected!r}"
    else:
        message = f"{label} {actual!r} diverged from sibling convention {expected!r}"
    if constraint.kind == "shared_state_slot":
        hint = f"Store shared state under context[{expected!r}] instead of context[{actual!r}]."
    else:
        hint = f"Return a value shaped as {expected!r} instead of {actual!r}."
    return ConstraintViolation(
        constraint=constraint.name,
        kind=constraint.kind,
        mode=constraint.mode,
        expected=expected,
        actual=actual,
        message=message,
        correction_hint=hint,
        guardrail_class=classify_violation(message),
    )


def violation_summary(violations: Sequence[ConstraintViolation]) -> str:
    return "; ".join(item.message for item in violations)


__all__ = [
    "NORMALIZATION_POLICY",
    "TERMINAL_GUARDRAIL_MESSAGE_PATTERNS",
    "ConstraintViolation",
    "GuardrailPolicyEngine",
    "GuardrailReport",
    "StateKeyAccess",
    "check_code_policy",
    "classify_violation",
    "normalize_top_level_exhaustion",
    "primary_state_key",
    "shape_of",
    "state_key_accesses",
    "violation_summary",
]
