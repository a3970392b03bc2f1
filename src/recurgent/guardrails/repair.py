"""
recurgent — repair lane budgets and correction hints

Purpose
- Track the three repair budgets of one call (guardrail recovery, execution
  repair, outcome repair), render targeted correction hints for the next
  regeneration and snapshot the shared context between attempts.

Functional requirements
- Budgets are independent of the generation retry budget.
- A guardrail recovery budget ``N`` allows exactly ``N + 1`` generations; the
  next violation raises ``GuardrailRetryExhaustedError``.
- Outcome repair exhaustion raises ``OutcomeRepairRetryExhaustedError``.
- Execution repair exhaustion returns ``None`` so the caller surfaces the last
  execution failure unchanged.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

from recurgent.constants import (
    DEFAULT_EXECUTION_REPAIR_BUDGET,
    DEFAULT_GUARDRAIL_RECOVERY_BUDGET,
    DEFAULT_OUTCOME_REPAIR_BUDGET,
)
from recurgent.errors import GuardrailRetryExhaustedError, OutcomeRepairRetryExhaustedError


@dataclass(frozen=True, slots=True)
class RepairBudgets:
    guardrail_recovery: int = DEFAULT_GUARDRAIL_RECOVERY_BUDGET
    execution_repair: int = DEFAULT_EXECUTION_REPAIR_BUDGET
    outcome_repair: int = DEFAULT_OUTCOME_REPAIR_BUDGET

    def __post_init__(self) -> None:
        for name in ("guardrail_recovery", "execution_repair", "outcome_repair"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} budget must be an integer >= 0")

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> RepairBudgets:
        return cls(
            guardrail_recovery=int(
                section.get("recovery_budget", DEFAULT_GUARDRAIL_RECOVERY_BUDGET)
            ),
            execution_repair=int(
                section.get("execution_repair_budget", DEFAULT_EXECUTION_REPAIR_BUDGET)
            ),
            outcome_repair=int(section.get("outcome_repair_budget", DEFAULT_OUTCOME_REPAIR_BUDGET)),
        )


@dataclass(frozen=True, slots=True)
class RepairHint:
    """Targeted correction for the next regeneration."""

    lane: str
    violation_type: str
    message: str
    attempt_number: int
    remaining_budget: int
    required_correction: str
    expected: str | None = None
    actual: str | None = None

    def render(self) -> str:
        lines = [
            f"previous attempt failed the {self.lane} check",
            f"violation_type: {self.violation_type}",
            f"message: {self.message}",
        ]
        if self.expected is not None:
            lines.append(f"expected: {self.expected}")
        if self.actual is not None:
            lines.append(f"actual: {self.actual}")
        lines.extend(
            [
                f"required_correction: {self.required_correction}",
                f"attempt_number: {self.attempt_number}",
                f"remaining_{self.lane}_budget: {self.remaining_budget}",
            ]
        )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lane": self.lane,
            "violation_type": self.violation_type,
            "message": self.message,
            "attempt_number": self.attempt_number,
            "remaining_budget": self.remaining_budget,
            "required_correction": self.required_correction,
            "expected": self.expected,
            "actual": self.actual,
        }


def execution_correction(message: str) -> str:
    lowered = message.lower()
    if "nonetype" in lowered:
        return "Initialize values before use and check for None before calling methods on them."
    if "keyerror" in lowered:
        return "Read optional context keys with context.get(...) and handle missing entries."
    return "Fix the failing code path with explicit type and None checks, preserving behavior."


@dataclass(slots=True)
class RepairSession:
    """Per-call repair counters."""

    budgets: RepairBudgets
    role: str
    method: str
    guardrail_recovery_attempts: int = 0
    execution_repair_attempts: int = 0
    outcome_repair_attempts: int = 0
    hints: list[RepairHint] = field(default_factory=list)

    @property
    def attempt_number(self) -> int:
        return (
            1
            + self.guardrail_recovery_attempts
            + self.execution_repair_attempts
            + self.outcome_repair_attempts
        )

    def next_guardrail(
        self,
        *,
        violation_type: str,
        message: str,
        required_correction: str,
        expected: str | None = None,
        actual: str | None = None,
    ) -> RepairHint:
        self.guardrail_recovery_attempts += 1
        remaining = self.budgets.guardrail_recovery - self.guardrail_recovery_attempts
        if remaining < 0:
            raise GuardrailRetryExhaustedError(
                f"Recoverable guardrail retries exhausted for {self.role}.{self.method}",
                metadata={
                    "guardrail_recovery_attempts": self.guardrail_recovery_attempts,
                    "last_violation_type": violation_type,
                    "last_violation_message": message,
                    "expected": expected,
                    "actual": actual,
                },
            )
        return self._push(
            RepairHint(
                lane="guardrail",
                violation_type=violation_type,
                message=message,
                attempt_number=self.attempt_number,
                remaining_budget=remaining,
                required_correction=required_correction,
                expected=expected,
                actual=actual,
            )
        )

    def next_execution(self, *, failure_type: str, message: str) -> RepairHint | None:
        if self.execution_repair_attempts >= self.budgets.execution_repair:
            return None
        self.execution_repair_attempts += 1
        return self._push(
            RepairHint(
                lane="execution_repair",
                violation_type=failure_type,
                message=message,
                attempt_number=self.attempt_number,
                remaining_budget=self.budgets.execution_repair - self.execution_repair_attempts,
                required_correction=execution_correction(message),
            )
        )

    def next_outcome(
        self,
        *,
        failure_type: str,
        message: str,
        required_correction: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> RepairHint:
        self.outcome_repair_attempts += 1
        remaining = self.budgets.outcome_repair - self.outcome_repair_attempts
        if remaining < 0:
            raise OutcomeRepairRetryExhaustedError(
                f"Outcome repair retries exhausted for {self.role}.{self.method}",
                metadata={
                    "outcome_repair_attempts": self.outcome_repair_attempts,
                    "last_failure_type": failure_type,
                    "last_failure_message": message,
                },
            )
        return self._push(
            RepairHint(
                lane="outcome_repair",
                violation_type=failure_type,
                message=message,
                attempt_number=self.attempt_number,
                remaining_budget=remaining,
                required_correction=required_correction
                or "Regenerate code that avoids this failure path while preserving behavior.",
                expected=expected,
                actual=actual,
            )
        )

    def feedback(self) -> str | None:
        if not self.hints:
            return None
        return self.hints[-1].render()

    def counters(self) -> dict[str, int]:
        return {
            "guardrail_recovery_attempts": self.guardrail_recovery_attempts,
            "execution_repair_attempts": self.execution_repair_attempts,
            "outcome_repair_attempts": self.outcome_repair_attempts,
        }

    def _push(self, hint: RepairHint) -> RepairHint:
        self.hints.append(hint)
        return hint


def snapshot_context(context: Mapping[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(dict(context))


def restore_context(context: MutableMapping[str, Any], snapshot: Mapping[str, Any]) -> None:
    """Replace ``context`` contents with a copy of ``snapshot`` in place."""

    context.clear()
    context.update(copy.deepcopy(dict(snapshot)))


__all__ = [
    "RepairBudgets",
    "RepairHint",
    "RepairSession",
    "execution_correction",
    "restore_context",
    "snapshot_context",
]
