"""Unit tests for guardrail policy evaluation and boundary normalization."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from recurgent.constants import TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE
from recurgent.errors import ErrorType, GuardrailViolationError
from recurgent.guardrails.policy import (
    NORMALIZATION_POLICY,
    GuardrailPolicyEngine,
    check_code_policy,
    classify_violation,
    normalize_top_level_exhaustion,
    primary_state_key,
    shape_of,
    state_key_accesses,
)
from recurgent.guardrails.profile_registry import RoleProfileRegistry
from recurgent.guardrails.role_profile import RoleProfile
from recurgent.outcome import CallContext, Outcome

PUSH_HISTORY = """
def run(context, value):
    context['history'] = context.get('history', []) + [value]
    return value
"""

PUSH_LOG = """
def run(context, value):
    entries = context.get('log', [])
    context['log'] = entries + [value]
    return value
"""

READ_ONLY = """
def run(context):
    return len(context.get('history', []))
"""


def _coordination_profile(**extra: object) -> RoleProfile:
    payload: dict[str, object] = {
        "role": "assistant",
        "version": 1,
        "constraints": {"memory_slot": {"kind": "shared_state_slot", "mode": "coordination"}},
    }
    payload.update(extra)
    return RoleProfile.normalize(payload)


def test_state_key_accesses_are_reported_in_source_order() -> None:
    accesses = state_key_accesses(PUSH_LOG)

    assert [(item.key, item.write) for item in accesses] == [("log", False), ("log", True)]
    assert primary_state_key(PUSH_LOG) == "log"
    assert primary_state_key(PUSH_HISTORY) == "history"


def test_primary_state_key_falls_back_to_first_read() -> None:
    assert primary_state_key(READ_ONLY) == "history"
    assert primary_state_key("def run(context):\n    return 1\n") is None
    assert state_key_accesses("def broken(:") == []


def test_augmented_assignment_counts_once_as_write() -> None:
    code = "context['count'] += 1\n"

    writes = [item for item in state_key_accesses(code) if item.write]

    assert len(writes) == 1
    assert writes[0].key == "count"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, "null"),
        (True, "boolean"),
        (3, "number"),
        (2.5, "number"),
        ("x", "string"),
        ([1, 2], "array"),
        ((1,), "array"),
        ({"b": 1, "a": 2}, "object:a,b"),
        ({}, "object:"),
    ],
)
def test_shape_of_families(value: object, expected: str) -> None:
    assert shape_of(value) == expected


@settings(max_examples=50, deadline=None)
@given(st.dictionaries(st.text(min_size=1, max_size=5), st.integers(), max_size=6))
def test_object_shape_ignores_key_order(mapping: dict[str, int]) -> None:
    reversed_mapping = dict(reversed(list(mapping.items())))

    assert shape_of(mapping) == shape_of(reversed_mapping)


@pytest.mark.parametrize(
    "code",
    [
        "delegate = None\n",
        "Outcome = dict\n",
        "def delegate(*args):\n    return None\n",
        "import sys\nsys.modules['json'] = object()\n",
        "import sys\nsys.modules.pop('json')\n",
        "import builtins\nbuiltins.len = lambda value: 0\n",
        "import builtins\nsetattr(builtins, 'len', None)\n",
        "__builtins__['open'] = None\n",
    ],
)
def test_code_policy_flags_runtime_internal_mutation(code: str) -> None:
    assert check_code_policy(code)


@pytest.mark.parametrize(
    "code",
    [
        PUSH_HISTORY,
        "import sys\nnames = list(sys.modules)\n",
        "values = {}\nvalues['delegate'] = 1\n",
        "def broken(:",
    ],
)
def test_code_policy_allows_ordinary_code(code: str) -> None:
    assert check_code_policy(code) == []


def test_check_code_raises_typed_violation() -> None:
    engine = GuardrailPolicyEngine()

    with pytest.raises(GuardrailViolationError) as excinfo:
        engine.check_code("assistant", "push", "delegate = None\n")

    assert excinfo.value.error_type == ErrorType.GUARDRAIL_VIOLATION
    assert excinfo.value.metadata["violation_type"] == "runtime_internal_mutation"
    assert excinfo.value.metadata["role"] == "assistant"


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("missing credential for upstream", "terminal_guardrail"),
        ("requires an API key", "terminal_guardrail"),
        ("Unsupported runtime capability: gpu", "terminal_guardrail"),
        ("external service unavailable", "terminal_guardrail"),
        ("state key 'log' diverged from sibling convention 'history'", "recoverable_guardrail"),
    ],
)
def test_classify_violation(message: str, expected: str) -> None:
    assert classify_violation(message) == expected


def test_top_level_exhaustion_is_normalized_only_at_depth_zero() -> None:
    raw = Outcome.error(
        ErrorType.GUARDRAIL_RETRY_EXHAUSTED,
        "Recoverable guardrail retries exhausted for assistant.push",
        role="assistant",
        method="push",
    )
    root = CallContext.root()

    normalized = normalize_top_level_exhaustion(raw, root)
    nested = normalize_top_level_exhaustion(raw, root.child())

    assert normalized.error_message == TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE
    assert normalized.error_type == ErrorType.GUARDRAIL_RETRY_EXHAUSTED
    assert normalized.metadata["normalized"] is True
    assert normalized.metadata["normalization_policy"] == NORMALIZATION_POLICY
    assert normalized.metadata["raw_error_message"] == raw.error_message
    assert nested is raw


def test_other_errors_pass_through_normalization() -> None:
    outcome = Outcome.error(ErrorType.EXECUTION, "boom")

    assert normalize_top_level_exhaustion(outcome, CallContext.root()) is outcome


def test_engine_without_profile_reports_unevaluated() -> None:
    engine = GuardrailPolicyEngine()

    report = engine.evaluate("assistant", "push", PUSH_HISTORY, Outcome.ok(1))

    assert report.passed
    assert not report.evaluated
    assert report.state_key == "history"
    assert report.shape == "number"
    assert report.pass_rate == 1.0


def test_coordination_flags_sibling_drift_after_first_observation(
    registry: RoleProfileRegistry,
) -> None:
    registry.publish(_coordination_profile(), activate=True)
    engine = GuardrailPolicyEngine(registry, enforcement_default=True)

    first = engine.evaluate("assistant", "push", PUSH_HISTORY, Outcome.ok(1))
    assert first.passed
    engine.commit_observations("assistant", "push", first)

    drift = engine.evaluate("assistant", "append", PUSH_LOG, Outcome.ok(1))

    assert not drift.passed
    assert drift.enforced
    assert drift.pass_rate == 0.0
    violation = drift.first_violation
    assert violation is not None
    assert violation.violation_type == "shared_state_slot_drift"
    assert violation.expected == "history"
    assert violation.actual == "log"
    assert violation.guardrail_class == "recoverable_guardrail"
    assert "context['history']" in violation.correction_hint
    assert drift.pending_observations == ()


def test_drifting_method_does_not_redefine_the_convention(
    registry: RoleProfileRegistry,
) -> None:
    registry.publish(_coordination_profile(), activate=True)
    engine = GuardrailPolicyEngine(registry)

    engine.commit_observations(
        "assistant",
        "push",
        engine.evaluate("assistant", "push", PUSH_HISTORY, Outcome.ok(1)),
    )
    drift = engine.evaluate("assistant", "append", PUSH_LOG, Outcome.ok(1))
    engine.commit_observations("assistant", "append", drift)

    assert [item.method for item in registry.observations("assistant", "memory_slot")] == ["push"]
    assert not drift.enforced
    # The method that set the convention is compared only against siblings.
    assert engine.evaluate("assistant", "push", PUSH_LOG, Outcome.ok(1)).passed


def test_prescriptive_return_shape_checks_successful_values() -> None:
    profile = RoleProfile.normalize(
        {
            "role": "assistant",
            "version": 1,
            "enforced": True,
            "constraints": {
                "summary_shape": {
                    "kind": "return_shape_family",
                    "mode": "prescriptive",
                    "canonical_value": "object:items,total",
                }
            },
        }
    )
    engine = GuardrailPolicyEngine(enforcement_default=False)

    good = engine.evaluate(
        "assistant", "summarize", READ_ONLY, Outcome.ok({"total": 0, "items": []}), profile=profile
    )
    bad = engine.evaluate(
        "assistant", "summarize", READ_ONLY, Outcome.ok({"entries": []}), profile=profile
    )
    failed = engine.evaluate(
        "assistant", "summarize", READ_ONLY, Outcome.error("execution", "boom"), profile=profile
    )

    assert good.passed and good.enforced
    assert bad.first_violation is not None
    assert bad.first_violation.violation_type == "return_shape_family_drift"
    assert bad.first_violation.actual == "object:entries"
    assert failed.passed
    assert failed.checked_constraints == 0


def test_enforced_for_prefers_profile_flag() -> None:
    engine = GuardrailPolicyEngine(enforcement_default=True)

    assert engine.enforced_for(None) is True
    assert engine.enforced_for(_coordination_profile()) is True
    assert engine.enforced_for(_coordination_profile(enforced=False)) is False
