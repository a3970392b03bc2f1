"""
recurgent — end-to-end controller tests

Purpose
- Drive ``CallController.invoke`` against a real state DB, the in-process
  sandbox and a scripted code provider, covering generation, persistence,
  guardrail repair, delegation and outcome contracts.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pytest

from recurgent.artifacts.lifecycle import LifecycleEngine, LifecyclePolicy
from recurgent.artifacts.selector import ArtifactSelector
from recurgent.artifacts.store import ArtifactStore
from recurgent.constants import TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE
from recurgent.controller import CallController
from recurgent.errors import ErrorType, RegistryIntegrityError
from recurgent.execution.sandbox import ExecutionSandbox
from recurgent.guardrails.policy import GuardrailPolicyEngine
from recurgent.guardrails.profile_registry import RoleProfileRegistry
from recurgent.guardrails.repair import RepairBudgets
from recurgent.observability.call_log import InMemoryCallLog
from recurgent.outcome import Outcome
from recurgent.persistence.state_db import StateDB
from recurgent.synthesis.generation import GenerationEngine
from recurgent.synthesis.provider import GenerationRequest

REMEMBER = (
    "context['history'] = context.get('history', []) + [args[0]]\n"
    "return len(context['history'])\n"
)
RECALL_DRIFT = "return list(context.get('log', []))\n"
RECALL_GOOD = "return list(context.get('history', []))\n"
LEAK = "context['hook'] = len\nreturn 1\n"

MEMORY_PROFILE = {
    "role": "assistant",
    "version": 1,
    "constraints": {"memory_slot": {"kind": "shared_state_slot", "mode": "coordination"}},
}


class RoleScriptProvider:
    """Returns scripted bodies per (role, method); the last entry repeats."""

    name = "role-script"

    def __init__(self, scripts: Mapping[tuple[str, str], Sequence[str]]) -> None:
        self._scripts = {key: list(value) for key, value in scripts.items()}
        self.requests: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> Mapping[str, Any]:
        self.requests.append(request)
        queue = self._scripts[(request.role, request.method)]
        code = queue.pop(0) if len(queue) > 1 else queue[0]
        return {"code": code, "dependencies": []}

    def requests_for(self, role: str, method: str) -> list[GenerationRequest]:
        return [item for item in self.requests if (item.role, item.method) == (role, method)]


class SteppingClock:
    def __init__(self, step: float) -> None:
        self._now = 0.0
        self._step = step

    def __call__(self) -> float:
        current = self._now
        self._now += self._step
        return current


def _controller(
    state_db: StateDB,
    provider: RoleScriptProvider,
    *,
    enforcement_default: bool = True,
    budgets: RepairBudgets | None = None,
    delegation_max_depth: int = 3,
    call_timeout_seconds: float | None = None,
    clock: Callable[[], float] | None = None,
    sink: InMemoryCallLog | None = None,
) -> CallController:
    store = ArtifactStore(state_db)
    registry = RoleProfileRegistry(state_db)
    extra: dict[str, Any] = {} if clock is None else {"clock": clock}
    return CallController(
        generator=GenerationEngine(provider, model="test-model"),
        store=store,
        selector=ArtifactSelector(store, enforcement_enabled=True),
        lifecycle=LifecycleEngine(store, LifecyclePolicy(enforcement_enabled=True)),
        sandbox=ExecutionSandbox(),
        guardrails=GuardrailPolicyEngine(registry, enforcement_default=enforcement_default),
        repair_budgets=budgets,
        delegation_max_depth=delegation_max_depth,
        call_timeout_seconds=call_timeout_seconds,
        call_sink=sink,
        **extra,
    )


def test_generated_artifact_is_persisted_and_reused(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("calc", "add"): ["return args[0] + args[1]\n"]})
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, sink=sink)

    first = controller.invoke("calc", "add", 2, 3)
    second = controller.invoke("calc", "add", 4, 5)

    assert first.is_ok and first.value == 5
    assert first.role == "calc" and first.method == "add"
    assert second.value == 9
    assert len(provider.requests) == 1
    generated, reused = sink.records
    assert generated.artifact_source == "generated"
    assert generated.generation_attempts == 1
    assert generated.model == "test-model"
    assert generated.depth == 0 and generated.parent_call_id is None
    assert reused.artifact_source == "persisted"
    assert reused.artifact_checksum == generated.artifact_checksum
    assert reused.lifecycle_state_at_selection == "probation"
    versions = ArtifactStore(state_db).versions("calc", "add")
    assert len(versions) == 1
    assert versions[0].scorecard.calls == 2


def test_enforced_coordination_repairs_sibling_drift(
    state_db: StateDB, registry: RoleProfileRegistry
) -> None:
    registry.publish(MEMORY_PROFILE, activate=True)
    provider = RoleScriptProvider(
        {
            ("assistant", "remember"): [REMEMBER],
            ("assistant", "recall"): [RECALL_DRIFT, RECALL_GOOD],
        }
    )
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, sink=sink)

    assert controller.invoke("assistant", "remember", "milk").value == 1
    recalled = controller.invoke("assistant", "recall")

    assert recalled.is_ok
    assert recalled.value == ["milk"]
    recall_requests = provider.requests_for("assistant", "recall")
    assert len(recall_requests) == 2
    feedback = recall_requests[1].feedback or ""
    assert "violation_type: shared_state_slot_drift" in feedback
    assert "expected: history" in feedback
    assert "actual: log" in feedback
    record = sink.records[-1]
    assert record.guardrail_recovery_attempts == 1
    assert record.guardrail_violation is None
    assert record.guardrail_enforced is True
    assert controller.context_for("assistant") == {"history": ["milk"]}


def test_shadow_coordination_reports_without_blocking(
    state_db: StateDB, registry: RoleProfileRegistry
) -> None:
    registry.publish(MEMORY_PROFILE, activate=True)
    provider = RoleScriptProvider(
        {("assistant", "remember"): [REMEMBER], ("assistant", "recall"): [RECALL_DRIFT]}
    )
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, enforcement_default=False, sink=sink)

    controller.invoke("assistant", "remember", "milk")
    recalled = controller.invoke("assistant", "recall")

    assert recalled.is_ok
    assert recalled.value == []
    assert recalled.metadata["guardrail"]["passed"] is False
    assert len(provider.requests_for("assistant", "recall")) == 1
    record = sink.records[-1]
    assert record.guardrail_violation == "shared_state_slot_drift"
    assert record.guardrail_enforced is False


@pytest.mark.parametrize("budget", [0, 1, 2])
def test_guardrail_budget_allows_n_plus_one_generations(
    state_db: StateDB, registry: RoleProfileRegistry, budget: int
) -> None:
    registry.publish(MEMORY_PROFILE, activate=True)
    provider = RoleScriptProvider(
        {("assistant", "remember"): [REMEMBER], ("assistant", "recall"): [RECALL_DRIFT]}
    )
    controller = _controller(
        state_db, provider, budgets=RepairBudgets(guardrail_recovery=budget)
    )

    controller.invoke("assistant", "remember", "milk")
    outcome = controller.invoke("assistant", "recall")

    assert outcome.error_type == ErrorType.GUARDRAIL_RETRY_EXHAUSTED
    assert len(provider.requests_for("assistant", "recall")) == budget + 1
    assert outcome.error_message == TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE
    assert outcome.metadata["normalized"] is True
    assert "assistant.recall" in outcome.metadata["raw_error_message"]
    assert controller.context_for("assistant") == {"history": ["milk"]}


def test_delegated_exhaustion_keeps_raw_message(
    state_db: StateDB, registry: RoleProfileRegistry
) -> None:
    registry.publish(MEMORY_PROFILE, activate=True)
    planner = (
        "sub = delegate('assistant', 'recall')\n"
        "return {'error_type': sub.error_type, 'message': sub.error_message,"
        " 'normalized': bool(sub.metadata.get('normalized'))}\n"
    )
    provider = RoleScriptProvider(
        {
            ("assistant", "remember"): [REMEMBER],
            ("assistant", "recall"): [RECALL_DRIFT],
            ("planner", "plan"): [planner],
        }
    )
    controller = _controller(state_db, provider)

    controller.invoke("assistant", "remember", "milk")
    outcome = controller.invoke("planner", "plan")

    assert outcome.is_ok
    assert outcome.value["error_type"] == ErrorType.GUARDRAIL_RETRY_EXHAUSTED
    assert outcome.value["message"] != TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE
    assert outcome.value["normalized"] is False


def test_delegation_depth_limit_and_lineage(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("loop", "spin"): ["return delegate('loop', 'spin')\n"]})
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, delegation_max_depth=1, sink=sink)

    outcome = controller.invoke("loop", "spin")

    assert outcome.error_type == ErrorType.DELEGATION_DEPTH_EXCEEDED
    assert outcome.retriable is False
    records = sink.records
    assert [record.depth for record in records] == [2, 1, 0]
    assert len({record.trace_id for record in records}) == 1
    assert records[0].parent_call_id == records[1].call_id
    assert records[1].parent_call_id == records[2].call_id
    assert records[0].artifact_source is None


def test_execution_repair_regenerates_with_targeted_hint(state_db: StateDB) -> None:
    provider = RoleScriptProvider(
        {("calc", "total"): ["return context['totals']\n", "return context.get('totals', 0)\n"]}
    )
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, sink=sink)

    outcome = controller.invoke("calc", "total")

    assert outcome.is_ok and outcome.value == 0
    feedback = provider.requests[1].feedback or ""
    assert "KeyError" in feedback
    assert "context.get" in feedback
    assert sink.records[0].execution_repair_attempts == 1


def test_execution_repair_exhaustion_returns_last_failure(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("calc", "total"): ["return context['totals']\n"]})
    controller = _controller(state_db, provider)

    outcome = controller.invoke("calc", "total")

    assert outcome.error_type == ErrorType.EXECUTION
    assert outcome.metadata["exception_class"] == "KeyError"
    assert len(provider.requests) == 2


def test_low_utility_is_repaired_then_exhausted(state_db: StateDB) -> None:
    repaired = RoleScriptProvider(
        {
            ("search", "find"): [
                "return {'status': 'empty_result'}\n",
                "return {'status': 'ok', 'items': [1]}\n",
            ]
        }
    )
    outcome = _controller(state_db, repaired).invoke("search", "find")
    assert outcome.is_ok
    assert outcome.value == {"status": "ok", "items": [1]}
    assert "low_utility" in (repaired.requests[1].feedback or "")

    stubborn = RoleScriptProvider({("search", "scan"): ["return {'status': 'no_useful_result'}\n"]})
    exhausted = _controller(state_db, stubborn).invoke("search", "scan")
    assert exhausted.error_type == ErrorType.OUTCOME_REPAIR_RETRY_EXHAUSTED
    assert len(stubborn.requests) == 2


def test_failing_persisted_version_seeds_regeneration(state_db: StateDB) -> None:
    provider = RoleScriptProvider(
        {
            ("calc", "divide"): [
                "return 10 / args[0]\n",
                "return 10 / args[0] if args[0] else 0\n",
            ]
        }
    )
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, sink=sink)

    assert controller.invoke("calc", "divide", 2).value == 5.0
    outcome = controller.invoke("calc", "divide", 0)

    assert outcome.is_ok and outcome.value == 0
    feedback = provider.requests[1].feedback or ""
    assert "persisted_repair" in feedback
    assert "ZeroDivisionError" in feedback
    record = sink.records[-1]
    assert record.artifact_source == "generated"
    assert record.execution_repair_attempts == 0
    store = ArtifactStore(state_db)
    first_checksum = sink.records[0].artifact_checksum
    failed = [item for item in store.versions("calc", "divide") if item.checksum == first_checksum]
    assert failed[0].scorecard.calls == 2


def test_return_error_contract_triggers_outcome_repair(state_db: StateDB) -> None:
    provider = RoleScriptProvider(
        {("analyst", "classify"): ["return {'label': 'buy'}\n", "return {'signal': 'buy'}\n"]}
    )
    contract = {
        "deliverable": {"type": "object", "required": ["signal"]},
        "failure_policy": "return_error",
    }

    outcome = _controller(state_db, provider).invoke("analyst", "classify", contract=contract)

    assert outcome.is_ok and outcome.value == {"signal": "buy"}
    feedback = provider.requests[1].feedback or ""
    assert "contract_violation" in feedback
    assert "expected: object with keys ['signal']" in feedback
    assert provider.requests[0].prompt_context["contract"] is not None


def test_observational_contract_records_mismatch(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("analyst", "classify"): ["return {'label': 'buy'}\n"]})
    sink = InMemoryCallLog()
    contract = {"deliverable": {"type": "object", "required": ["signal"]}}

    outcome = _controller(state_db, provider, sink=sink).invoke(
        "analyst", "classify", contract=contract
    )

    assert outcome.is_ok
    assert outcome.metadata["contract"]["mismatch"] == "missing_required_key"
    assert sink.records[0].contract_applied is True
    assert sink.records[0].contract_passed is False


def test_fallback_role_runs_as_child_call(state_db: StateDB) -> None:
    provider = RoleScriptProvider(
        {
            ("analyst", "classify"): ["return {'label': 'buy'}\n"],
            ("backup", "classify"): ["return {'signal': 'hold'}\n"],
        }
    )
    sink = InMemoryCallLog()
    contract = {
        "deliverable": {"type": "object", "required": ["signal"]},
        "failure_policy": "fallback_role",
        "fallback_role": "backup",
    }

    outcome = _controller(state_db, provider, sink=sink).invoke(
        "analyst", "classify", contract=contract
    )

    assert outcome.is_ok
    assert outcome.value == {"signal": "hold"}
    assert outcome.metadata["fallback_role"] == "backup"
    assert outcome.metadata["fallback_from_role"] == "analyst"
    backup, analyst = sink.records
    assert backup.role == "backup" and backup.depth == 1
    assert backup.parent_call_id == analyst.call_id


def test_code_policy_violation_is_terminal(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("calc", "add"): ["delegate = None\nreturn 1\n"]})

    outcome = _controller(state_db, provider).invoke("calc", "add")

    assert outcome.error_type == ErrorType.GUARDRAIL_VIOLATION
    assert outcome.retriable is False
    assert outcome.metadata["violation_type"] == "runtime_internal_mutation"
    assert ArtifactStore(state_db).versions("calc", "add") == []


def test_callable_left_in_context_is_rolled_back_and_repaired(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("calc", "add"): [LEAK, "return args[0] + args[1]\n"]})
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, sink=sink)

    outcome = controller.invoke("calc", "add", 2, 3)

    assert outcome.is_ok and outcome.value == 5
    assert controller.context_for("calc") == {}
    feedback = provider.requests[1].feedback or ""
    assert "context_integrity_violation" in feedback
    assert "context['hook']" in feedback
    assert sink.records[0].guardrail_recovery_attempts == 1


def test_context_leak_exhaustion_leaves_the_role_usable(state_db: StateDB) -> None:
    provider = RoleScriptProvider(
        {("calc", "hook"): [LEAK], ("calc", "add"): ["return args[0] + args[1]\n"]}
    )
    controller = _controller(state_db, provider)

    outcome = controller.invoke("calc", "hook")

    assert outcome.error_type == ErrorType.GUARDRAIL_RETRY_EXHAUSTED
    assert outcome.error_message == TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE
    assert outcome.metadata["normalized"] is True
    assert len(provider.requests_for("calc", "hook")) == 2
    assert controller.context_for("calc") == {}

    added = controller.invoke("calc", "add", 1, 2)
    again = controller.invoke("calc", "hook")

    assert added.is_ok and added.value == 3
    assert again.error_type == ErrorType.GUARDRAIL_RETRY_EXHAUSTED
    assert controller.context_for("calc") == {}


def test_callable_already_in_shared_context_is_fatal(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("calc", "add"): ["return 1\n"]})
    controller = _controller(state_db, provider)
    controller.context_for("calc")["hook"] = len

    with pytest.raises(RegistryIntegrityError):
        controller.invoke("calc", "add")

    assert controller.context_for("calc") == {"hook": len}


def test_same_role_delegate_after_a_leak_restores_the_caller_context(
    state_db: StateDB,
) -> None:
    outer = "context['hook'] = len\nreturn delegate('calc', 'inner')\n"
    provider = RoleScriptProvider(
        {("calc", "outer"): [outer], ("calc", "inner"): ["return 1\n"]}
    )
    controller = _controller(state_db, provider)

    with pytest.raises(RegistryIntegrityError):
        controller.invoke("calc", "outer")

    assert controller.context_for("calc") == {}


def test_concurrent_invokes_share_one_version_and_one_promotion(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("calc", "add"): ["return args[0] + args[1]\n"]})
    controller = _controller(state_db, provider)
    barrier = threading.Barrier(8)
    outcomes: list[Outcome] = []
    guard = threading.Lock()

    def call(index: int) -> None:
        barrier.wait()
        outcome = controller.invoke("calc", "add", index, 1)
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=call, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(outcomes) == 8
    assert all(outcome.is_ok for outcome in outcomes)
    assert sorted(outcome.value for outcome in outcomes) == list(range(1, 9))
    store = ArtifactStore(state_db)
    [version] = store.versions("calc", "add")
    assert version.scorecard.calls == 8
    admissions = [
        row
        for row in store.ledger("calc", "add", version.checksum)
        if (row.from_state, row.to_state) == ("candidate", "probation")
    ]
    assert len(admissions) == 1


def test_invoke_with_forwards_reserved_keyword_names(state_db: StateDB) -> None:
    provider = RoleScriptProvider(
        {("calc", "quote"): ["return [kwargs['contract'], kwargs['call_context']]\n"]}
    )
    controller = _controller(state_db, provider)

    outcome = controller.invoke_with(
        "calc", "quote", kwargs={"contract": "c-17", "call_context": "desk"}
    )

    assert outcome.is_ok
    assert outcome.value == ["c-17", "desk"]
    assert provider.requests[0].prompt_context["kwargs"].keys() == {"contract", "call_context"}


def test_expired_call_deadline_returns_timeout(state_db: StateDB) -> None:
    provider = RoleScriptProvider({("calc", "add"): ["return 1\n"]})
    controller = _controller(
        state_db, provider, call_timeout_seconds=5.0, clock=SteppingClock(10.0)
    )

    outcome = controller.invoke("calc", "add")

    assert outcome.error_type == ErrorType.TIMEOUT
    assert outcome.retriable is True
    assert provider.requests == []


def test_outcome_values_returned_by_programs_keep_their_status(state_db: StateDB) -> None:
    provider = RoleScriptProvider(
        {("calc", "check"): ["return Outcome.error('missing_input', 'need a number')\n"]}
    )

    outcome = _controller(state_db, provider).invoke("calc", "check")

    assert outcome.is_error
    assert outcome.error_type == "missing_input"
    assert outcome.error_message == "need a number"
    assert outcome.role == "calc" and outcome.method == "check"


@pytest.mark.parametrize("enforced", [True, False])
def test_prescriptive_history_slot_against_log_writer(
    state_db: StateDB, registry: RoleProfileRegistry, enforced: bool
) -> None:
    registry.publish(
        {
            "role": "assistant",
            "version": 1,
            "constraints": {
                "memory_slot": {
                    "kind": "shared_state_slot",
                    "mode": "prescriptive",
                    "canonical_key": "history",
                }
            },
        },
        activate=True,
    )
    log_writer = "context['log'] = context.get('log', []) + [args[0]]\nreturn 'stored'\n"
    provider = RoleScriptProvider(
        {("assistant", "remember"): [log_writer], ("assistant", "recall"): [RECALL_GOOD]}
    )
    sink = InMemoryCallLog()
    controller = _controller(state_db, provider, enforcement_default=enforced, sink=sink)

    stored = controller.invoke("assistant", "remember", "milk")
    recalled = controller.invoke("assistant", "recall")

    remember_record = sink.records[0]
    assert remember_record.guardrail_violation == "shared_state_slot_drift"
    assert remember_record.guardrail_enforced is enforced
    assert recalled.is_ok
    assert recalled.value == []
    if enforced:
        assert stored.error_type == ErrorType.GUARDRAIL_RETRY_EXHAUSTED
        assert len(provider.requests_for("assistant", "remember")) == 2
        assert controller.context_for("assistant") == {}
    else:
        assert stored.is_ok and stored.value == "stored"
        assert len(provider.requests_for("assistant", "remember")) == 1
        assert controller.context_for("assistant") == {"log": ["milk"]}
