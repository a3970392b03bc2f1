"""
recurgent — call controller

Purpose
- Resolve one role method invocation into an ``Outcome``: select a persisted
  artifact or generate one, execute it, check guardrails and the outcome
  contract, repair within budget, then score the artifact and advance its
  lifecycle.

What should be included in this file
- ``CallController.invoke`` as the single generic entry point.
- Delegation through an explicit child ``CallContext`` with a depth limit.
- A total-call deadline checked at every stage boundary.
- One ``CallRecord`` emitted per resolved call (delegated calls included).

Functional requirements
- Expected failure modes are returned as error outcomes; only
  ``RegistryIntegrityError`` (and invalid arguments) propagate.
- Scorecards are written once per call for the artifact that produced the
  terminal result. A persisted version that fails with a non-extrinsic error is
  scored, then replaced by a fresh generation seeded with that failure.
- The shared context of a role is snapshotted before each attempt and restored
  before any retry and before a fatal error leaves the call. Code objects left
  in the context by a program are repaired through the guardrail lane.

Non-functional requirements
- Synchronous and thread-compatible; per-role contexts are created under a lock
  and scorecard writes are serialized by the store.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Final

import structlog

from recurgent.artifacts.lifecycle import LifecycleEngine
from recurgent.artifacts.scorecard import CallObservation
from recurgent.artifacts.selector import ArtifactSelector
from recurgent.artifacts.store import ArtifactStore, ArtifactVersionRecord
from recurgent.constants import DEFAULT_DELEGATION_MAX_DEPTH
from recurgent.environment.manifest import check_additive
from recurgent.errors import (
    CallTimeoutError,
    ContextIntegrityError,
    DelegationDepthExceededError,
    ErrorType,
    ExecutionError,
    FailureClass,
    GuardrailRetryExhaustedError,
    OutcomeRepairRetryExhaustedError,
    RecurgentError,
    RegistryIntegrityError,
    failure_class,
)
from recurgent.execution.program import is_json_compatible
from recurgent.execution.sandbox import DelegateFunction, ExecutionResult, ExecutionSandbox
from recurgent.guardrails.contract import ContractResult, ContractValidator, OutcomeContract
from recurgent.guardrails.policy import (
    GuardrailPolicyEngine,
    GuardrailReport,
    normalize_top_level_exhaustion,
)
from recurgent.guardrails.repair import (
    RepairBudgets,
    RepairHint,
    RepairSession,
    restore_context,
    snapshot_context,
)
from recurgent.observability.call_log import CallRecord, CallRecordSink
from recurgent.observability.logging import correlation_scope
from recurgent.outcome import CallContext, CallRequest, Outcome
from recurgent.synthesis.generation import GenerationEngine
from recurgent.utils.hashing import canonical_json

LOW_UTILITY_STATUSES: Final[frozenset[str]] = frozenset(
    {
        "success_no_parse",
        "success_but_unusable",
        "partial_success_unusable",
        "empty_result",
        "no_useful_result",
        "low_utility",
    }
)

_CONTEXT_INTEGRITY_CORRECTION: Final[str] = (
    "Store only plain data in context; keep functions, lambdas, classes and modules"
    " local to the method body."
)


@dataclass(frozen=True, slots=True)
class _RepairNeed:
    lane: str
    failure_type: str
    message: str
    expected: str | None = None
    actual: str | None = None
    correction: str | None = None


@dataclass(frozen=True, slots=True)
class _Attempt:
    outcome: Outcome
    report: GuardrailReport | None = None
    contract: ContractResult = field(default_factory=ContractResult)
    need: _RepairNeed | None = None


def coerce_low_utility(outcome: Outcome) -> Outcome:
    """Turn an ``ok`` outcome that self-reports no useful result into a retriable error."""

    value = outcome.value
    if not outcome.is_ok or not isinstance(value, Mapping):
        return outcome
    status = value.get("status")
    if not isinstance(status, str) or status not in LOW_UTILITY_STATUSES:
        return outcome
    return Outcome.error(
        ErrorType.LOW_UTILITY,
        f"outcome reported low utility ({status})",
        retriable=True,
        role=outcome.role,
        method=outcome.method,
        metadata={**outcome.metadata, "low_utility_status": status},
    )


def as_outcome(value: Any, *, role: str, method: str) -> Outcome:
    if isinstance(value, Outcome):
        return value.with_identity(role=role, method=method)
    return Outcome.ok(value, role=role, method=method)


class CallController:
    """Single generic entry point turning ``invoke(role, method, ...)`` into an ``Outcome``."""

    def __init__(
        self,
        *,
        generator: GenerationEngine,
        store: ArtifactStore,
        selector: ArtifactSelector,
        lifecycle: LifecycleEngine,
        sandbox: ExecutionSandbox,
        guardrails: GuardrailPolicyEngine,
        contracts: ContractValidator | None = None,
        repair_budgets: RepairBudgets | None = None,
        delegation_max_depth: int = DEFAULT_DELEGATION_MAX_DEPTH,
        call_timeout_seconds: float | None = None,
        call_sink: CallRecordSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if delegation_max_depth < 0:
            raise ValueError("delegation_max_depth must be >= 0")
        if call_timeout_seconds is not None and call_timeout_seconds <= 0:
            raise ValueError("call_timeout_seconds must be > 0")
        self._generator = generator
        self._store = store
        self._selector = selector
        self._lifecycle = lifecycle
        self._sandbox = sandbox
        self._guardrails = guardrails
        self._contracts = contracts if contracts is not None else ContractValidator()
        self._repair_budgets = repair_budgets if repair_budgets is not None else RepairBudgets()
        self._delegation_max_depth = delegation_max_depth
        self._call_timeout_seconds = call_timeout_seconds
        self._call_sink = call_sink
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._contexts_guard = threading.Lock()
        self._contexts: dict[str, dict[str, Any]] = {}

    def context_for(self, role: str) -> dict[str, Any]:
        """Shared mutable context of ``role``, visible to its generated code."""

        with self._contexts_guard:
            return self._contexts.setdefault(role, {})

    def invoke(
        self,
        role: str,
        method: str,
        *args: Any,
        call_context: CallContext | None = None,
        contract: OutcomeContract | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> Outcome:
        """Resolve ``role.method(*args, **kwargs)`` into an ``Outcome``.

        ``call_context`` and ``contract`` are reserved keyword names and are never
        forwarded to the generated method; use ``invoke_with`` to pass either as
        a method keyword.
        """

        return self.invoke_with(
            role, method, args, kwargs, call_context=call_context, contract=contract
        )

    def invoke_with(
        self,
        role: str,
        method: str,
        args: Sequence[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
        *,
        call_context: CallContext | None = None,
        contract: OutcomeContract | Mapping[str, Any] | None = None,
    ) -> Outcome:
        """Like ``invoke`` with method arguments passed explicitly, so any keyword is allowed."""

        kwargs = dict(kwargs or {})
        normalized_contract = OutcomeContract.normalize(contract)
        request = CallRequest(
            role=role,
            method=method,
            args=tuple(args),
            kwargs=kwargs,
            context=call_context if call_context is not None else CallContext.root(),
            contract=contract if isinstance(contract, Mapping) else None,
        )
        deadline = None
        if self._call_timeout_seconds is not None:
            deadline = self._clock() + self._call_timeout_seconds
        return self._run(request, normalized_contract, deadline)

    def _run(
        self, request: CallRequest, contract: OutcomeContract | None, deadline: float | None
    ) -> Outcome:
        ctx = request.context
        record = CallRecord(
            role=request.role,
            method=request.method,
            trace_id=ctx.trace_id,
            call_id=ctx.call_id,
            parent_call_id=ctx.parent_call_id,
            depth=ctx.depth,
            model=self._generator.model,
        )
        started = self._clock()
        with correlation_scope(trace_id=ctx.trace_id, call_id=ctx.call_id):
            if ctx.depth > self._delegation_max_depth:
                outcome = Outcome.from_exception(
                    DelegationDepthExceededError(
                        f"delegation depth {ctx.depth} exceeds limit {self._delegation_max_depth}",
                        metadata={"depth": ctx.depth, "max_depth": self._delegation_max_depth},
                    )
                )
            else:
                try:
                    outcome = self._resolve(request, contract, deadline, record)
                except RecurgentError as exc:
                    outcome = Outcome.from_exception(exc)

            outcome = outcome.with_identity(role=request.role, method=request.method)
            outcome = normalize_top_level_exhaustion(outcome, ctx)
            record.outcome_status = outcome.status.value
            record.error_type = outcome.error_type
            record.retriable = outcome.retriable if outcome.is_error else None
            record.duration_ms = round((self._clock() - started) * 1000.0, 3)
            self._emit(record)
            self._logger.info(
                "call_resolved",
                role=request.role,
                method=request.method,
                status=record.outcome_status,
                error_type=record.error_type,
                depth=ctx.depth,
                artifact_source=record.artifact_source,
                checksum=record.artifact_checksum,
            )
        return outcome

    def _resolve(
        self,
        request: CallRequest,
        contract: OutcomeContract | None,
        deadline: float | None,
        record: CallRecord,
    ) -> Outcome:
        role, method = request.role, request.method
        context = self.context_for(role)
        session = RepairSession(self._repair_budgets, role, method)
        persisted = self._selector.select(role, method)
        seed: RepairHint | None = None

        try:
            while True:
                self._remaining(deadline)
                if persisted is not None:
                    version, source = persisted, "persisted"
                else:
                    version = self._generate(
                        request, contract, context, session, seed, deadline, record
                    )
                    source = "generated"
                record.artifact_source = source
                record.artifact_checksum = version.checksum
                record.lifecycle_state_at_selection = version.lifecycle_state
                record.dependencies = version.dependencies.requirements()

                snapshot = snapshot_context(context)
                try:
                    attempt = self._attempt(
                        request, version, contract, context, deadline, record
                    )
                except RegistryIntegrityError:
                    restore_context(context, snapshot)
                    raise
                need = attempt.need
                if need is None:
                    return self._finish(request, version, attempt, record)

                restore_context(context, snapshot)
                if source == "persisted":
                    self._finish(request, version, attempt, record)
                    seed = _persisted_repair_hint(need)
                    persisted = None
                    self._logger.info(
                        "persisted_artifact_repair",
                        role=role,
                        method=method,
                        checksum=version.checksum,
                        failure_type=need.failure_type,
                    )
                    continue

                try:
                    if need.lane == "guardrail":
                        session.next_guardrail(
                            violation_type=need.failure_type,
                            message=need.message,
                            required_correction=need.correction or need.message,
                            expected=need.expected,
                            actual=need.actual,
                        )
                    elif need.lane == "execution":
                        hint = session.next_execution(
                            failure_type=need.failure_type, message=need.message
                        )
                        if hint is None:
                            return self._finish(request, version, attempt, record)
                    else:
                        session.next_outcome(
                            failure_type=need.failure_type,
                            message=need.message,
                            required_correction=need.correction,
                            expected=need.expected,
                            actual=need.actual,
                        )
                except (GuardrailRetryExhaustedError, OutcomeRepairRetryExhaustedError) as exc:
                    exhausted = Outcome.from_exception(exc, role=role, method=method)
                    final = replace(attempt, outcome=exhausted)
                    return self._finish(request, version, final, record)
                self._logger.info(
                    "repair_attempt",
                    role=role,
                    method=method,
                    lane=need.lane,
                    failure_type=need.failure_type,
                    attempt_number=session.attempt_number,
                )
        finally:
            record.guardrail_recovery_attempts = session.guardrail_recovery_attempts
            record.execution_repair_attempts = session.execution_repair_attempts
            record.outcome_repair_attempts = session.outcome_repair_attempts

    def _generate(
        self,
        request: CallRequest,
        contract: OutcomeContract | None,
        context: Mapping[str, Any],
        session: RepairSession,
        seed: RepairHint | None,
        deadline: float | None,
        record: CallRecord,
    ) -> ArtifactVersionRecord:
        role, method = request.role, request.method
        feedback = session.feedback()
        if feedback is None and seed is not None:
            feedback = seed.render()
        try:
            result = self._generator.generate(
                role,
                method,
                self._prompt_context(request, contract, context),
                timeout_seconds=self._remaining(deadline),
                feedback=feedback,
            )
        except RecurgentError as exc:
            record.generation_attempts += int(exc.metadata.get("generation_attempts", 0))
            raise
        record.generation_attempts += result.attempts
        artifact = result.artifact
        check_additive(self._store.role_manifest(role), artifact.dependencies, role=role)
        self._guardrails.check_code(role, method, artifact.code)
        return self._store.save_artifact(
            role,
            method,
            artifact,
            generation_attempts=result.attempts,
            policy_version=self._lifecycle.policy.version,
            mode=self._lifecycle.policy.mode,
        )

    def _attempt(
        self,
        request: CallRequest,
        version: ArtifactVersionRecord,
        contract: OutcomeContract | None,
        context: dict[str, Any],
        deadline: float | None,
        record: CallRecord,
    ) -> _Attempt:
        role, method = request.role, request.method
        try:
            execution = self._sandbox.execute(
                role=role,
                method=method,
                code=version.code,
                dependencies=version.dependencies,
                context=context,
                args=request.args,
                kwargs=dict(request.kwargs),
                timeout_seconds=self._remaining(deadline),
                delegate=self._delegate_for(request.context, deadline),
            )
            self._note_execution(record, execution)
            self._remaining(deadline)
        except ContextIntegrityError as exc:
            failed = Outcome.from_exception(exc, role=role, method=method)
            need = _RepairNeed(
                "guardrail",
                "context_integrity_violation",
                exc.message,
                expected="plain data (str, numbers, bool, None, lists, dicts) in context",
                actual=f"callable or module at {exc.path}",
                correction=_CONTEXT_INTEGRITY_CORRECTION,
            )
            return _Attempt(failed, need=need)
        except ExecutionError as exc:
            failed = Outcome.from_exception(exc, role=role, method=method)
            return _Attempt(failed, need=_RepairNeed("execution", exc.error_type, exc.message))
        except RecurgentError as exc:
            return _Attempt(Outcome.from_exception(exc, role=role, method=method))

        outcome = coerce_low_utility(as_outcome(execution.value, role=role, method=method))

        report = self._guardrails.evaluate(role, method, version.code, outcome)
        first = report.first_violation
        record.guardrail_violation = None if first is None else first.violation_type
        record.guardrail_enforced = report.enforced if report.evaluated else None
        if first is not None:
            if report.enforced and first.guardrail_class == "terminal_guardrail":
                terminal = Outcome.error(
                    ErrorType.GUARDRAIL_VIOLATION,
                    first.message,
                    retriable=False,
                    role=role,
                    method=method,
                    metadata={"guardrail": report.to_dict()},
                )
                return _Attempt(terminal, report=report)
            if report.enforced:
                need = _RepairNeed(
                    "guardrail",
                    first.violation_type,
                    first.message,
                    expected=first.expected,
                    actual=first.actual,
                    correction=first.correction_hint,
                )
                return _Attempt(outcome, report=report, need=need)
            outcome = outcome.with_metadata(guardrail=report.to_dict())

        result = self._contracts.validate(contract, outcome)
        record.contract_applied = result.applied
        record.contract_passed = result.passed
        record.contract_mismatch = result.mismatch
        if contract is not None and result.failed:
            outcome, need = self._apply_failure_policy(request, contract, outcome, result, deadline)
            if need is not None:
                return _Attempt(outcome, report=report, contract=result, need=need)
            return _Attempt(outcome, report=report, contract=result)

        if (
            outcome.is_error
            and outcome.retriable
            and failure_class(outcome.error_type) is not FailureClass.EXTRINSIC
        ):
            need = _RepairNeed("outcome", str(outcome.error_type), outcome.error_message or "")
            return _Attempt(outcome, report=report, contract=result, need=need)
        return _Attempt(outcome, report=report, contract=result)

    def _apply_failure_policy(
        self,
        request: CallRequest,
        contract: OutcomeContract,
        outcome: Outcome,
        result: ContractResult,
        deadline: float | None,
    ) -> tuple[Outcome, _RepairNeed | None]:
        details = result.metadata()
        policy = contract.failure_policy
        if policy == "return_error":
            message = f"outcome contract not satisfied: {result.mismatch}"
            violation = Outcome.error(
                ErrorType.CONTRACT_VIOLATION,
                message,
                retriable=False,
                role=request.role,
                method=request.method,
                metadata={"contract": details},
            )
            need = _RepairNeed(
                "outcome",
                ErrorType.CONTRACT_VIOLATION,
                message,
                expected=_describe_expected(result),
                actual=result.actual_shape,
                correction="Return a value that satisfies the declared deliverable and acceptance.",
            )
            return violation, need
        if policy == "fallback_role" and contract.fallback_role is not None:
            fallback_request = CallRequest(
                role=contract.fallback_role,
                method=request.method,
                args=request.args,
                kwargs=dict(request.kwargs),
                context=request.context.child(),
            )
            fallback = self._run(fallback_request, None, deadline)
            return (
                fallback.with_metadata(
                    contract=details,
                    fallback_role=contract.fallback_role,
                    fallback_from_role=request.role,
                ),
                None,
            )
        if policy == "continue_with_partials":
            return outcome.with_metadata(contract=details, partial=True), None
        return outcome.with_metadata(contract=details), None

    def _finish(
        self,
        request: CallRequest,
        version: ArtifactVersionRecord,
        attempt: _Attempt,
        record: CallRecord,
    ) -> Outcome:
        role, method = request.role, request.method
        outcome = attempt.outcome
        report = attempt.report
        checked = report is not None and report.evaluated
        observation = CallObservation(
            status=outcome.status.value,
            trace_id=request.context.trace_id,
            error_type=outcome.error_type,
            error_message=outcome.error_message,
            contract_applied=attempt.contract.applied,
            contract_passed=attempt.contract.passed,
            guardrail_retry_exhausted=outcome.error_type == ErrorType.GUARDRAIL_RETRY_EXHAUSTED,
            outcome_repair_retry_exhausted=(
                outcome.error_type == ErrorType.OUTCOME_REPAIR_RETRY_EXHAUSTED
            ),
            state_key=None if report is None else report.state_key,
            role_profile_checked=checked,
            role_profile_passed=report.passed if checked and report is not None else None,
        )
        self._store.record_call(role, method, version.checksum, observation)
        if outcome.is_ok and report is not None:
            self._guardrails.commit_observations(role, method, report)
        decision = self._lifecycle.evaluate(role, method, version.checksum)
        record.lifecycle_decision = decision.decision
        return outcome

    def _delegate_for(self, parent: CallContext, deadline: float | None) -> DelegateFunction:
        def delegate(role: str, method: str, *args: Any, **kwargs: Any) -> Outcome:
            child = CallRequest(
                role=role, method=method, args=args, kwargs=kwargs, context=parent.child()
            )
            return self._run(child, None, deadline)

        return delegate

    def _prompt_context(
        self,
        request: CallRequest,
        contract: OutcomeContract | None,
        context: Mapping[str, Any],
    ) -> dict[str, Any]:
        profile = self._guardrails.active_profile(request.role)
        return {
            "role": request.role,
            "method": request.method,
            "args": [_describe(item) for item in request.args],
            "kwargs": {str(key): _describe(value) for key, value in request.kwargs.items()},
            "context_keys": sorted(str(key) for key in context),
            "depth": request.context.depth,
            "role_profile": None if profile is None else profile.to_dict(),
            "contract": None if contract is None else json.loads(canonical_json(asdict(contract))),
        }

    def _note_execution(self, record: CallRecord, execution: ExecutionResult) -> None:
        record.env_id = execution.env_id
        record.environment_cache_hit = execution.environment_cache_hit
        record.env_resolve_ms = execution.env_resolve_ms
        record.env_install_ms = execution.env_install_ms
        record.worker_pid = execution.worker_pid
        record.worker_restart_count = execution.worker_restart_count

    def _remaining(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise CallTimeoutError(
                "call deadline expired",
                metadata={"call_timeout_seconds": self._call_timeout_seconds},
            )
        return remaining

    def _emit(self, record: CallRecord) -> None:
        if self._call_sink is None:
            return
        try:
            self._call_sink.emit(record)
        except OSError as exc:
            self._logger.warning(
                "call_record_emit_failed",
                role=record.role,
                method=record.method,
                error=str(exc),
            )


def _persisted_repair_hint(need: _RepairNeed) -> RepairHint:
    return RepairHint(
        lane="persisted_repair",
        violation_type=need.failure_type,
        message=need.message,
        attempt_number=1,
        remaining_budget=0,
        required_correction=need.correction
        or "Regenerate the method so the persisted failure cannot recur, preserving behavior.",
        expected=need.expected,
        actual=need.actual,
    )


def _describe(value: Any) -> Any:
    return value if is_json_compatible(value) else repr(value)


def _describe_expected(result: ContractResult) -> str | None:
    if result.expected_keys:
        return f"{result.expected_shape or 'object'} with keys {list(result.expected_keys)}"
    return result.expected_shape


__all__ = [
    "LOW_UTILITY_STATUSES",
    "CallController",
    "as_outcome",
    "coerce_low_utility",
]
