"""
recurgent — artifact lifecycle engine

Purpose
- Apply the ``solver_promotion_v1`` policy to a version's scorecard and move it
  through ``candidate -> probation -> durable`` or into ``degraded``.

Functional requirements
- Every evaluation is recorded with its decision, rationale and policy version.
- Every transition appends exactly one ledger row.
- ``degraded`` never advances automatically; ``requalify`` needs an actor.
- Transitions are applied only from the state the evaluation read; a version
  another call moved first is recorded as a ``stale_evaluation`` hold.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from recurgent.artifacts.scorecard import Scorecard
from recurgent.artifacts.store import (
    ArtifactNotFoundError,
    ArtifactStore,
    LedgerEntry,
    LifecycleStateConflictError,
)
from recurgent.constants import PROMOTION_POLICY_VERSION

_VersionKey = tuple[str, str, str]


@dataclass(frozen=True, slots=True)
class LifecyclePolicy:
    enforcement_enabled: bool = False
    probation_min_calls: int = 1
    probation_min_success_rate: float = 0.5
    min_calls: int = 10
    min_sessions: int = 2
    min_contract_pass_rate: float = 0.95
    min_role_profile_pass_rate: float = 0.99
    min_state_key_consistency: float = 0.5
    probation_failure_tolerance: float = 0.5
    durable_failure_tolerance: float = 0.3
    regression_min_window: int = 3
    version: str = PROMOTION_POLICY_VERSION

    @property
    def mode(self) -> str:
        return "enforced" if self.enforcement_enabled else "shadow"

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> LifecyclePolicy:
        defaults = cls()
        return cls(
            enforcement_enabled=bool(
                section.get("enforcement_enabled", defaults.enforcement_enabled)
            ),
            probation_min_calls=int(
                section.get("probation_min_calls", defaults.probation_min_calls)
            ),
            probation_min_success_rate=float(
                section.get("probation_min_success_rate", defaults.probation_min_success_rate)
            ),
            min_calls=int(section.get("min_calls", defaults.min_calls)),
            min_sessions=int(section.get("min_sessions", defaults.min_sessions)),
            min_contract_pass_rate=float(
                section.get("min_contract_pass_rate", defaults.min_contract_pass_rate)
            ),
            min_role_profile_pass_rate=float(
                section.get("min_role_profile_pass_rate", defaults.min_role_profile_pass_rate)
            ),
            min_state_key_consistency=float(
                section.get("min_state_key_consistency", defaults.min_state_key_consistency)
            ),
            probation_failure_tolerance=float(
                section.get("probation_failure_tolerance", defaults.probation_failure_tolerance)
            ),
            durable_failure_tolerance=float(
                section.get("durable_failure_tolerance", defaults.durable_failure_tolerance)
            ),
            regression_min_window=int(
                section.get("regression_min_window", defaults.regression_min_window)
            ),
        )


@dataclass(frozen=True, slots=True)
class LifecycleDecision:
    decision: str
    from_state: str
    to_state: str
    rationale: Mapping[str, Any] = field(default_factory=dict)
    ledger_entry: LedgerEntry | None = None

    @property
    def transitioned(self) -> bool:
        return self.ledger_entry is not None


class LifecycleEngine:
    """Evaluates scorecards against the promotion policy after each call."""

    def __init__(
        self,
        store: ArtifactStore,
        policy: LifecyclePolicy | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._policy = policy if policy is not None else LifecyclePolicy()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def policy(self) -> LifecyclePolicy:
        return self._policy

    def evaluate(self, role: str, method: str, checksum: str) -> LifecycleDecision:
        record = self._store.get(role, method, checksum)
        if record is None:
            raise ArtifactNotFoundError(f"artifact not found: {role}.{method} {checksum}")

        state = record.lifecycle_state
        card = record.scorecard
        policy = self._policy
        incumbent = self._store.incumbent(role, method)

        key = (role, method, checksum)

        if state == "candidate":
            rationale = {
                "calls": card.calls,
                "success_rate": card.success_rate,
                "probation_min_calls": policy.probation_min_calls,
                "probation_min_success_rate": policy.probation_min_success_rate,
            }
            if (
                card.calls >= policy.probation_min_calls
                and card.success_rate >= policy.probation_min_success_rate
            ):
                return self._apply(key, state, "probation", "admit_probation", rationale, incumbent)
            return self._hold(key, state, "continue_candidate", rationale, incumbent)

        if state == "probation":
            regression = self._regression(card, policy.probation_failure_tolerance)
            if regression is not None:
                return self._apply(key, state, "degraded", "degrade", regression, incumbent)
            unmet = self._durable_gate_failures(card, key, incumbent)
            rationale = {
                "calls": card.calls,
                "sessions": card.session_count,
                "contract_pass_rate": card.contract_pass_rate,
                "role_profile_pass_rate": card.role_profile_pass_rate,
                "state_key_consistency_ratio": card.state_key_consistency_ratio,
                "unmet": unmet,
            }
            if not unmet:
                decision = self._apply(key, state, "durable", "promote", rationale, incumbent)
                if decision.transitioned:
                    self._store.set_incumbent(role, method, checksum)
                return decision
            return self._hold(key, state, "continue_probation", rationale, incumbent)

        if state == "durable":
            regression = self._regression(card, policy.durable_failure_tolerance)
            if regression is not None:
                return self._apply(key, state, "degraded", "degrade", regression, incumbent)
            return self._hold(key, state, "hold", {"calls": card.calls}, incumbent)

        return self._hold(
            key,
            state,
            "hold",
            {"reason": "degraded versions require authorized requalification"},
            incumbent,
        )

    def requalify(
        self,
        role: str,
        method: str,
        checksum: str,
        *,
        authorized_by: str,
        note: str | None = None,
    ) -> LedgerEntry:
        """Move a ``degraded`` version back to ``probation`` under an authorizing actor."""

        entry = self._store.transition(
            role,
            method,
            checksum,
            to_state="probation",
            decision="requalify",
            rationale={"note": note} if note else {},
            policy_version=self._policy.version,
            mode=self._policy.mode,
            authorized_by=authorized_by,
        )
        self._store.record_evaluation(
            role,
            method,
            checksum,
            decision="requalify",
            policy_version=self._policy.version,
            mode=self._policy.mode,
            rationale={"authorized_by": authorized_by},
            incumbent_checksum=self._store.incumbent(role, method),
        )
        return entry

    def _regression(self, card: Scorecard, tolerance: float) -> dict[str, Any] | None:
        rate, size = card.window_failure_rate("short")
        if size >= self._policy.regression_min_window and rate > tolerance:
            return {"short_window_failure_rate": rate, "window_size": size, "tolerance": tolerance}
        return None

    def _durable_gate_failures(
        self,
        card: Scorecard,
        key: _VersionKey,
        incumbent: str | None,
    ) -> list[str]:
        policy = self._policy
        unmet: list[str] = []
        if card.calls < policy.min_calls:
            unmet.append("min_calls")
        if card.session_count < policy.min_sessions:
            unmet.append("min_sessions")
        if card.contract_pass_rate < policy.min_contract_pass_rate:
            unmet.append("min_contract_pass_rate")
        if (
            card.role_profile_observations
            and card.role_profile_pass_rate < policy.min_role_profile_pass_rate
        ):
            unmet.append("min_role_profile_pass_rate")
        if card.guardrail_retry_exhausted_count:
            unmet.append("guardrail_retry_exhausted")
        if card.outcome_repair_retry_exhausted_count:
            unmet.append("outcome_repair_retry_exhausted")
        if (
            card.state_key_observations
            and card.state_key_consistency_ratio < policy.min_state_key_consistency
        ):
            unmet.append("min_state_key_consistency")
        role, method, checksum = key
        if incumbent is not None and incumbent != checksum:
            current = self._store.get(role, method, incumbent)
            incumbent_rate = None if current is None else current.scorecard.contract_pass_rate
            if incumbent_rate is not None and card.contract_pass_rate < incumbent_rate:
                unmet.append("below_incumbent_contract_pass_rate")
        return unmet

    def _apply(
        self,
        key: _VersionKey,
        from_state: str,
        to_state: str,
        decision: str,
        rationale: Mapping[str, Any],
        incumbent: str | None,
    ) -> LifecycleDecision:
        role, method, checksum = key
        try:
            entry = self._store.transition(
                role,
                method,
                checksum,
                to_state=to_state,
                decision=decision,
                rationale=rationale,
                policy_version=self._policy.version,
                mode=self._policy.mode,
                expected_state=from_state,
            )
        except LifecycleStateConflictError as exc:
            self._logger.info(
                "lifecycle_transition_superseded",
                role=role,
                method=method,
                checksum=checksum,
                from_state=from_state,
                to_state=to_state,
                detail=str(exc),
            )
            return self._hold(
                key,
                from_state,
                "stale_evaluation",
                {"intended_decision": decision, "intended_to_state": to_state, **rationale},
                incumbent,
            )
        self._store.record_evaluation(
            role,
            method,
            checksum,
            decision=decision,
            policy_version=self._policy.version,
            mode=self._policy.mode,
            rationale=rationale,
            incumbent_checksum=incumbent,
        )
        return LifecycleDecision(
            decision=decision,
            from_state=from_state,
            to_state=to_state,
            rationale=dict(rationale),
            ledger_entry=entry,
        )

    def _hold(
        self,
        key: _VersionKey,
        state: str,
        decision: str,
        rationale: Mapping[str, Any],
        incumbent: str | None,
    ) -> LifecycleDecision:
        role, method, checksum = key
        self._store.record_evaluation(
            role,
            method,
            checksum,
            decision=decision,
            policy_version=self._policy.version,
            mode=self._policy.mode,
            rationale=rationale,
            incumbent_checksum=incumbent,
        )
        self._logger.debug(
            "lifecycle_evaluated", role=role, method=method, checksum=checksum, decision=decision
        )
        return LifecycleDecision(
            decision=decision, from_state=state, to_state=state, rationale=dict(rationale)
        )


__all__ = [
    "LifecycleDecision",
    "LifecycleEngine",
    "LifecyclePolicy",
]
