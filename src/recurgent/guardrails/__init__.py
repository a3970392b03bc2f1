"""
recurgent guardrails — role profiles, continuity policy, contracts and repair.

Purpose
- Detect continuity drift and deliverable violations in generated code and its
  outcomes, and drive bounded inline repair.
"""

from recurgent.guardrails.contract import (
    ContractError,
    ContractResult,
    ContractValidator,
    OutcomeContract,
    evaluate_acceptance,
)
from recurgent.guardrails.policy import (
    ConstraintViolation,
    GuardrailPolicyEngine,
    GuardrailReport,
    check_code_policy,
    classify_violation,
    normalize_top_level_exhaustion,
    primary_state_key,
    shape_of,
)
from recurgent.guardrails.profile_registry import (
    ProfileHistoryEntry,
    RoleObservation,
    RoleProfileRegistry,
)
from recurgent.guardrails.repair import (
    RepairBudgets,
    RepairHint,
    RepairSession,
    restore_context,
    snapshot_context,
)
from recurgent.guardrails.role_profile import RoleConstraint, RoleProfile, RoleProfileError

__all__ = [
    "ConstraintViolation",
    "ContractError",
    "ContractResult",
    "ContractValidator",
    "GuardrailPolicyEngine",
    "GuardrailReport",
    "OutcomeContract",
    "ProfileHistoryEntry",
    "RepairBudgets",
    "RepairHint",
    "RepairSession",
    "RoleConstraint",
    "RoleObservation",
    "RoleProfile",
    "RoleProfileError",
    "RoleProfileRegistry",
    "check_code_policy",
    "classify_violation",
    "evaluate_acceptance",
    "normalize_top_level_exhaustion",
    "primary_state_key",
    "restore_context",
    "shape_of",
    "snapshot_context",
]
