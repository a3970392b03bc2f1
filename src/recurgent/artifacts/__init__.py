"""
recurgent artifacts — versioned artifact registry.

Purpose
- Store generated versions with scorecards, select the version that serves a
  call and move versions through the promotion lifecycle.
"""

from recurgent.artifacts.lifecycle import LifecycleDecision, LifecycleEngine, LifecyclePolicy
from recurgent.artifacts.scorecard import CallObservation, Scorecard, consistency_ratio
from recurgent.artifacts.selector import ArtifactSelector, choose_enforced, choose_shadow
from recurgent.artifacts.store import (
    ALLOWED_TRANSITIONS,
    ArtifactNotFoundError,
    ArtifactStore,
    ArtifactVersionRecord,
    EvaluationRecord,
    LedgerEntry,
    LifecycleTransitionError,
    RetentionPolicy,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ArtifactNotFoundError",
    "ArtifactSelector",
    "ArtifactStore",
    "ArtifactVersionRecord",
    "CallObservation",
    "EvaluationRecord",
    "LedgerEntry",
    "LifecycleDecision",
    "LifecycleEngine",
    "LifecyclePolicy",
    "LifecycleTransitionError",
    "RetentionPolicy",
    "Scorecard",
    "choose_enforced",
    "choose_shadow",
    "consistency_ratio",
]
