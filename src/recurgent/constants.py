"""Stable constants shared across recurgent components."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2
WORKER_IPC_VERSION: Final[int] = 1

# Generation and repair budgets.
DEFAULT_MAX_GENERATION_ATTEMPTS: Final[int] = 2
DEFAULT_PROVIDER_TIMEOUT_SECONDS: Final[float] = 120.0
DEFAULT_GUARDRAIL_RECOVERY_BUDGET: Final[int] = 1
DEFAULT_EXECUTION_REPAIR_BUDGET: Final[int] = 1
DEFAULT_OUTCOME_REPAIR_BUDGET: Final[int] = 1
DEFAULT_DELEGATION_MAX_DEPTH: Final[int] = 8

# Worker supervision.
DEFAULT_WORKER_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_WORKER_TERMINATE_GRACE_SECONDS: Final[float] = 1.0

# Dependency environments.
DEFAULT_PUBLIC_INDEX: Final[str] = "https://pypi.org/simple"
SOURCE_MODES: Final[tuple[str, ...]] = ("public_only", "internal_only")
ENV_READY_MARKER: Final[str] = ".ready.json"
ENV_SITE_PACKAGES_DIR: Final[str] = "site-packages"

# Lifecycle policy.
PROMOTION_POLICY_VERSION: Final[str] = "solver_promotion_v1"
LIFECYCLE_STATES: Final[tuple[str, ...]] = ("candidate", "probation", "durable", "degraded")
SHORT_WINDOW_SIZE: Final[int] = 20
MEDIUM_WINDOW_SIZE: Final[int] = 200
SESSION_HISTORY_LIMIT: Final[int] = 200
STATE_KEY_HISTORY_LIMIT: Final[int] = 200
DEFAULT_EVALUATION_HISTORY_LIMIT: Final[int] = 200
ROLE_PROFILE_HISTORY_READ_LIMIT: Final[int] = 200

# Guardrail boundary normalization.
TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE: Final[str] = (
    "This request couldn't be completed after multiple attempts."
)

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_DELEGATION_MAX_DEPTH",
    "DEFAULT_EVALUATION_HISTORY_LIMIT",
    "DEFAULT_EXECUTION_REPAIR_BUDGET",
    "DEFAULT_GUARDRAIL_RECOVERY_BUDGET",
    "DEFAULT_MAX_GENERATION_ATTEMPTS",
    "DEFAULT_OUTCOME_REPAIR_BUDGET",
    "DEFAULT_PROVIDER_TIMEOUT_SECONDS",
    "DEFAULT_PUBLIC_INDEX",
    "DEFAULT_WORKER_TERMINATE_GRACE_SECONDS",
    "DEFAULT_WORKER_TIMEOUT_SECONDS",
    "ENV_READY_MARKER",
    "ENV_SITE_PACKAGES_DIR",
    "LIFECYCLE_STATES",
    "MEDIUM_WINDOW_SIZE",
    "PROMOTION_POLICY_VERSION",
    "ROLE_PROFILE_HISTORY_READ_LIMIT",
    "SESSION_HISTORY_LIMIT",
    "SHORT_WINDOW_SIZE",
    "SOURCE_MODES",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_KEY_HISTORY_LIMIT",
    "TOP_LEVEL_GUARDRAIL_EXHAUSTED_MESSAGE",
    "WORKER_IPC_VERSION",
]
