"""Dependency manifests, source policy and cached execution environments."""

from recurgent.environment.manager import (
    CommandExecutionResult,
    CommandRunner,
    CommandTimeoutError,
    EnvironmentManager,
    EnvironmentTimings,
    ExecutionEnvironment,
    SubprocessCommandRunner,
)
from recurgent.environment.manifest import (
    DependencyManifest,
    DependencyPolicy,
    DependencySpec,
    check_additive,
    compute_env_id,
    merge_manifests,
    normalize_manifest,
)

__all__ = [
    "CommandExecutionResult",
    "CommandRunner",
    "CommandTimeoutError",
    "DependencyManifest",
    "DependencyPolicy",
    "DependencySpec",
    "EnvironmentManager",
    "EnvironmentTimings",
    "ExecutionEnvironment",
    "SubprocessCommandRunner",
    "check_additive",
    "compute_env_id",
    "merge_manifests",
    "normalize_manifest",
]
