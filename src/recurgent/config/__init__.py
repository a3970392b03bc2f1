"""
recurgent config package public API.

Purpose
- Export config loading/validation entrypoints, public error types and the
  typed settings consumed by runtime components.

Functional requirements
- Support loading from ``recurgent.toml`` + ``RECURGENT_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from recurgent.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
    normalize_paths,
)
from recurgent.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    RecurgentConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)
from recurgent.config.settings import (
    GovernanceSettings,
    PathSettings,
    RuntimeSettings,
    WorkerSettings,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "GovernanceSettings",
    "PATH_FIELDS",
    "PathSettings",
    "RecurgentConfig",
    "RuntimeSettings",
    "WorkerSettings",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "validate_config",
]
