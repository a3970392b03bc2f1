"""
recurgent — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Defaults for every section consumed by the runtime.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support profile overlays (``strict`` enforces lifecycle and guardrails,
  ``shadow`` observes only).

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from recurgent.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_DELEGATION_MAX_DEPTH,
    DEFAULT_EXECUTION_REPAIR_BUDGET,
    DEFAULT_GUARDRAIL_RECOVERY_BUDGET,
    DEFAULT_MAX_GENERATION_ATTEMPTS,
    DEFAULT_OUTCOME_REPAIR_BUDGET,
    DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    DEFAULT_PUBLIC_INDEX,
    DEFAULT_WORKER_TERMINATE_GRACE_SECONDS,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    SOURCE_MODES,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "shadow")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_PACKAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "env_root"),
    ("paths", "call_log"),
    ("observability", "log_dir"),
)

FieldKind = Literal["str", "int", "float", "bool", "optional_float", "str_list", "enum"]


class MetaConfig(TypedDict):
    schema_version: int


class RuntimeSection(TypedDict):
    model: str
    delegation_max_depth: int
    call_timeout_seconds: NotRequired[float | None]


class GenerationSection(TypedDict):
    max_attempts: int
    provider_timeout_seconds: float


class GuardrailsSection(TypedDict):
    enforcement_default: bool
    recovery_budget: int
    execution_repair_budget: int
    outcome_repair_budget: int


class LifecycleSection(TypedDict):
    enforcement_enabled: bool
    probation_min_calls: int
    probation_min_success_rate: float
    min_calls: int
    min_sessions: int
    min_contract_pass_rate: float
    min_role_profile_pass_rate: float
    min_state_key_consistency: float
    probation_failure_tolerance: float
    durable_failure_tolerance: float
    regression_min_window: int


class DependenciesSection(TypedDict):
    source_mode: Literal["public_only", "internal_only"]
    sources: list[str]
    allowed_packages: list[str]
    blocked_packages: list[str]
    resolve_timeout_seconds: float
    install_timeout_seconds: float


class WorkerSection(TypedDict):
    timeout_seconds: float
    terminate_grace_seconds: float


class GovernanceSection(TypedDict):
    authority_enforcement_enabled: bool
    maintainers: list[str]


class PathsSection(TypedDict):
    state_db: str
    env_root: str
    call_log: str


class ObservabilitySection(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool
    call_log_enabled: bool


class RecurgentConfig(TypedDict):
    meta: MetaConfig
    runtime: RuntimeSection
    generation: GenerationSection
    guardrails: GuardrailsSection
    lifecycle: LifecycleSection
    dependencies: DependenciesSection
    worker: WorkerSection
    governance: GovernanceSection
    paths: PathsSection
    observability: ObservabilitySection
    profiles: dict[str, dict[str, object]]


DEFAULT_CONFIG: Final[RecurgentConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "runtime": {
        "model": "default",
        "delegation_max_depth": DEFAULT_DELEGATION_MAX_DEPTH,
        "call_timeout_seconds": None,
    },
    "generation": {
        "max_attempts": DEFAULT_MAX_GENERATION_ATTEMPTS,
        "provider_timeout_seconds": DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    },
    "guardrails": {
        "enforcement_default": False,
        "recovery_budget": DEFAULT_GUARDRAIL_RECOVERY_BUDGET,
        "execution_repair_budget": DEFAULT_EXECUTION_REPAIR_BUDGET,
        "outcome_repair_budget": DEFAULT_OUTCOME_REPAIR_BUDGET,
    },
    "lifecycle": {
        "enforcement_enabled": False,
        "probation_min_calls": 1,
        "probation_min_success_rate": 0.5,
        "min_calls": 10,
        "min_sessions": 2,
        "min_contract_pass_rate": 0.95,
        "min_role_profile_pass_rate": 0.99,
        "min_state_key_consistency": 0.5,
        "probation_failure_tolerance": 0.5,
        "durable_failure_tolerance": 0.3,
        "regression_min_window": 3,
    },
    "dependencies": {
        "source_mode": "public_only",
        "sources": [DEFAULT_PUBLIC_INDEX],
        "allowed_packages": [],
        "blocked_packages": [],
        "resolve_timeout_seconds": 300.0,
        "install_timeout_seconds": 600.0,
    },
    "worker": {
        "timeout_seconds": DEFAULT_WORKER_TIMEOUT_SECONDS,
        "terminate_grace_seconds": DEFAULT_WORKER_TERMINATE_GRACE_SECONDS,
    },
    "governance": {
        "authority_enforcement_enabled": True,
        "maintainers": [],
    },
    "paths": {
        "state_db": ".recurgent/state.sqlite",
        "env_root": ".recurgent/envs/",
        "call_log": ".recurgent/calls.jsonl",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": ".recurgent/logs/",
        "redact_secrets": True,
        "call_log_enabled": True,
    },
    "profiles": {
        "strict": {
            "guardrails": {"enforcement_default": True},
            "lifecycle": {"enforcement_enabled": True},
        },
        "shadow": {
            "guardrails": {"enforcement_default": False},
            "lifecycle": {"enforcement_enabled": False},
        },
    },
}


@dataclass(frozen=True, slots=True)
class _FieldRule:
    kind: FieldKind
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()


_RATE = _FieldRule("float", minimum=0.0, maximum=1.0)

SECTION_RULES: Final[dict[str, dict[str, _FieldRule]]] = {
    "meta": {"schema_version": _FieldRule("int", minimum=1)},
    "runtime": {
        "model": _FieldRule("str"),
        "delegation_max_depth": _FieldRule("int", minimum=1),
        "call_timeout_seconds": _FieldRule("optional_float", minimum=0.001),
    },
    "generation": {
        "max_attempts": _FieldRule("int", minimum=1),
        "provider_timeout_seconds": _FieldRule("float", minimum=0.001),
    },
    "guardrails": {
        "enforcement_default": _FieldRule("bool"),
        "recovery_budget": _FieldRule("int", minimum=0),
        "execution_repair_budget": _FieldRule("int", minimum=0),
        "outcome_repair_budget": _FieldRule("int", minimum=0),
    },
    "lifecycle": {
        "enforcement_enabled": _FieldRule("bool"),
        "probation_min_calls": _FieldRule("int", minimum=1),
        "probation_min_success_rate": _RATE,
        "min_calls": _FieldRule("int", minimum=1),
        "min_sessions": _FieldRule("int", minimum=1),
        "min_contract_pass_rate": _RATE,
        "min_role_profile_pass_rate": _RATE,
        "min_state_key_consistency": _RATE,
        "probation_failure_tolerance": _RATE,
        "durable_failure_tolerance": _RATE,
        "regression_min_window": _FieldRule("int", minimum=1),
    },
    "dependencies": {
        "source_mode": _FieldRule("enum", choices=SOURCE_MODES),
        "sources": _FieldRule("str_list"),
        "allowed_packages": _FieldRule("str_list"),
        "blocked_packages": _FieldRule("str_list"),
        "resolve_timeout_seconds": _FieldRule("float", minimum=0.001),
        "install_timeout_seconds": _FieldRule("float", minimum=0.001),
    },
    "worker": {
        "timeout_seconds": _FieldRule("float", minimum=0.001),
        "terminate_grace_seconds": _FieldRule("float", minimum=0.0),
    },
    "governance": {
        "authority_enforcement_enabled": _FieldRule("bool"),
        "maintainers": _FieldRule("str_list"),
    },
    "paths": {
        "state_db": _FieldRule("str"),
        "env_root": _FieldRule("str"),
        "call_log": _FieldRule("str"),
    },
    "observability": {
        "log_level": _FieldRule("enum", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_dir": _FieldRule("str"),
        "redact_secrets": _FieldRule("bool"),
        "call_log_enabled": _FieldRule("bool"),
    },
}

_OPTIONAL_FIELDS: Final[frozenset[tuple[str, str]]] = frozenset(
    {("runtime", "call_timeout_seconds")}
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> RecurgentConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None or not profile.strip():
        return materialized
    selected = profile.strip()

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping) or selected not in profiles_raw:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    overlay_raw = profiles_raw[selected]
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    allowed = set(SECTION_RULES) | {"profiles"}
    _reject_unknown_keys(root, allowed, "", issues)

    normalized: dict[str, Any] = {}
    for section in sorted(SECTION_RULES):
        raw = root.get(section)
        if raw is None:
            issues.add(section, "missing required section")
            continue
        section_obj = _as_object(raw, section, issues)
        if section_obj is None:
            continue
        normalized[section] = _validate_section(
            section, section_obj, section, issues, partial=False
        )

    meta = normalized.get("meta", {})
    found_version = meta.get("schema_version")
    if isinstance(found_version, int) and found_version != ConfigSchemaVersion:
        issues.add(
            "meta.schema_version",
            f"schema version {found_version} is not supported (expected {ConfigSchemaVersion})",
        )

    profiles_raw = root.get("profiles", {})
    profiles_obj = _as_object(profiles_raw, "profiles", issues)
    if profiles_obj is not None:
        normalized["profiles"] = _validate_profiles(profiles_obj, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _validate_section(
    section: str,
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    rules = SECTION_RULES[section]
    _reject_unknown_keys(payload, set(rules), path, issues)

    out: dict[str, Any] = {}
    for key in sorted(rules):
        field_path = _join(path, key)
        if key not in payload:
            if not partial and (section, key) not in _OPTIONAL_FIELDS:
                issues.add(field_path, "missing required field")
            continue
        parsed, ok = _coerce_field(payload[key], rules[key], field_path, issues)
        if ok:
            out[key] = parsed

    if section == "dependencies" and not partial:
        _validate_dependency_cross_fields(out, path, issues)
    return out


def _validate_dependency_cross_fields(
    section: Mapping[str, Any], path: str, issues: _IssueCollector
) -> None:
    sources = section.get("sources")
    if section.get("source_mode") == "internal_only":
        internal = [source for source in sources or () if source != DEFAULT_PUBLIC_INDEX]
        if not internal:
            issues.add(
                _join(path, "sources"),
                "internal_only source_mode requires at least one non-public source",
            )
    for key in ("allowed_packages", "blocked_packages"):
        for name in section.get(key) or ():
            if not _PACKAGE_NAME_PATTERN.fullmatch(name.lower()):
                issues.add(_join(path, key), f"invalid package name {name!r}")


def _validate_profiles(
    payload: Mapping[str, object], issues: _IssueCollector
) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for profile_name in sorted(payload):
        profile_path = _join("profiles", profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[profile_name], profile_path, issues)
        if overlay is None:
            continue
        allowed = set(SECTION_RULES) - {"meta"}
        _reject_unknown_keys(overlay, allowed, profile_path, issues)
        validated: dict[str, Any] = {}
        for section in sorted(allowed & set(overlay)):
            section_path = _join(profile_path, section)
            section_obj = _as_object(overlay[section], section_path, issues)
            if section_obj is None:
                continue
            validated[section] = _validate_section(
                section, section_obj, section_path, issues, partial=True
            )
        out[profile_name] = validated
    return out


def _coerce_field(
    value: object, rule: _FieldRule, path: str, issues: _IssueCollector
) -> tuple[Any, bool]:
    if rule.kind == "bool":
        if isinstance(value, bool):
            return value, True
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None, False
    if rule.kind == "int":
        return _as_int(value, path, issues, minimum=rule.minimum)
    if rule.kind == "float":
        return _as_float(value, path, issues, minimum=rule.minimum, maximum=rule.maximum)
    if rule.kind == "optional_float":
        if value is None:
            return None, True
        return _as_float(value, path, issues, minimum=rule.minimum, maximum=rule.maximum)
    if rule.kind == "str_list":
        return _as_str_list(value, path, issues)
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None, False
    if rule.kind == "enum" and parsed not in rule.choices:
        expected = ", ".join(sorted(rule.choices))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None, False
    return parsed, True


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> tuple[list[str], bool]:
    if isinstance(value, str) or not isinstance(value, Sequence):
        issues.add(path, f"expected list of strings, got {type(value).__name__}")
        return [], False
    out: list[str] = []
    ok = True
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is None:
            ok = False
            continue
        if parsed not in out:
            out.append(parsed)
    return out, ok


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> tuple[int | None, bool]:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None, False
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {int(minimum)}")
        return None, False
    return value, True


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> tuple[float | None, bool]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None, False
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None, False
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None, False
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None, False
    return parsed, True


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "RecurgentConfig",
    "SECTION_RULES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
