"""
recurgent — unit tests for the config schema

Purpose
- Pin the structure of the built-in defaults and the behavior of strict
  validation, deep merging and profile overlays independent of the loader.
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from recurgent.config.schema import (
    BUILTIN_PROFILE_NAMES,
    SECTION_RULES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)


def _issue_paths(config: object) -> set[str]:
    return {issue.path for issue in validate_config(config).issues}


def test_defaults_cover_every_section_and_builtin_profiles() -> None:
    config = default_config()

    assert set(SECTION_RULES) <= set(config)
    for section, rules in SECTION_RULES.items():
        assert set(rules) == set(config[section]), section  # type: ignore[literal-required]
    assert set(BUILTIN_PROFILE_NAMES) == set(config["profiles"])
    assert config["meta"]["schema_version"] == ConfigSchemaVersion


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["governance"]["maintainers"].append("mallory")

    assert default_config()["governance"]["maintainers"] == []


def test_missing_section_and_missing_field_are_reported() -> None:
    config = default_config()
    del config["worker"]  # type: ignore[misc]
    del config["paths"]["call_log"]  # type: ignore[misc]

    paths = _issue_paths(config)

    assert "worker" in paths
    assert "paths.call_log" in paths


def test_optional_call_timeout_accepts_null_and_positive_numbers() -> None:
    untimed = assert_valid_config(default_config())
    assert untimed["runtime"]["call_timeout_seconds"] is None

    timed = merge_config(default_config(), {"runtime": {"call_timeout_seconds": 2}})
    assert assert_valid_config(timed)["runtime"]["call_timeout_seconds"] == 2.0

    assert "runtime.call_timeout_seconds" in _issue_paths(
        merge_config(default_config(), {"runtime": {"call_timeout_seconds": 0}})
    )


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"guardrails": {"enforcement_default": "yes"}}, "guardrails.enforcement_default"),
        ({"guardrails": {"recovery_budget": True}}, "guardrails.recovery_budget"),
        ({"guardrails": {"outcome_repair_budget": -1}}, "guardrails.outcome_repair_budget"),
        ({"runtime": {"delegation_max_depth": 0}}, "runtime.delegation_max_depth"),
        ({"observability": {"log_level": "LOUD"}}, "observability.log_level"),
        ({"dependencies": {"source_mode": "anywhere"}}, "dependencies.source_mode"),
        ({"dependencies": {"allowed_packages": "rich"}}, "dependencies.allowed_packages"),
        ({"dependencies": {"blocked_packages": ["Bad Name"]}}, "dependencies.blocked_packages"),
        ({"governance": {"maintainers": [""]}}, "governance.maintainers[0]"),
        ({"paths": {"state_db": "   "}}, "paths.state_db"),
        ({"worker": {"timeout_seconds": float("inf")}}, "worker.timeout_seconds"),
        ({"worker": {"surprise": 1}}, "worker.surprise"),
    ],
)
def test_invalid_fields_are_path_addressed(overlay: dict[str, object], path: str) -> None:
    assert path in _issue_paths(merge_config(default_config(), overlay))


@settings(max_examples=40, deadline=None)
@given(rate=st.floats(allow_nan=False, allow_infinity=False))
def test_rates_are_bounded_to_unit_interval(rate: float) -> None:
    config = merge_config(default_config(), {"lifecycle": {"min_contract_pass_rate": rate}})

    result = validate_config(config)

    assert result.is_valid is (0.0 <= rate <= 1.0)


def test_newer_schema_version_is_rejected() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})

    assert "meta.schema_version" in _issue_paths(config)


def test_non_mapping_root_is_rejected() -> None:
    result = validate_config(["not", "a", "mapping"])

    assert result.config is None
    assert [issue.path for issue in result.issues] == ["<root>"]


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    broken = merge_config(default_config(), {"worker": {"timeout_seconds": "soon"}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(broken)

    assert "worker.timeout_seconds" in str(excinfo.value)
    assert excinfo.value.issues[0].path == "worker.timeout_seconds"


def test_profiles_are_validated_as_partial_overlays() -> None:
    config = merge_config(
        default_config(),
        {
            "profiles": {
                "fast": {"generation": {"max_attempts": 1}},
                "Bad": {"generation": {"max_attempts": 1}},
                "odd": {"meta": {"schema_version": 1}},
                "loose": {"guardrails": {"recovery_budget": -3}},
            }
        },
    )

    result = validate_config(config)
    paths = {issue.path for issue in result.issues}

    assert "profiles.Bad" in paths
    assert "profiles.odd.meta" in paths
    assert "profiles.loose.guardrails.recovery_budget" in paths
    assert not any(path.startswith("profiles.fast") for path in paths)


def test_merge_is_deep_and_leaves_inputs_untouched() -> None:
    base = default_config()
    overlay = {"lifecycle": {"min_calls": 3}, "governance": {"maintainers": ["alice"]}}

    merged = merge_config(base, overlay)

    assert merged["lifecycle"]["min_calls"] == 3
    assert merged["lifecycle"]["min_sessions"] == base["lifecycle"]["min_sessions"]
    assert merged["governance"]["maintainers"] == ["alice"]
    assert base["lifecycle"]["min_calls"] == 10
    merged["governance"]["maintainers"].append("bob")
    assert overlay["governance"]["maintainers"] == ["alice"]


def test_profile_overlay_application() -> None:
    config = default_config()

    shadow = apply_profile_overlay(config, "shadow")
    strict = apply_profile_overlay(config, " strict ")
    untouched = apply_profile_overlay(config, None)

    assert strict["guardrails"]["enforcement_default"] is True
    assert strict["lifecycle"]["enforcement_enabled"] is True
    assert shadow["guardrails"]["enforcement_default"] is False
    assert untouched == dict(config)
    with pytest.raises(ConfigValidationError):
        apply_profile_overlay(config, "missing")
