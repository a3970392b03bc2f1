"""Unit tests for typed runtime settings built from config mappings."""

from __future__ import annotations

from pathlib import Path

import pytest

from recurgent.config import ConfigValidationError, RuntimeSettings
from recurgent.constants import DEFAULT_DELEGATION_MAX_DEPTH, PROMOTION_POLICY_VERSION


def test_defaults_produce_shadow_runtime() -> None:
    settings = RuntimeSettings.from_config()

    assert settings.model == "default"
    assert settings.delegation_max_depth == DEFAULT_DELEGATION_MAX_DEPTH
    assert settings.call_timeout_seconds is None
    assert settings.guardrail_enforcement_default is False
    assert settings.lifecycle.enforcement_enabled is False
    assert settings.lifecycle.mode == "shadow"
    assert settings.lifecycle.version == PROMOTION_POLICY_VERSION
    assert settings.repair_budgets.guardrail_recovery == 1
    assert settings.dependency_policy.source_mode == "public_only"
    assert settings.governance.maintainers == ()
    assert settings.paths.state_db == Path(".recurgent/state.sqlite")
    assert settings.call_log_enabled is True


def test_partial_sections_override_defaults() -> None:
    settings = RuntimeSettings.from_config(
        {
            "runtime": {"call_timeout_seconds": 12},
            "guardrails": {"recovery_budget": 3, "outcome_repair_budget": 0},
            "lifecycle": {"enforcement_enabled": True, "min_calls": 4},
            "dependencies": {"blocked_packages": ["leftpad"]},
            "governance": {"maintainers": ["ops"]},
            "observability": {"call_log_enabled": False},
        }
    )

    assert settings.call_timeout_seconds == 12.0
    assert settings.repair_budgets.guardrail_recovery == 3
    assert settings.repair_budgets.execution_repair == 1
    assert settings.repair_budgets.outcome_repair == 0
    assert settings.lifecycle.mode == "enforced"
    assert settings.lifecycle.min_calls == 4
    assert settings.lifecycle.min_sessions == 2
    assert settings.dependency_policy.blocked_packages == frozenset({"leftpad"})
    assert settings.governance.maintainers == ("ops",)
    assert settings.call_log_enabled is False
    assert settings.observability["call_log_enabled"] is False


def test_logging_settings_follow_observability_section() -> None:
    default = RuntimeSettings.from_config().log_config
    tuned = RuntimeSettings.from_config(
        {"observability": {"log_dir": "/var/log/recurgent", "log_level": "WARNING"}}
    ).log_config

    assert default.log_dir == Path(".recurgent/logs/")
    assert default.level == "INFO"
    assert default.redact_secrets is True
    assert tuned.log_dir == Path("/var/log/recurgent")
    assert tuned.level == "WARNING"


@pytest.mark.parametrize(
    ("overlay", "issue_path"),
    [
        ({"runtime": {"delegation_max_depth": "three"}}, "runtime.delegation_max_depth"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"worker": {"timeout_seconds": "soon"}}, "worker.timeout_seconds"),
        ({"runtime": {"unknown_knob": 1}}, "runtime.unknown_knob"),
    ],
)
def test_invalid_values_raise_config_validation_error(
    overlay: dict[str, object], issue_path: str
) -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        RuntimeSettings.from_config(overlay)

    assert issue_path in [issue.path for issue in excinfo.value.issues]
