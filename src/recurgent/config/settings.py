"""
recurgent — typed runtime settings built from a validated config mapping.

Purpose
- Turn the effective config dict produced by ``load_config`` into the typed
  policy objects each component consumes.

Functional requirements
- ``RuntimeSettings.from_config`` accepts a full or partial mapping; missing
  sections fall back to ``DEFAULT_CONFIG`` values and the merged result is
  validated against the schema (``ConfigValidationError`` on bad values).
- Paths stay as given; ``load_config`` has already normalized them.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from recurgent.artifacts.lifecycle import LifecyclePolicy
from recurgent.config.schema import assert_valid_config, default_config, merge_config
from recurgent.environment.manifest import DependencyPolicy
from recurgent.guardrails.repair import RepairBudgets
from recurgent.observability.logging import LoggingConfig


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    timeout_seconds: float
    terminate_grace_seconds: float


@dataclass(frozen=True, slots=True)
class GovernanceSettings:
    authority_enforcement_enabled: bool = True
    maintainers: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PathSettings:
    state_db: Path
    env_root: Path
    call_log: Path


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Typed view of every config section the runtime reads."""

    model: str
    delegation_max_depth: int
    call_timeout_seconds: float | None
    max_generation_attempts: int
    provider_timeout_seconds: float
    guardrail_enforcement_default: bool
    repair_budgets: RepairBudgets
    lifecycle: LifecyclePolicy
    dependency_policy: DependencyPolicy
    resolve_timeout_seconds: float
    install_timeout_seconds: float
    worker: WorkerSettings
    governance: GovernanceSettings
    paths: PathSettings
    log_config: LoggingConfig
    call_log_enabled: bool
    observability: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Mapping[str, object] | None = None) -> RuntimeSettings:
        merged = assert_valid_config(merge_config(default_config(), config or {}))
        runtime = _section(merged, "runtime")
        generation = _section(merged, "generation")
        guardrails = _section(merged, "guardrails")
        dependencies = _section(merged, "dependencies")
        worker = _section(merged, "worker")
        governance = _section(merged, "governance")
        paths = _section(merged, "paths")
        observability = _section(merged, "observability")

        call_timeout = runtime.get("call_timeout_seconds")
        return cls(
            model=str(runtime["model"]),
            delegation_max_depth=int(runtime["delegation_max_depth"]),
            call_timeout_seconds=None if call_timeout is None else float(call_timeout),
            max_generation_attempts=int(generation["max_attempts"]),
            provider_timeout_seconds=float(generation["provider_timeout_seconds"]),
            guardrail_enforcement_default=bool(guardrails["enforcement_default"]),
            repair_budgets=RepairBudgets.from_section(guardrails),
            lifecycle=LifecyclePolicy.from_section(_section(merged, "lifecycle")),
            dependency_policy=DependencyPolicy.from_section(dependencies),
            resolve_timeout_seconds=float(dependencies["resolve_timeout_seconds"]),
            install_timeout_seconds=float(dependencies["install_timeout_seconds"]),
            worker=WorkerSettings(
                timeout_seconds=float(worker["timeout_seconds"]),
                terminate_grace_seconds=float(worker["terminate_grace_seconds"]),
            ),
            governance=GovernanceSettings(
                authority_enforcement_enabled=bool(governance["authority_enforcement_enabled"]),
                maintainers=tuple(str(item) for item in governance.get("maintainers") or ()),
            ),
            paths=PathSettings(
                state_db=Path(str(paths["state_db"])),
                env_root=Path(str(paths["env_root"])),
                call_log=Path(str(paths["call_log"])),
            ),
            log_config=LoggingConfig.from_section(observability),
            call_log_enabled=bool(observability.get("call_log_enabled", True)),
            observability=dict(observability),
        )


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    if not isinstance(value, Mapping):
        raise ValueError(f"config section {name!r} must be a mapping")
    return value


__all__ = [
    "GovernanceSettings",
    "PathSettings",
    "RuntimeSettings",
    "WorkerSettings",
]
