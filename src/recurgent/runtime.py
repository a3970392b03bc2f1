"""Wire a complete runtime (store, registry, lifecycle, sandbox, controller) from settings."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from recurgent.artifacts.lifecycle import LifecycleEngine
from recurgent.artifacts.selector import ArtifactSelector
from recurgent.artifacts.store import ArtifactStore
from recurgent.config.settings import RuntimeSettings
from recurgent.controller import CallController
from recurgent.environment.manager import CommandRunner, EnvironmentManager
from recurgent.execution.sandbox import ExecutionSandbox
from recurgent.execution.worker import WorkerSupervisor
from recurgent.governance.proposals import ProposalService
from recurgent.guardrails.contract import ContractValidator
from recurgent.guardrails.policy import GuardrailPolicyEngine
from recurgent.guardrails.profile_registry import RoleProfileRegistry
from recurgent.observability.call_log import CallRecordSink, JsonLinesCallLog
from recurgent.observability.logging import RuntimeLogging
from recurgent.persistence.state_db import StateDB
from recurgent.synthesis.generation import GenerationEngine
from recurgent.synthesis.provider import CodeProvider


@dataclass(frozen=True, slots=True)
class Runtime:
    settings: RuntimeSettings
    db: StateDB
    store: ArtifactStore
    registry: RoleProfileRegistry
    lifecycle: LifecycleEngine
    workers: WorkerSupervisor
    controller: CallController
    proposals: ProposalService
    logging: RuntimeLogging | None = None

    def close(self) -> None:
        self.workers.shutdown()
        if self.logging is not None:
            self.logging.close()


def build_runtime(
    provider: CodeProvider,
    *,
    config: Mapping[str, object] | None = None,
    settings: RuntimeSettings | None = None,
    command_runner: CommandRunner | None = None,
    call_sink: CallRecordSink | None = None,
    logger: Any | None = None,
    configure_logging: bool = True,
) -> Runtime:
    """Build every component from ``settings`` (or ``config``) around ``provider``.

    ``config`` is merged over the defaults and validated, so a bad value raises
    ``ConfigValidationError`` before anything is opened. With ``configure_logging``
    the runtime writes its structlog events under ``observability.log_dir`` until
    ``close``.
    """

    resolved = settings if settings is not None else RuntimeSettings.from_config(config)

    db = StateDB(resolved.paths.state_db)
    db.migrate()
    store = ArtifactStore(db, logger=logger)
    registry = RoleProfileRegistry(db, logger=logger)
    lifecycle = LifecycleEngine(store, resolved.lifecycle, logger=logger)
    environments = EnvironmentManager(
        resolved.paths.env_root,
        policy=resolved.dependency_policy,
        command_runner=command_runner,
        resolve_timeout_seconds=resolved.resolve_timeout_seconds,
        install_timeout_seconds=resolved.install_timeout_seconds,
        logger=logger,
    )
    workers = WorkerSupervisor(
        default_timeout_seconds=resolved.worker.timeout_seconds,
        terminate_grace_seconds=resolved.worker.terminate_grace_seconds,
        logger=logger,
    )
    if call_sink is None and resolved.call_log_enabled:
        call_sink = JsonLinesCallLog(resolved.paths.call_log, logger=logger)

    controller = CallController(
        generator=GenerationEngine(
            provider,
            model=resolved.model,
            max_attempts=resolved.max_generation_attempts,
            provider_timeout_seconds=resolved.provider_timeout_seconds,
            logger=logger,
        ),
        store=store,
        selector=ArtifactSelector(
            store,
            enforcement_enabled=resolved.lifecycle.enforcement_enabled,
            policy_version=resolved.lifecycle.version,
            logger=logger,
        ),
        lifecycle=lifecycle,
        sandbox=ExecutionSandbox(
            environment_manager=environments, worker_supervisor=workers, logger=logger
        ),
        guardrails=GuardrailPolicyEngine(
            registry,
            enforcement_default=resolved.guardrail_enforcement_default,
            logger=logger,
        ),
        contracts=ContractValidator(logger=logger),
        repair_budgets=resolved.repair_budgets,
        delegation_max_depth=resolved.delegation_max_depth,
        call_timeout_seconds=resolved.call_timeout_seconds,
        call_sink=call_sink,
        logger=logger,
    )
    proposals = ProposalService(
        db,
        registry=registry,
        store=store,
        lifecycle=lifecycle,
        authority_enforcement_enabled=resolved.governance.authority_enforcement_enabled,
        maintainers=resolved.governance.maintainers,
        logger=logger,
    )
    runtime_logging = RuntimeLogging(resolved.log_config) if configure_logging else None
    return Runtime(
        settings=resolved,
        db=db,
        store=store,
        registry=registry,
        lifecycle=lifecycle,
        workers=workers,
        controller=controller,
        proposals=proposals,
        logging=runtime_logging,
    )


__all__ = ["Runtime", "build_runtime"]
