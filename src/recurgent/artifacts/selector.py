"""Artifact version selection for enforced and shadow lifecycle modes."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Final

import structlog

from recurgent.artifacts.store import ArtifactStore, ArtifactVersionRecord
from recurgent.constants import PROMOTION_POLICY_VERSION

_STATE_RANK: Final[dict[str, int]] = {"durable": 3, "probation": 2, "candidate": 1}


def _recency(record: ArtifactVersionRecord) -> tuple[str, str]:
    return (record.last_success_at or "", record.created_at)


def choose_enforced(
    versions: Sequence[ArtifactVersionRecord], incumbent: str | None
) -> ArtifactVersionRecord | None:
    """Incumbent when durable, else the best lifecycle stage; never ``degraded``."""

    eligible = [record for record in versions if record.lifecycle_state in _STATE_RANK]
    if not eligible:
        return None
    if incumbent is not None:
        for record in eligible:
            if record.checksum == incumbent and record.lifecycle_state == "durable":
                return record
    return max(eligible, key=lambda record: (_STATE_RANK[record.lifecycle_state], _recency(record)))


def choose_shadow(versions: Sequence[ArtifactVersionRecord]) -> ArtifactVersionRecord | None:
    """Most recently successful healthy version, ignoring lifecycle state."""

    if not versions:
        return None
    healthy = [record for record in versions if not record.scorecard.unhealthy]
    if not healthy:
        return None
    return max(healthy, key=_recency)


class ArtifactSelector:
    def __init__(
        self,
        store: ArtifactStore,
        *,
        enforcement_enabled: bool = False,
        policy_version: str = PROMOTION_POLICY_VERSION,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._enforcement_enabled = enforcement_enabled
        self._policy_version = policy_version
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def enforcement_enabled(self) -> bool:
        return self._enforcement_enabled

    def select(self, role: str, method: str) -> ArtifactVersionRecord | None:
        versions = self._store.versions(role, method)
        if not versions:
            return None
        incumbent = self._store.incumbent(role, method)
        enforced_choice = choose_enforced(versions, incumbent)

        if self._enforcement_enabled:
            selected = enforced_choice
        else:
            selected = choose_shadow(versions)
            if selected is not None:
                self._store.record_evaluation(
                    role,
                    method,
                    selected.checksum,
                    decision="shadow_select",
                    policy_version=self._policy_version,
                    mode="shadow",
                    rationale={
                        "selected_state": selected.lifecycle_state,
                        "enforced_choice": (
                            None if enforced_choice is None else enforced_choice.checksum
                        ),
                        "agrees_with_enforced": enforced_choice is not None
                        and enforced_choice.checksum == selected.checksum,
                    },
                    incumbent_checksum=incumbent,
                )

        if selected is not None:
            self._logger.info(
                "artifact_selected",
                role=role,
                method=method,
                checksum=selected.checksum,
                lifecycle_state=selected.lifecycle_state,
                enforced=self._enforcement_enabled,
            )
        return selected


__all__ = [
    "ArtifactSelector",
    "choose_enforced",
    "choose_shadow",
]
