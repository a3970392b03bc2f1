"""Unit tests for the SQLite-backed role profile registry."""

from __future__ import annotations

import pytest

from recurgent.guardrails.profile_registry import RoleProfileRegistry
from recurgent.guardrails.role_profile import RoleProfileError


def _profile(version: int, *, key: str = "history") -> dict[str, object]:
    return {
        "role": "assistant",
        "version": version,
        "constraints": {
            "memory_slot": {
                "kind": "shared_state_slot",
                "mode": "prescriptive",
                "canonical_key": key,
            }
        },
    }


def test_unbound_role_falls_back_to_latest_published_version(
    registry: RoleProfileRegistry,
) -> None:
    assert registry.active("assistant") is None
    registry.publish(_profile(1))
    registry.publish(_profile(2, key="log"))

    assert registry.versions("assistant") == [1, 2]
    assert registry.active_version("assistant") == 2
    active = registry.active("assistant")
    assert active is not None
    assert active.constraints["memory_slot"].canonical_key == "log"


def test_publish_is_idempotent_for_identical_content(registry: RoleProfileRegistry) -> None:
    registry.publish(_profile(1))
    registry.publish(_profile(1))

    events = [entry.event for entry in registry.history("assistant")]
    assert events == ["published"]


def test_publish_rejects_conflicting_content_for_same_version(
    registry: RoleProfileRegistry,
) -> None:
    registry.publish(_profile(1))

    with pytest.raises(RoleProfileError, match="different content"):
        registry.publish(_profile(1, key="log"))


def test_activate_binds_version_and_records_history(registry: RoleProfileRegistry) -> None:
    registry.publish(_profile(1))
    registry.publish(_profile(2, key="log"), activate=True, actor="ops", source="cli")
    registry.activate("assistant", 1, actor="ops")

    assert registry.active_version("assistant") == 1
    history = registry.history("assistant")
    assert [entry.event for entry in history] == [
        "published",
        "published",
        "activated",
        "activated",
    ]
    assert history[2].source == "cli"
    assert history[2].active_version == 2
    assert history[3].actor == "ops"


def test_activate_unknown_version_fails(registry: RoleProfileRegistry) -> None:
    registry.publish(_profile(1))

    with pytest.raises(RoleProfileError, match="not published"):
        registry.activate("assistant", 7)


def test_rollback_requires_an_older_version(registry: RoleProfileRegistry) -> None:
    registry.publish(_profile(1))
    registry.publish(_profile(2, key="log"), activate=True)

    with pytest.raises(RoleProfileError, match="must be older"):
        registry.rollback("assistant", 2)

    rolled = registry.rollback("assistant", 1, proposal_id="p-1")

    assert rolled.version == 1
    assert registry.active_version("assistant") == 1
    last = registry.history("assistant")[-1]
    assert last.event == "rolled_back"
    assert last.proposal_id == "p-1"


def test_history_limit_returns_most_recent_entries_in_order(
    registry: RoleProfileRegistry,
) -> None:
    for version in range(1, 5):
        registry.publish(_profile(version, key=f"k{version}"))

    recent = registry.history("assistant", limit=2)

    assert [entry.active_version for entry in recent] == [3, 4]


def test_observations_upsert_per_method_and_keep_first_seen_order(
    registry: RoleProfileRegistry,
) -> None:
    registry.record_observation(
        "assistant", "memory_slot", kind="shared_state_slot", method="push", value="history"
    )
    registry.record_observation(
        "assistant", "memory_slot", kind="shared_state_slot", method="peek", value="history"
    )
    registry.record_observation(
        "assistant", "memory_slot", kind="shared_state_slot", method="push", value="log"
    )

    observations = registry.observations("assistant", "memory_slot")

    assert [(item.method, item.value) for item in observations] == [
        ("push", "log"),
        ("peek", "history"),
    ]
    assert registry.observations("assistant", "other") == []
