"""Unit tests for the SQLite artifact store."""

from __future__ import annotations

import threading

import pytest

from recurgent.artifacts.scorecard import CallObservation
from recurgent.artifacts.store import (
    ArtifactNotFoundError,
    ArtifactStore,
    ArtifactVersionRecord,
    LifecycleTransitionError,
    RetentionPolicy,
)
from recurgent.environment.manifest import normalize_manifest
from recurgent.synthesis.generation import GeneratedArtifact

POLICY = {"policy_version": "solver_promotion_v1", "mode": "enforced"}


def _save(
    store: ArtifactStore, code: str = "result = 1", deps: list[dict[str, str]] | None = None
) -> ArtifactVersionRecord:
    artifact = GeneratedArtifact.build(code, normalize_manifest(deps or []))
    return store.save_artifact("calc", "add", artifact, **POLICY)


def test_save_is_idempotent_per_checksum(store: ArtifactStore) -> None:
    first = _save(store)
    second = _save(store)

    assert first == second
    assert first.lifecycle_state == "candidate"
    assert first.scorecard.calls == 0
    assert len(store.versions("calc", "add")) == 1
    ledger = store.ledger("calc", "add")
    assert [(row.from_state, row.to_state, row.decision) for row in ledger] == [
        (None, "candidate", "created")
    ]


def test_saved_version_round_trips(store: ArtifactStore) -> None:
    saved = _save(store, "return args[0]", [{"name": "rich", "version": "13.7.0"}])

    loaded = store.get("calc", "add", saved.checksum)

    assert loaded is not None
    assert loaded.code == "return args[0]"
    assert loaded.dependencies.requirements() == ["rich==13.7.0"]
    assert store.role_manifest("calc").names == ("rich",)
    assert store.role_manifest("unknown").names == ()


def test_concurrent_record_call_loses_no_increments(store: ArtifactStore) -> None:
    saved = _save(store)
    per_thread = 10
    threads_count = 6

    def worker(index: int) -> None:
        for call in range(per_thread):
            store.record_call(
                "calc",
                "add",
                saved.checksum,
                CallObservation(status="ok" if call % 2 else "error", trace_id=f"t{index}"),
            )

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(threads_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    record = store.get("calc", "add", saved.checksum)
    assert record is not None
    assert record.scorecard.calls == per_thread * threads_count
    assert record.scorecard.successes == per_thread * threads_count // 2
    assert record.scorecard.session_count == threads_count
    assert record.last_success_at is not None


def test_record_call_for_unknown_version(store: ArtifactStore) -> None:
    with pytest.raises(ArtifactNotFoundError):
        store.record_call("calc", "add", "sha256:none", CallObservation(status="ok", trace_id="t"))


def _move(store: ArtifactStore, checksum: str, to_state: str, **extra: object) -> None:
    store.transition(
        "calc",
        "add",
        checksum,
        to_state=to_state,
        decision=f"to_{to_state}",
        rationale={},
        **POLICY,
        **extra,  # type: ignore[arg-type]
    )


def test_transitions_are_forward_only(store: ArtifactStore) -> None:
    saved = _save(store)

    with pytest.raises(LifecycleTransitionError, match="not allowed"):
        _move(store, saved.checksum, "durable")

    _move(store, saved.checksum, "probation")
    _move(store, saved.checksum, "degraded")
    with pytest.raises(LifecycleTransitionError, match="requires authorized_by"):
        _move(store, saved.checksum, "probation")
    with pytest.raises(LifecycleTransitionError, match="unknown lifecycle state"):
        _move(store, saved.checksum, "retired")
    _move(store, saved.checksum, "probation", authorized_by="ops")

    ledger = store.ledger("calc", "add", saved.checksum)
    assert [row.to_state for row in ledger] == ["candidate", "probation", "degraded", "probation"]
    assert ledger[-1].authorized_by == "ops"


def test_evaluations_are_pruned_to_retention_limit(store: ArtifactStore) -> None:
    saved = _save(store)
    store.set_retention_policy("calc", RetentionPolicy(evaluation_history_limit=3))

    for index in range(5):
        store.record_evaluation(
            "calc", "add", saved.checksum, decision=f"d{index}", rationale={}, **POLICY
        )

    assert [row.decision for row in store.evaluations("calc", "add")] == ["d2", "d3", "d4"]
    assert [row.decision for row in store.evaluations("calc", "add", limit=1)] == ["d4"]
    assert store.retention_policy("calc").evaluation_history_limit == 3
    assert store.retention_policy("other").evaluation_history_limit == 200


def test_incumbent_upsert(store: ArtifactStore) -> None:
    assert store.incumbent("calc", "add") is None

    store.set_incumbent("calc", "add", "sha256:a")
    store.set_incumbent("calc", "add", "sha256:b")

    assert store.incumbent("calc", "add") == "sha256:b"


def test_retention_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetentionPolicy(evaluation_history_limit=0)
    with pytest.raises(ValueError):
        RetentionPolicy.from_dict({"evaluation_history_limit": "10"})
    assert RetentionPolicy.from_dict({}).evaluation_history_limit == 200
