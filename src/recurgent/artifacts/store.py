"""
recurgent — artifact store

Purpose
- Persist generated artifact versions, their scorecards, the lifecycle ledger,
  promotion evaluations, incumbents and retention policies.

What should be included in this file
- Typed records for artifact versions, ledger rows and evaluations.
- Per-version serialized scorecard updates.
- Forward-only lifecycle transitions with an append-only ledger row each.

Functional requirements
- Versions are keyed by ``(role, method, checksum)`` and never deleted.
- ``record_call`` and ``transition`` hold a process-local lock for the version
  and a ``BEGIN IMMEDIATE`` transaction so concurrent updates never lose
  increments or apply one lifecycle move twice.
- Lifecycle evaluations are pruned to the role's retention limit.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from recurgent.constants import DEFAULT_EVALUATION_HISTORY_LIMIT, LIFECYCLE_STATES
from recurgent.environment.manifest import DependencyManifest, normalize_manifest
from recurgent.artifacts.scorecard import CallObservation, Scorecard
from recurgent.persistence.state_db import RowValue, StateDB, utc_now_iso
from recurgent.synthesis.generation import GeneratedArtifact
from recurgent.utils.hashing import canonical_json

CREATED_DECISION: Final[str] = "created"

ALLOWED_TRANSITIONS: Final[frozenset[tuple[str, str]]] = frozenset(
    {
        ("candidate", "probation"),
        ("probation", "durable"),
        ("probation", "degraded"),
        ("durable", "degraded"),
        ("degraded", "probation"),
    }
)

# Transitions that are never automatic and need an authorizing actor.
AUTHORIZED_TRANSITIONS: Final[frozenset[tuple[str, str]]] = frozenset({("degraded", "probation")})


class LifecycleTransitionError(ValueError):
    """Raised for transitions outside the forward-only lifecycle."""


class LifecycleStateConflictError(LifecycleTransitionError):
    """The version left ``expected_state`` before the transition could be applied."""


class ArtifactNotFoundError(LookupError):
    """Raised when a referenced artifact version does not exist."""


@dataclass(frozen=True, slots=True)
class ArtifactVersionRecord:
    role: str
    method: str
    checksum: str
    code: str
    dependencies: DependencyManifest
    scorecard: Scorecard
    lifecycle_state: str
    created_at: str
    updated_at: str
    last_success_at: str | None = None
    generation_attempts: int = 1


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    id: int
    role: str
    method: str
    checksum: str
    from_state: str | None
    to_state: str
    decision: str
    rationale: Mapping[str, Any]
    policy_version: str
    mode: str
    authorized_by: str | None
    at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_state": self.from_state,
            "to_state": self.to_state,
            "decision": self.decision,
            "rationale": dict(self.rationale),
            "policy_version": self.policy_version,
            "mode": self.mode,
            "authorized_by": self.authorized_by,
            "at": self.at,
        }


@dataclass(frozen=True, slots=True)
class EvaluationRecord:
    id: int
    role: str
    method: str
    checksum: str
    decision: str
    policy_version: str
    mode: str
    rationale: Mapping[str, Any]
    incumbent_checksum: str | None
    at: str


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    evaluation_history_limit: int = DEFAULT_EVALUATION_HISTORY_LIMIT

    def __post_init__(self) -> None:
        if self.evaluation_history_limit < 1:
            raise ValueError("evaluation_history_limit must be >= 1")

    def to_dict(self) -> dict[str, int]:
        return {"evaluation_history_limit": self.evaluation_history_limit}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RetentionPolicy:
        limit = payload.get("evaluation_history_limit", DEFAULT_EVALUATION_HISTORY_LIMIT)
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError("evaluation_history_limit must be an integer")
        return cls(evaluation_history_limit=limit)


@dataclass(slots=True)
class _VersionLocks:
    guard: threading.Lock = field(default_factory=threading.Lock)
    locks: dict[tuple[str, str, str], threading.Lock] = field(default_factory=dict)

    def get(self, key: tuple[str, str, str]) -> threading.Lock:
        with self.guard:
            lock = self.locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self.locks[key] = lock
            return lock


class ArtifactStore:
    """SQLite-backed repository for artifact versions and their lifecycle."""

    def __init__(self, db: StateDB, *, logger: Any | None = None) -> None:
        self._db = db
        self._db.migrate()
        self._locks = _VersionLocks()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def db(self) -> StateDB:
        return self._db

    def save_artifact(
        self,
        role: str,
        method: str,
        artifact: GeneratedArtifact,
        *,
        generation_attempts: int = 1,
        policy_version: str,
        mode: str,
    ) -> ArtifactVersionRecord:
        """Persist ``artifact`` as a ``candidate`` version; idempotent per checksum."""

        now = utc_now_iso()
        with self._db.transaction() as conn:
            existing = self._get(role, method, artifact.checksum, conn=conn)
            if existing is not None:
                return existing
            self._db.execute(
                """
                INSERT INTO artifacts (
                    role, method, checksum, code, dependencies_json, lifecycle_state,
                    scorecard_json, generation_attempts, created_at, updated_at, last_success_at
                ) VALUES (?, ?, ?, ?, ?, 'candidate', ?, ?, ?, ?, NULL)
                """,
                (
                    role,
                    method,
                    artifact.checksum,
                    artifact.code,
                    canonical_json(artifact.dependencies.to_list()),
                    canonical_json(Scorecard().to_dict()),
                    generation_attempts,
                    now,
                    now,
                ),
                conn=conn,
            )
            self._append_ledger(
                conn,
                role=role,
                method=method,
                checksum=artifact.checksum,
                from_state=None,
                to_state="candidate",
                decision=CREATED_DECISION,
                rationale={"generation_attempts": generation_attempts},
                policy_version=policy_version,
                mode=mode,
                authorized_by=None,
                at=now,
            )
            record = self._get(role, method, artifact.checksum, conn=conn)
        assert record is not None
        self._logger.info(
            "artifact_saved",
            role=role,
            method=method,
            checksum=artifact.checksum,
            dependencies=artifact.dependencies.requirements(),
        )
        return record

    def get(self, role: str, method: str, checksum: str) -> ArtifactVersionRecord | None:
        return self._get(role, method, checksum)

    def versions(self, role: str, method: str) -> list[ArtifactVersionRecord]:
        rows = self._db.query_all(
            "SELECT * FROM artifacts WHERE role = ? AND method = ?"
            " ORDER BY created_at ASC, rowid ASC",
            (role, method),
        )
        return [_record_from_row(row) for row in rows]

    def role_manifest(self, role: str) -> DependencyManifest:
        """Manifest of the role's most recently created artifact."""

        row = self._db.query_one(
            """
            SELECT dependencies_json FROM artifacts
            WHERE role = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (role,),
        )
        if row is None:
            return DependencyManifest()
        return normalize_manifest(json.loads(_text(row, "dependencies_json")))

    def record_call(
        self,
        role: str,
        method: str,
        checksum: str,
        observation: CallObservation,
    ) -> ArtifactVersionRecord:
        """Fold one terminal call into the version's scorecard."""

        with self._locks.get((role, method, checksum)), self._db.transaction() as conn:
            current = self._get(role, method, checksum, conn=conn)
            if current is None:
                raise ArtifactNotFoundError(f"artifact not found: {role}.{method} {checksum}")
            updated = current.scorecard.record(observation)
            self._db.execute(
                """
                UPDATE artifacts
                SET scorecard_json = ?,
                    updated_at = ?,
                    last_success_at = CASE WHEN ? THEN ? ELSE last_success_at END
                WHERE role = ? AND method = ? AND checksum = ?
                """,
                (
                    canonical_json(updated.to_dict()),
                    observation.at,
                    1 if observation.ok else 0,
                    observation.at,
                    role,
                    method,
                    checksum,
                ),
                conn=conn,
            )
            record = self._get(role, method, checksum, conn=conn)
        assert record is not None
        return record

    def transition(
        self,
        role: str,
        method: str,
        checksum: str,
        *,
        to_state: str,
        decision: str,
        rationale: Mapping[str, Any],
        policy_version: str,
        mode: str,
        authorized_by: str | None = None,
        expected_state: str | None = None,
    ) -> LedgerEntry:
        """Move a version to ``to_state`` and append the ledger row atomically.

        With ``expected_state`` the move is a compare-and-set: a version found in
        any other state raises ``LifecycleStateConflictError`` and nothing changes.
        """

        if to_state not in LIFECYCLE_STATES:
            raise LifecycleTransitionError(f"unknown lifecycle state {to_state!r}")
        with self._locks.get((role, method, checksum)), self._db.transaction() as conn:
            current = self._get(role, method, checksum, conn=conn)
            if current is None:
                raise ArtifactNotFoundError(f"artifact not found: {role}.{method} {checksum}")
            if expected_state is not None and current.lifecycle_state != expected_state:
                raise LifecycleStateConflictError(
                    f"expected {expected_state}, found {current.lifecycle_state}"
                )
            edge = (current.lifecycle_state, to_state)
            if edge not in ALLOWED_TRANSITIONS:
                raise LifecycleTransitionError(
                    f"transition {current.lifecycle_state} -> {to_state} is not allowed"
                )
            if edge in AUTHORIZED_TRANSITIONS and not (authorized_by and authorized_by.strip()):
                raise LifecycleTransitionError(
                    f"transition {current.lifecycle_state} -> {to_state} requires authorized_by"
                )
            now = utc_now_iso()
            self._db.execute(
                """
                UPDATE artifacts SET lifecycle_state = ?, updated_at = ?
                WHERE role = ? AND method = ? AND checksum = ?
                """,
                (to_state, now, role, method, checksum),
                conn=conn,
            )
            entry = self._append_ledger(
                conn,
                role=role,
                method=method,
                checksum=checksum,
                from_state=current.lifecycle_state,
                to_state=to_state,
                decision=decision,
                rationale=rationale,
                policy_version=policy_version,
                mode=mode,
                authorized_by=authorized_by,
                at=now,
            )
        self._logger.info(
            "lifecycle_transition",
            role=role,
            method=method,
            checksum=checksum,
            from_state=entry.from_state,
            to_state=entry.to_state,
            decision=decision,
            mode=mode,
        )
        return entry

    def ledger(self, role: str, method: str, checksum: str | None = None) -> list[LedgerEntry]:
        sql = "SELECT * FROM lifecycle_ledger WHERE role = ? AND method = ?"
        params: list[str] = [role, method]
        if checksum is not None:
            sql += " AND checksum = ?"
            params.append(checksum)
        sql += " ORDER BY id ASC"
        return [_ledger_from_row(row) for row in self._db.query_all(sql, tuple(params))]

    def record_evaluation(
        self,
        role: str,
        method: str,
        checksum: str,
        *,
        decision: str,
        policy_version: str,
        mode: str,
        rationale: Mapping[str, Any],
        incumbent_checksum: str | None = None,
    ) -> EvaluationRecord:
        limit = self.retention_policy(role).evaluation_history_limit
        now = utc_now_iso()
        with self._db.transaction() as conn:
            row_id = self._db.insert(
                """
                INSERT INTO lifecycle_evaluations (
                    role, method, checksum, decision, policy_version, mode,
                    rationale_json, incumbent_checksum, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    role,
                    method,
                    checksum,
                    decision,
                    policy_version,
                    mode,
                    canonical_json(dict(rationale)),
                    incumbent_checksum,
                    now,
                ),
                conn=conn,
            )
            self._db.execute(
                """
                DELETE FROM lifecycle_evaluations
                WHERE role = ? AND method = ? AND id NOT IN (
                    SELECT id FROM lifecycle_evaluations
                    WHERE role = ? AND method = ?
                    ORDER BY id DESC
                    LIMIT ?
                )
                """,
                (role, method, role, method, limit),
                conn=conn,
            )
        return EvaluationRecord(
            id=row_id,
            role=role,
            method=method,
            checksum=checksum,
            decision=decision,
            policy_version=policy_version,
            mode=mode,
            rationale=dict(rationale),
            incumbent_checksum=incumbent_checksum,
            at=now,
        )

    def evaluations(
        self, role: str, method: str, *, limit: int | None = None
    ) -> list[EvaluationRecord]:
        sql = "SELECT * FROM lifecycle_evaluations WHERE role = ? AND method = ? ORDER BY id DESC"
        params: tuple[str | int, ...] = (role, method)
        if limit is not None:
            sql += " LIMIT ?"
            params = (*params, limit)
        rows = self._db.query_all(sql, params)
        return [_evaluation_from_row(row) for row in reversed(rows)]

    def set_incumbent(self, role: str, method: str, checksum: str) -> None:
        self._db.execute(
            """
            INSERT INTO incumbents (role, method, checksum, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(role, method) DO UPDATE SET
                checksum = excluded.checksum,
                updated_at = excluded.updated_at
            """,
            (role, method, checksum, utc_now_iso()),
        )

    def incumbent(self, role: str, method: str) -> str | None:
        row = self._db.query_one(
            "SELECT checksum FROM incumbents WHERE role = ? AND method = ?", (role, method)
        )
        return None if row is None else _text(row, "checksum")

    def retention_policy(self, role: str) -> RetentionPolicy:
        row = self._db.query_one(
            "SELECT policy_json FROM retention_policies WHERE role = ?", (role,)
        )
        if row is None:
            return RetentionPolicy()
        return RetentionPolicy.from_dict(json.loads(_text(row, "policy_json")))

    def set_retention_policy(
        self, role: str, policy: RetentionPolicy, *, conn: sqlite3.Connection | None = None
    ) -> None:
        self._db.execute(
            """
            INSERT INTO retention_policies (role, policy_json, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(role) DO UPDATE SET
                policy_json = excluded.policy_json,
                updated_at = excluded.updated_at
            """,
            (role, canonical_json(policy.to_dict()), utc_now_iso()),
            conn=conn,
        )

    def _get(
        self,
        role: str,
        method: str,
        checksum: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> ArtifactVersionRecord | None:
        row = self._db.query_one(
            "SELECT * FROM artifacts WHERE role = ? AND method = ? AND checksum = ?",
            (role, method, checksum),
            conn=conn,
        )
        return None if row is None else _record_from_row(row)

    def _append_ledger(
        self,
        conn: sqlite3.Connection,
        *,
        role: str,
        method: str,
        checksum: str,
        from_state: str | None,
        to_state: str,
        decision: str,
        rationale: Mapping[str, Any],
        policy_version: str,
        mode: str,
        authorized_by: str | None,
        at: str,
    ) -> LedgerEntry:
        row_id = self._db.insert(
            """
            INSERT INTO lifecycle_ledger (
                role, method, checksum, from_state, to_state, decision, rationale_json,
                policy_version, mode, authorized_by, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                role,
                method,
                checksum,
                from_state,
                to_state,
                decision,
                canonical_json(dict(rationale)),
                policy_version,
                mode,
                authorized_by,
                at,
            ),
            conn=conn,
        )
        return LedgerEntry(
            id=row_id,
            role=role,
            method=method,
            checksum=checksum,
            from_state=from_state,
            to_state=to_state,
            decision=decision,
            rationale=dict(rationale),
            policy_version=policy_version,
            mode=mode,
            authorized_by=authorized_by,
            at=at,
        )


def _text(row: Mapping[str, RowValue], key: str) -> str:
    value = row[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be TEXT")
    return value


def _optional_text(row: Mapping[str, RowValue], key: str) -> str | None:
    value = row[key]
    return value if isinstance(value, str) else None


def _record_from_row(row: Mapping[str, RowValue]) -> ArtifactVersionRecord:
    attempts = row["generation_attempts"]
    return ArtifactVersionRecord(
        role=_text(row, "role"),
        method=_text(row, "method"),
        checksum=_text(row, "checksum"),
        code=_text(row, "code"),
        dependencies=normalize_manifest(json.loads(_text(row, "dependencies_json"))),
        scorecard=Scorecard.from_dict(json.loads(_text(row, "scorecard_json"))),
        lifecycle_state=_text(row, "lifecycle_state"),
        created_at=_text(row, "created_at"),
        updated_at=_text(row, "updated_at"),
        last_success_at=_optional_text(row, "last_success_at"),
        generation_attempts=attempts if isinstance(attempts, int) else 0,
    )


def _ledger_from_row(row: Mapping[str, RowValue]) -> LedgerEntry:
    row_id = row["id"]
    return LedgerEntry(
        id=row_id if isinstance(row_id, int) else 0,
        role=_text(row, "role"),
        method=_text(row, "method"),
        checksum=_text(row, "checksum"),
        from_state=_optional_text(row, "from_state"),
        to_state=_text(row, "to_state"),
        decision=_text(row, "decision"),
        rationale=json.loads(_text(row, "rationale_json")),
        policy_version=_text(row, "policy_version"),
        mode=_text(row, "mode"),
        authorized_by=_optional_text(row, "authorized_by"),
        at=_text(row, "recorded_at"),
    )


def _evaluation_from_row(row: Mapping[str, RowValue]) -> EvaluationRecord:
    row_id = row["id"]
    return EvaluationRecord(
        id=row_id if isinstance(row_id, int) else 0,
        role=_text(row, "role"),
        method=_text(row, "method"),
        checksum=_text(row, "checksum"),
        decision=_text(row, "decision"),
        policy_version=_text(row, "policy_version"),
        mode=_text(row, "mode"),
        rationale=json.loads(_text(row, "rationale_json")),
        incumbent_checksum=_optional_text(row, "incumbent_checksum"),
        at=_text(row, "recorded_at"),
    )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AUTHORIZED_TRANSITIONS",
    "ArtifactNotFoundError",
    "ArtifactStore",
    "ArtifactVersionRecord",
    "EvaluationRecord",
    "LedgerEntry",
    "LifecycleStateConflictError",
    "LifecycleTransitionError",
    "RetentionPolicy",
]
