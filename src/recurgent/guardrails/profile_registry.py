"""
recurgent — role profile registry

Purpose
- Persist published role profile versions, the active binding per role, the
  append-only profile history and coordination observations.

Functional requirements
- Publishing an existing version with different content is rejected; the same
  content is idempotent.
- ``active`` falls back to the latest published version when no binding exists.
- History reads are bounded.
- Observations are stored per ``(role, constraint, method)`` and keep their
  first observation time so the first sibling sets the convention.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from recurgent.constants import ROLE_PROFILE_HISTORY_READ_LIMIT
from recurgent.guardrails.role_profile import RoleProfile, RoleProfileError
from recurgent.persistence.state_db import RowValue, StateDB, utc_now_iso
from recurgent.utils.hashing import canonical_json


@dataclass(frozen=True, slots=True)
class ProfileHistoryEntry:
    id: int
    role: str
    event: str
    active_version: int | None
    source: str
    actor: str | None
    proposal_id: str | None
    note: str | None
    at: str


@dataclass(frozen=True, slots=True)
class RoleObservation:
    role: str
    constraint_name: str
    kind: str
    method: str
    value: str
    first_observed_at: str
    updated_at: str


class RoleProfileRegistry:
    """SQLite-backed store for role profiles and their activation history."""

    def __init__(self, db: StateDB, *, logger: Any | None = None) -> None:
        self._db = db
        self._db.migrate()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def publish(
        self,
        profile: RoleProfile | Mapping[str, Any],
        *,
        activate: bool = False,
        actor: str | None = None,
        source: str = "api",
        proposal_id: str | None = None,
    ) -> RoleProfile:
        normalized = RoleProfile.normalize(profile)
        payload = canonical_json(normalized.to_dict())
        now = utc_now_iso()
        with self._db.transaction() as conn:
            existing = self._db.query_one(
                "SELECT profile_json FROM role_profiles WHERE role = ? AND version = ?",
                (normalized.role, normalized.version),
                conn=conn,
            )
            if existing is None:
                self._db.execute(
                    """
                    INSERT INTO role_profiles (role, version, profile_json, published_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (normalized.role, normalized.version, payload, now),
                    conn=conn,
                )
                self._append_history(
                    conn,
                    role=normalized.role,
                    event="published",
                    active_version=normalized.version,
                    source=source,
                    actor=actor,
                    proposal_id=proposal_id,
                )
            elif existing["profile_json"] != payload:
                raise RoleProfileError(
                    f"role profile {normalized.role} v{normalized.version} already published "
                    "with different content"
                )
            if activate:
                self._bind(
                    conn,
                    role=normalized.role,
                    version=normalized.version,
                    event="activated",
                    source=source,
                    actor=actor,
                    proposal_id=proposal_id,
                )
        self._logger.info(
            "role_profile_published",
            role=normalized.role,
            version=normalized.version,
            activated=activate,
        )
        return normalized

    def activate(
        self,
        role: str,
        version: int,
        *,
        actor: str | None = None,
        source: str = "api",
        proposal_id: str | None = None,
    ) -> RoleProfile:
        return self._switch(role, version, "activated", actor, source, proposal_id)

    def rollback(
        self,
        role: str,
        version: int,
        *,
        actor: str | None = None,
        source: str = "api",
        proposal_id: str | None = None,
    ) -> RoleProfile:
        """Re-activate an earlier published version."""

        current = self.active_version(role)
        if current is not None and version >= current:
            raise RoleProfileError(
                f"rollback target v{version} must be older than active v{current} for {role}"
            )
        return self._switch(role, version, "rolled_back", actor, source, proposal_id)

    def get(self, role: str, version: int) -> RoleProfile | None:
        row = self._db.query_one(
            "SELECT profile_json FROM role_profiles WHERE role = ? AND version = ?",
            (role, version),
        )
        return None if row is None else _profile_from_row(row)

    def versions(self, role: str) -> list[int]:
        rows = self._db.query_all(
            "SELECT version FROM role_profiles WHERE role = ? ORDER BY version ASC", (role,)
        )
        return [int(row["version"]) for row in rows if isinstance(row["version"], int)]

    def active_version(self, role: str) -> int | None:
        row = self._db.query_one(
            "SELECT active_version FROM role_profile_bindings WHERE role = ?", (role,)
        )
        if row is not None and isinstance(row["active_version"], int):
            return row["active_version"]
        latest = self._db.query_one(
            "SELECT MAX(version) AS version FROM role_profiles WHERE role = ?", (role,)
        )
        if latest is None or not isinstance(latest["version"], int):
            return None
        return latest["version"]

    def active(self, role: str) -> RoleProfile | None:
        version = self.active_version(role)
        return None if version is None else self.get(role, version)

    def history(
        self, role: str, *, limit: int = ROLE_PROFILE_HISTORY_READ_LIMIT
    ) -> list[ProfileHistoryEntry]:
        bounded = max(1, min(limit, ROLE_PROFILE_HISTORY_READ_LIMIT))
        rows = self._db.query_all(
            "SELECT * FROM role_profile_history WHERE role = ? ORDER BY id DESC LIMIT ?",
            (role, bounded),
        )
        return [_history_from_row(row) for row in reversed(rows)]

    def record_observation(
        self,
        role: str,
        constraint_name: str,
        *,
        kind: str,
        method: str,
        value: str,
    ) -> None:
        now = utc_now_iso()
        self._db.execute(
            """
            INSERT INTO role_observations (
                role, constraint_name, kind, method, observed_value, first_observed_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(role, constraint_name, method) DO UPDATE SET
                kind = excluded.kind,
                observed_value = excluded.observed_value,
                updated_at = excluded.updated_at
            """,
            (role, constraint_name, kind, method, value, now, now),
        )

    def observations(self, role: str, constraint_name: str) -> list[RoleObservation]:
        rows = self._db.query_all(
            """
            SELECT * FROM role_observations
            WHERE role = ? AND constraint_name = ?
            ORDER BY first_observed_at ASC, rowid ASC
            """,
            (role, constraint_name),
        )
        return [
            RoleObservation(
                role=str(row["role"]),
                constraint_name=str(row["constraint_name"]),
                kind=str(row["kind"]),
                method=str(row["method"]),
                value=str(row["observed_value"]),
                first_observed_at=str(row["first_observed_at"]),
                updated_at=str(row["updated_at"]),
            )
            for row in rows
        ]

    def _switch(
        self,
        role: str,
        version: int,
        event: str,
        actor: str | None,
        source: str,
        proposal_id: str | None,
    ) -> RoleProfile:
        with self._db.transaction() as conn:
            row = self._db.query_one(
                "SELECT profile_json FROM role_profiles WHERE role = ? AND version = ?",
                (role, version),
                conn=conn,
            )
            if row is None:
                raise RoleProfileError(f"role profile {role} v{version} is not published")
            self._bind(
                conn,
                role=role,
                version=version,
                event=event,
                source=source,
                actor=actor,
                proposal_id=proposal_id,
            )
        self._logger.info("role_profile_bound", role=role, version=version, event=event)
        return _profile_from_row(row)

    def _bind(
        self,
        conn: sqlite3.Connection,
        *,
        role: str,
        version: int,
        event: str,
        source: str,
        actor: str | None,
        proposal_id: str | None,
    ) -> None:
        self._db.execute(
            """
            INSERT INTO role_profile_bindings (role, active_version, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(role) DO UPDATE SET
                active_version = excluded.active_version,
                updated_at = excluded.updated_at
            """,
            (role, version, utc_now_iso()),
            conn=conn,
        )
        self._append_history(
            conn,
            role=role,
            event=event,
            active_version=version,
            source=source,
            actor=actor,
            proposal_id=proposal_id,
        )

    def _append_history(
        self,
        conn: sqlite3.Connection,
        *,
        role: str,
        event: str,
        active_version: int | None,
        source: str,
        actor: str | None,
        proposal_id: str | None,
        note: str | None = None,
    ) -> None:
        self._db.insert(
            """
            INSERT INTO role_profile_history (
                role, event, active_version, source, actor, proposal_id, note, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (role, event, active_version, source, actor, proposal_id, note, utc_now_iso()),
            conn=conn,
        )


def _profile_from_row(row: Mapping[str, RowValue]) -> RoleProfile:
    payload = row["profile_json"]
    if not isinstance(payload, str):
        raise TypeError("profile_json must be TEXT")
    return RoleProfile.normalize(json.loads(payload))


def _history_from_row(row: Mapping[str, RowValue]) -> ProfileHistoryEntry:
    def _opt(key: str) -> str | None:
        value = row[key]
        return value if isinstance(value, str) else None

    version = row["active_version"]
    return ProfileHistoryEntry(
        id=int(row["id"]) if isinstance(row["id"], int) else 0,
        role=str(row["role"]),
        event=str(row["event"]),
        active_version=version if isinstance(version, int) else None,
        source=str(row["source"]),
        actor=_opt("actor"),
        proposal_id=_opt("proposal_id"),
        note=_opt("note"),
        at=str(row["recorded_at"]),
    )


__all__ = [
    "ProfileHistoryEntry",
    "RoleObservation",
    "RoleProfileRegistry",
]
