"""
recurgent — governance proposals

Purpose
- Persist evolution proposals and apply approved ones as exactly one typed
  mutation of runtime state.

What should be included in this file
- ``ProposalRecord`` with an append-only event history.
- ``ProposalService`` with ``create``, ``get``, ``list``, ``approve``,
  ``reject`` and ``apply``.
- Maintainer authority checks for every status mutation.

Functional requirements
- Status flow: ``pending -> approved | rejected``, ``approved -> applying ->
  applied``. ``apply`` claims the proposal with a conditional update inside a
  ``BEGIN IMMEDIATE`` transaction, so concurrent applies mutate at most once; a
  failed mutation returns it to ``approved``.
- With authority enforcement on, only configured maintainers (compared
  case-insensitively) may approve, reject or apply; an empty maintainer list
  denies everyone.
- Proposal types: ``role_profile_update``, ``retention_policy_update``,
  ``artifact_requalification``.
- Failures are returned as outcomes (``authority_denied``,
  ``invalid_proposal_payload``, ``invalid_proposal_state``, ``not_found``).
"""

from __future__ import annotations

import json
import secrets
import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from recurgent.artifacts.lifecycle import LifecycleEngine
from recurgent.artifacts.store import (
    ArtifactNotFoundError,
    ArtifactStore,
    LifecycleTransitionError,
    RetentionPolicy,
)
from recurgent.errors import ErrorType
from recurgent.guardrails.profile_registry import RoleProfileRegistry
from recurgent.guardrails.role_profile import RoleProfile, RoleProfileError
from recurgent.outcome import Outcome
from recurgent.persistence.state_db import RowValue, StateDB, utc_now_iso
from recurgent.utils.hashing import canonical_json

PROPOSAL_TYPES: Final[tuple[str, ...]] = (
    "role_profile_update",
    "retention_policy_update",
    "artifact_requalification",
)
ROLE_PROFILE_ACTIONS: Final[tuple[str, ...]] = (
    "publish_only",
    "publish_and_activate",
    "activate",
    "rollback",
)
GOVERNANCE_ROLE: Final[str] = "governance"


class InvalidProposalPayload(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class ProposalEvent:
    event: str
    status: str
    actor: str
    note: str | None
    at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "status": self.status,
            "actor": self.actor,
            "note": self.note,
            "at": self.at,
        }


@dataclass(frozen=True, slots=True)
class ProposalRecord:
    id: str
    proposal_type: str
    target: str
    payload: Mapping[str, Any]
    evidence_refs: tuple[str, ...]
    status: str
    author: str
    created_at: str
    updated_at: str
    events: tuple[ProposalEvent, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "proposal_type": self.proposal_type,
            "target": self.target,
            "payload": dict(self.payload),
            "evidence_refs": list(self.evidence_refs),
            "status": self.status,
            "author": self.author,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "events": [item.to_dict() for item in self.events],
        }


def new_proposal_id() -> str:
    return f"prop-{secrets.token_hex(8)}"


def validate_payload(proposal_type: str, target: str, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return a normalized payload or raise ``InvalidProposalPayload``."""

    if proposal_type not in PROPOSAL_TYPES:
        raise InvalidProposalPayload(f"unsupported proposal_type {proposal_type!r}")
    if not isinstance(target, str) or not target.strip():
        raise InvalidProposalPayload("target must be a non-empty string")
    if not isinstance(payload, Mapping):
        raise InvalidProposalPayload("payload must be a mapping")

    if proposal_type == "role_profile_update":
        action = str(payload.get("action") or "publish_and_activate").strip()
        if action not in ROLE_PROFILE_ACTIONS:
            raise InvalidProposalPayload(f"unsupported role_profile_update action {action!r}")
        if action in ("activate", "rollback"):
            version = payload.get("version")
            if isinstance(version, bool) or not isinstance(version, int) or version < 1:
                raise InvalidProposalPayload(f"{action} requires an integer version >= 1")
            return {"action": action, "version": version}
        raw_profile = payload.get("role_profile")
        if not isinstance(raw_profile, Mapping):
            raise InvalidProposalPayload("role_profile_update requires a role_profile mapping")
        try:
            profile = RoleProfile.normalize(raw_profile, expected_role=target.strip())
        except RoleProfileError as exc:
            raise InvalidProposalPayload(str(exc)) from exc
        return {"action": action, "role_profile": profile.to_dict()}

    if proposal_type == "retention_policy_update":
        try:
            policy = RetentionPolicy.from_dict(payload)
        except ValueError as exc:
            raise InvalidProposalPayload(str(exc)) from exc
        return policy.to_dict()

    normalized: dict[str, Any] = {}
    for key in ("role", "method", "checksum"):
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            raise InvalidProposalPayload(f"artifact_requalification requires {key}")
        normalized[key] = value.strip()
    if normalized["role"] != target.strip():
        raise InvalidProposalPayload("artifact_requalification role must match the target")
    note = payload.get("note")
    if note is not None:
        normalized["note"] = str(note)
    return normalized


class ProposalService:
    """Proposal store plus the single mutation path for governed state."""

    def __init__(
        self,
        db: StateDB,
        *,
        registry: RoleProfileRegistry,
        store: ArtifactStore,
        lifecycle: LifecycleEngine,
        authority_enforcement_enabled: bool = True,
        maintainers: Sequence[str] = (),
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._db.migrate()
        self._registry = registry
        self._store = store
        self._lifecycle = lifecycle
        self._authority_enforcement_enabled = authority_enforcement_enabled
        self._maintainers = frozenset(
            item.strip().lower() for item in maintainers if item and item.strip()
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def authorized(self, actor: str) -> bool:
        if not self._authority_enforcement_enabled:
            return True
        return actor.strip().lower() in self._maintainers

    def create(
        self,
        proposal_type: str,
        target: str,
        payload: Mapping[str, Any],
        *,
        author: str,
        evidence_refs: Sequence[str] = (),
    ) -> Outcome:
        try:
            normalized = validate_payload(proposal_type, target, payload)
        except InvalidProposalPayload as exc:
            return _error(ErrorType.INVALID_PROPOSAL_PAYLOAD, str(exc), "create_proposal")

        proposal_id = new_proposal_id()
        now = utc_now_iso()
        actor = _actor(author)
        with self._db.transaction() as conn:
            self._db.execute(
                """
                INSERT INTO proposals (
                    id, proposal_type, target, payload_json, evidence_refs_json,
                    status, author, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    proposal_id,
                    proposal_type,
                    target.strip(),
                    canonical_json(normalized),
                    canonical_json([str(item) for item in evidence_refs if str(item).strip()]),
                    actor,
                    now,
                    now,
                ),
                conn=conn,
            )
            self._append_event(conn, proposal_id, "created", "pending", actor, None, now)
        self._logger.info(
            "proposal_created", proposal_id=proposal_id, proposal_type=proposal_type, target=target
        )
        record = self.get(proposal_id)
        assert record is not None
        return Outcome.ok(record.to_dict(), role=GOVERNANCE_ROLE, method="create_proposal")

    def get(self, proposal_id: str) -> ProposalRecord | None:
        row = self._db.query_one("SELECT * FROM proposals WHERE id = ?", (proposal_id,))
        if row is None:
            return None
        events = self._db.query_all(
            "SELECT * FROM proposal_events WHERE proposal_id = ? ORDER BY id ASC", (proposal_id,)
        )
        return _record_from_row(row, events)

    def list(self, *, status: str | None = None, limit: int | None = None) -> list[ProposalRecord]:
        sql = "SELECT id FROM proposals"
        params: tuple[str | int, ...] = ()
        if status:
            sql += " WHERE status = ?"
            params = (status,)
        sql += " ORDER BY created_at ASC, rowid ASC"
        rows = self._db.query_all(sql, params)
        ids = [str(row["id"]) for row in rows]
        if limit is not None:
            ids = ids[-limit:] if limit > 0 else []
        records = [self.get(item) for item in ids]
        return [record for record in records if record is not None]

    def approve(self, proposal_id: str, *, actor: str, note: str | None = None) -> Outcome:
        return self._decide(
            proposal_id, actor=actor, note=note, status="approved", action="approve"
        )

    def reject(self, proposal_id: str, *, actor: str, note: str | None = None) -> Outcome:
        return self._decide(proposal_id, actor=actor, note=note, status="rejected", action="reject")

    def apply(self, proposal_id: str, *, actor: str, note: str | None = None) -> Outcome:
        resolved = _actor(actor)
        method = "apply_proposal"
        if not self.authorized(resolved):
            return _authority_denied(resolved, "apply", method)
        record = self.get(proposal_id)
        if record is None:
            return _error(ErrorType.NOT_FOUND, f"Proposal {proposal_id!r} not found", method)
        if record.status != "approved":
            return _error(
                ErrorType.INVALID_PROPOSAL_STATE,
                f"Proposal {proposal_id!r} must be approved before apply "
                f"(current: {record.status})",
                method,
            )

        if not self._claim(proposal_id, resolved, note):
            return _error(
                ErrorType.INVALID_PROPOSAL_STATE,
                f"Proposal {proposal_id!r} is already being applied",
                method,
            )

        failure: Outcome | None = None
        try:
            mutation = self._mutate(record, resolved, note)
        except LifecycleTransitionError as exc:
            failure = _error(ErrorType.INVALID_PROPOSAL_STATE, str(exc), method)
        except (RoleProfileError, ValueError) as exc:
            failure = _error(
                ErrorType.INVALID_PROPOSAL_PAYLOAD,
                f"Proposal {proposal_id!r} is invalid: {exc}",
                method,
            )
        except ArtifactNotFoundError as exc:
            failure = _error(ErrorType.NOT_FOUND, str(exc), method)
        except Exception:
            self._set_status(proposal_id, "approved", "apply_failed", resolved, note)
            raise
        if failure is not None:
            self._set_status(
                proposal_id, "approved", "apply_failed", resolved, failure.error_message
            )
            return failure

        self._set_status(proposal_id, "applied", "applied", resolved, note)
        self._logger.info(
            "proposal_applied",
            proposal_id=proposal_id,
            proposal_type=record.proposal_type,
            actor=resolved,
        )
        applied = self.get(proposal_id)
        assert applied is not None
        value = applied.to_dict()
        value["mutation"] = mutation
        return Outcome.ok(value, role=GOVERNANCE_ROLE, method=method)

    def _decide(
        self, proposal_id: str, *, actor: str, note: str | None, status: str, action: str
    ) -> Outcome:
        resolved = _actor(actor)
        method = f"{action}_proposal"
        if not self.authorized(resolved):
            return _authority_denied(resolved, action, method)
        record = self.get(proposal_id)
        if record is None:
            return _error(ErrorType.NOT_FOUND, f"Proposal {proposal_id!r} not found", method)
        if record.status != "pending":
            return _error(
                ErrorType.INVALID_PROPOSAL_STATE,
                f"Proposal {proposal_id!r} must be pending to {action} (current: {record.status})",
                method,
            )
        self._set_status(proposal_id, status, status, resolved, note)
        updated = self.get(proposal_id)
        assert updated is not None
        return Outcome.ok(updated.to_dict(), role=GOVERNANCE_ROLE, method=method)

    def _mutate(self, record: ProposalRecord, actor: str, note: str | None) -> dict[str, Any]:
        payload = record.payload
        if record.proposal_type == "role_profile_update":
            action = str(payload["action"])
            if action in ("activate", "rollback"):
                version = int(payload["version"])
                switch = (
                    self._registry.activate if action == "activate" else self._registry.rollback
                )
                profile = switch(
                    record.target,
                    version,
                    actor=actor,
                    source="proposal_apply",
                    proposal_id=record.id,
                )
                return {"action": action, "active_version": profile.version}
            published = self._registry.publish(
                payload["role_profile"],
                activate=action == "publish_and_activate",
                actor=actor,
                source="proposal_apply",
                proposal_id=record.id,
            )
            return {
                "action": action,
                "published_version": published.version,
                "active_version": self._registry.active_version(record.target),
            }

        if record.proposal_type == "retention_policy_update":
            policy = RetentionPolicy.from_dict(payload)
            self._store.set_retention_policy(record.target, policy)
            return {"retention_policy": policy.to_dict()}

        entry = self._lifecycle.requalify(
            str(payload["role"]),
            str(payload["method"]),
            str(payload["checksum"]),
            authorized_by=actor,
            note=note or payload.get("note"),
        )
        return {"from_state": entry.from_state, "to_state": entry.to_state}

    def _claim(self, proposal_id: str, actor: str, note: str | None) -> bool:
        now = utc_now_iso()
        with self._db.transaction() as conn:
            claimed = self._db.execute(
                "UPDATE proposals SET status = 'applying', updated_at = ?"
                " WHERE id = ? AND status = 'approved'",
                (now, proposal_id),
                conn=conn,
            )
            if claimed != 1:
                return False
            self._append_event(conn, proposal_id, "apply_started", "applying", actor, note, now)
        return True

    def _set_status(
        self, proposal_id: str, status: str, event: str, actor: str, note: str | None
    ) -> None:
        now = utc_now_iso()
        with self._db.transaction() as conn:
            self._db.execute(
                "UPDATE proposals SET status = ?, updated_at = ? WHERE id = ?",
                (status, now, proposal_id),
                conn=conn,
            )
            self._append_event(conn, proposal_id, event, status, actor, note, now)

    def _append_event(
        self,
        conn: sqlite3.Connection,
        proposal_id: str,
        event: str,
        status: str,
        actor: str,
        note: str | None,
        at: str,
    ) -> None:
        self._db.insert(
            """
            INSERT INTO proposal_events (proposal_id, event, status, actor, note, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (proposal_id, event, status, actor, note, at),
            conn=conn,
        )


def _actor(actor: str | None) -> str:
    candidate = (actor or "").strip()
    return candidate or "unknown"


def _error(error_type: str, message: str, method: str) -> Outcome:
    return Outcome.error(
        error_type, message, retriable=False, role=GOVERNANCE_ROLE, method=method
    )


def _authority_denied(actor: str, action: str, method: str) -> Outcome:
    return Outcome.error(
        ErrorType.AUTHORITY_DENIED,
        f"Actor {actor!r} is not authorized to {action} proposals.",
        retriable=False,
        role=GOVERNANCE_ROLE,
        method=method,
        metadata={
            "actor": actor,
            "action": action,
            "authority": {"observe": True, "propose": True, "enact": False},
        },
    )


def _record_from_row(
    row: Mapping[str, RowValue], events: Sequence[Mapping[str, RowValue]]
) -> ProposalRecord:
    return ProposalRecord(
        id=str(row["id"]),
        proposal_type=str(row["proposal_type"]),
        target=str(row["target"]),
        payload=json.loads(str(row["payload_json"])),
        evidence_refs=tuple(json.loads(str(row["evidence_refs_json"]))),
        status=str(row["status"]),
        author=str(row["author"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        events=tuple(
            ProposalEvent(
                event=str(item["event"]),
                status=str(item["status"]),
                actor=str(item["actor"]),
                note=item["note"] if isinstance(item["note"], str) else None,
                at=str(item["recorded_at"]),
            )
            for item in events
        ),
    )


__all__ = [
    "GOVERNANCE_ROLE",
    "PROPOSAL_TYPES",
    "ProposalEvent",
    "ProposalRecord",
    "ProposalService",
    "new_proposal_id",
    "validate_payload",
]
