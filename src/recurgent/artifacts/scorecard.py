"""
recurgent — artifact version scorecards

Purpose
- Immutable per-version reliability counters and rolling windows that feed the
  lifecycle engine and the shadow selector.

Functional requirements
- ``Scorecard.record`` returns a new scorecard; persisted scorecards are only
  replaced after a call's terminal result.
- Windows are bounded: short window 20 outcomes, medium window 200, sessions
  and state-key observations 200 each.
- ``state_key_consistency_ratio`` is the share of observations that match the
  most common primary state key (1.0 when nothing was observed).
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from recurgent.constants import (
    MEDIUM_WINDOW_SIZE,
    SESSION_HISTORY_LIMIT,
    SHORT_WINDOW_SIZE,
    STATE_KEY_HISTORY_LIMIT,
)
from recurgent.errors import FailureClass, failure_class
from recurgent.persistence.state_db import utc_now_iso


@dataclass(frozen=True, slots=True)
class CallObservation:
    """Facts about one terminal call used to update a scorecard."""

    status: str
    trace_id: str
    error_type: str | None = None
    error_message: str | None = None
    contract_applied: bool = False
    contract_passed: bool | None = None
    guardrail_retry_exhausted: bool = False
    outcome_repair_retry_exhausted: bool = False
    state_key: str | None = None
    role_profile_checked: bool = False
    role_profile_passed: bool | None = None
    at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        if self.status not in ("ok", "error"):
            raise ValueError(f"status must be 'ok' or 'error', got {self.status!r}")

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True, slots=True)
class Scorecard:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    contract_passes: int = 0
    contract_failures: int = 0
    guardrail_retry_exhausted_count: int = 0
    outcome_repair_retry_exhausted_count: int = 0
    failure_classes: Mapping[str, int] = field(
        default_factory=lambda: {item.value: 0 for item in FailureClass}
    )
    short_window: tuple[Mapping[str, Any], ...] = ()
    medium_window: tuple[Mapping[str, Any], ...] = ()
    sessions: tuple[str, ...] = ()
    state_key_observations: tuple[str, ...] = ()
    state_key_consistency_ratio: float = 1.0
    role_profile_observations: int = 0
    role_profile_passes: int = 0
    last_outcome_status: str | None = None
    last_failure_reason: str | None = None
    updated_at: str | None = None

    @property
    def success_rate(self) -> float:
        return 0.0 if self.calls == 0 else round(self.successes / self.calls, 4)

    @property
    def failure_rate(self) -> float:
        return 0.0 if self.calls == 0 else round(self.failures / self.calls, 4)

    @property
    def contract_pass_rate(self) -> float:
        total = self.contract_passes + self.contract_failures
        return 1.0 if total == 0 else round(self.contract_passes / total, 4)

    @property
    def role_profile_pass_rate(self) -> float:
        if self.role_profile_observations == 0:
            return 1.0
        return round(self.role_profile_passes / self.role_profile_observations, 4)

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    @property
    def unhealthy(self) -> bool:
        """Persistently failing version that the shadow selector skips."""

        return self.failures >= 3 and self.failure_rate > 0.6 and self.failures > self.successes

    def window_failure_rate(self, window: str = "short") -> tuple[float, int]:
        entries = self.short_window if window == "short" else self.medium_window
        if not entries:
            return 0.0, 0
        failures = sum(1 for entry in entries if entry.get("status") != "ok")
        return round(failures / len(entries), 4), len(entries)

    def record(self, observation: CallObservation) -> Scorecard:
        """Return a new scorecard that includes ``observation``."""

        ok = observation.ok
        classes = dict(self.failure_classes)
        if not ok:
            bucket = failure_class(observation.error_type).value
            classes[bucket] = classes.get(bucket, 0) + 1

        contract_passes = self.contract_passes
        contract_failures = self.contract_failures
        if observation.contract_applied and observation.contract_passed is True:
            contract_passes += 1
        elif observation.contract_applied and observation.contract_passed is False:
            contract_failures += 1

        profile_observations = self.role_profile_observations
        profile_passes = self.role_profile_passes
        if observation.role_profile_checked:
            profile_observations += 1
            if observation.role_profile_passed:
                profile_passes += 1

        window_entry = {
            "status": observation.status,
            "error_type": observation.error_type,
            "at": observation.at,
        }
        sessions = self.sessions
        if observation.trace_id and observation.trace_id not in sessions:
            sessions = _bounded((*sessions, observation.trace_id), SESSION_HISTORY_LIMIT)

        state_keys = self.state_key_observations
        if observation.state_key:
            state_keys = _bounded((*state_keys, observation.state_key), STATE_KEY_HISTORY_LIMIT)

        return replace(
            self,
            calls=self.calls + 1,
            successes=self.successes + (1 if ok else 0),
            failures=self.failures + (0 if ok else 1),
            contract_passes=contract_passes,
            contract_failures=contract_failures,
            guardrail_retry_exhausted_count=self.guardrail_retry_exhausted_count
            + (1 if observation.guardrail_retry_exhausted else 0),
            outcome_repair_retry_exhausted_count=self.outcome_repair_retry_exhausted_count
            + (1 if observation.outcome_repair_retry_exhausted else 0),
            failure_classes=classes,
            short_window=_bounded((*self.short_window, window_entry), SHORT_WINDOW_SIZE),
            medium_window=_bounded((*self.medium_window, window_entry), MEDIUM_WINDOW_SIZE),
            sessions=sessions,
            state_key_observations=state_keys,
            state_key_consistency_ratio=consistency_ratio(state_keys),
            role_profile_observations=profile_observations,
            role_profile_passes=profile_passes,
            last_outcome_status=observation.status,
            last_failure_reason=self.last_failure_reason
            if ok
            else (observation.error_message or observation.error_type or "unknown failure"),
            updated_at=observation.at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "successes": self.successes,
            "failures": self.failures,
            "contract_passes": self.contract_passes,
            "contract_failures": self.contract_failures,
            "guardrail_retry_exhausted_count": self.guardrail_retry_exhausted_count,
            "outcome_repair_retry_exhausted_count": self.outcome_repair_retry_exhausted_count,
            "failure_classes": dict(self.failure_classes),
            "short_window": [dict(entry) for entry in self.short_window],
            "medium_window": [dict(entry) for entry in self.medium_window],
            "sessions": list(self.sessions),
            "state_key_observations": list(self.state_key_observations),
            "state_key_consistency_ratio": self.state_key_consistency_ratio,
            "role_profile_observations": self.role_profile_observations,
            "role_profile_passes": self.role_profile_passes,
            "last_outcome_status": self.last_outcome_status,
            "last_failure_reason": self.last_failure_reason,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Scorecard:
        default = cls()
        classes = dict(default.failure_classes)
        classes.update({str(k): int(v) for k, v in (payload.get("failure_classes") or {}).items()})
        return cls(
            calls=int(payload.get("calls", 0)),
            successes=int(payload.get("successes", 0)),
            failures=int(payload.get("failures", 0)),
            contract_passes=int(payload.get("contract_passes", 0)),
            contract_failures=int(payload.get("contract_failures", 0)),
            guardrail_retry_exhausted_count=int(payload.get("guardrail_retry_exhausted_count", 0)),
            outcome_repair_retry_exhausted_count=int(
                payload.get("outcome_repair_retry_exhausted_count", 0)
            ),
            failure_classes=classes,
            short_window=tuple(dict(entry) for entry in payload.get("short_window") or ()),
            medium_window=tuple(dict(entry) for entry in payload.get("medium_window") or ()),
            sessions=tuple(str(item) for item in payload.get("sessions") or ()),
            state_key_observations=tuple(
                str(item) for item in payload.get("state_key_observations") or ()
            ),
            state_key_consistency_ratio=float(payload.get("state_key_consistency_ratio", 1.0)),
            role_profile_observations=int(payload.get("role_profile_observations", 0)),
            role_profile_passes=int(payload.get("role_profile_passes", 0)),
            last_outcome_status=payload.get("last_outcome_status"),
            last_failure_reason=payload.get("last_failure_reason"),
            updated_at=payload.get("updated_at"),
        )


def consistency_ratio(observations: Sequence[str]) -> float:
    if not observations:
        return 1.0
    most_common = Counter(observations).most_common(1)[0][1]
    return round(most_common / len(observations), 4)


def _bounded(values: tuple[Any, ...], limit: int) -> tuple[Any, ...]:
    return values[-limit:] if len(values) > limit else values


__all__ = [
    "CallObservation",
    "Scorecard",
    "consistency_ratio",
]
