"""
recurgent — role profiles

Purpose
- Versioned per-role constraints that keep sibling methods consistent about
  shared state slots and return shapes.

What should be included in this file
- ``RoleConstraint`` and ``RoleProfile`` value objects.
- ``RoleProfile.normalize`` accepting loosely-typed mappings.

Functional requirements
- ``version`` is an integer >= 1.
- Constraint kinds: ``shared_state_slot`` and ``return_shape_family``.
- Modes: ``coordination`` (infer the convention from siblings) or
  ``prescriptive`` (declared canonical value).
- Prescriptive ``shared_state_slot`` requires ``canonical_key``; prescriptive
  ``return_shape_family`` requires ``canonical_value``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

CONSTRAINT_KINDS: Final[tuple[str, ...]] = ("shared_state_slot", "return_shape_family")
CONSTRAINT_MODES: Final[tuple[str, ...]] = ("coordination", "prescriptive")
CONSTRAINT_SCOPES: Final[tuple[str, ...]] = ("all_methods", "explicit_methods")


class RoleProfileError(ValueError):
    """Raised when a role profile payload is malformed."""


def _names(raw: object, *, field_name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, Sequence):
        raise RoleProfileError(f"{field_name} must be a list of method names")
    out: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise RoleProfileError(f"{field_name} entries must be strings")
        name = item.strip()
        if name and name not in out:
            out.append(name)
    return tuple(out)


@dataclass(frozen=True, slots=True)
class RoleConstraint:
    name: str
    kind: str = "shared_state_slot"
    mode: str = "coordination"
    scope: str = "all_methods"
    methods: tuple[str, ...] = ()
    exclude_methods: tuple[str, ...] = ()
    canonical_key: str | None = None
    canonical_value: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in CONSTRAINT_KINDS:
            raise RoleProfileError(f"constraint {self.name!r} has unsupported kind {self.kind!r}")
        if self.mode not in CONSTRAINT_MODES:
            raise RoleProfileError(f"constraint {self.name!r} has unsupported mode {self.mode!r}")
        if self.scope not in CONSTRAINT_SCOPES:
            raise RoleProfileError(f"constraint {self.name!r} has unsupported scope {self.scope!r}")
        if self.scope == "explicit_methods" and not self.methods:
            raise RoleProfileError(f"constraint {self.name!r} requires at least one method")
        if self.mode == "prescriptive":
            if self.kind == "shared_state_slot" and not self.canonical_key:
                raise RoleProfileError(
                    f"prescriptive constraint {self.name!r} requires canonical_key"
                )
            if self.kind == "return_shape_family" and not self.canonical_value:
                raise RoleProfileError(
                    f"prescriptive constraint {self.name!r} requires canonical_value"
                )

    @property
    def expected_value(self) -> str | None:
        if self.mode != "prescriptive":
            return None
        return self.canonical_key if self.kind == "shared_state_slot" else self.canonical_value

    def applies_to(self, method: str) -> bool:
        if self.scope == "explicit_methods":
            return method in self.methods and method not in self.exclude_methods
        return method not in self.exclude_methods

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "mode": self.mode,
            "scope": self.scope,
            "methods": list(self.methods),
            "exclude_methods": list(self.exclude_methods),
        }
        if self.canonical_key is not None:
            payload["canonical_key"] = self.canonical_key
        if self.canonical_value is not None:
            payload["canonical_value"] = self.canonical_value
        return payload

    @classmethod
    def from_dict(cls, name: str, raw: Mapping[str, Any]) -> RoleConstraint:
        if not isinstance(raw, Mapping):
            raise RoleProfileError(f"constraint {name!r} must be a mapping")
        methods = _names(raw.get("methods"), field_name=f"{name}.methods")
        scope = str(raw.get("scope") or ("explicit_methods" if methods else "all_methods")).strip()
        canonical_key = raw.get("canonical_key")
        canonical_value = raw.get("canonical_value")
        return cls(
            name=name,
            kind=str(raw.get("kind") or "shared_state_slot").strip(),
            mode=str(raw.get("mode") or "coordination").strip(),
            scope=scope,
            methods=methods,
            exclude_methods=_names(
                raw.get("exclude_methods"), field_name=f"{name}.exclude_methods"
            ),
            canonical_key=None if canonical_key is None else str(canonical_key).strip(),
            canonical_value=None if canonical_value is None else str(canonical_value).strip(),
        )


@dataclass(frozen=True, slots=True)
class RoleProfile:
    role: str
    version: int
    constraints: Mapping[str, RoleConstraint] = field(default_factory=dict)
    enforced: bool | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, str) or not self.role.strip():
            raise RoleProfileError("role profile requires a role")
        object.__setattr__(self, "role", self.role.strip())
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1:
            raise RoleProfileError("role profile version must be an integer >= 1")
        object.__setattr__(self, "constraints", dict(sorted(self.constraints.items())))

    def constraints_for(self, method: str) -> list[RoleConstraint]:
        return [item for item in self.constraints.values() if item.applies_to(method)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "version": self.version,
            "enforced": self.enforced,
            "constraints": {name: item.to_dict() for name, item in self.constraints.items()},
        }

    @classmethod
    def normalize(cls, raw: Mapping[str, Any], *, expected_role: str | None = None) -> RoleProfile:
        """Build a profile from a loosely-typed mapping."""

        if isinstance(raw, RoleProfile):
            profile = raw
        else:
            if not isinstance(raw, Mapping):
                raise RoleProfileError("role profile must be a mapping")
            constraints_raw = raw.get("constraints")
            if not isinstance(constraints_raw, Mapping):
                raise RoleProfileError("role profile constraints must be a mapping")
            version = raw.get("version")
            if isinstance(version, str) and version.strip().isdigit():
                version = int(version.strip())
            enforced = raw.get("enforced")
            if enforced is not None and not isinstance(enforced, bool):
                raise RoleProfileError("role profile enforced must be a boolean when set")
            profile = cls(
                role=str(raw.get("role") or ""),
                version=version,  # type: ignore[arg-type]
                constraints={
                    str(name): RoleConstraint.from_dict(str(name), item)
                    for name, item in constraints_raw.items()
                },
                enforced=enforced,
            )
        if expected_role is not None and profile.role != expected_role:
            raise RoleProfileError(
                f"role profile role {profile.role!r} does not match {expected_role!r}"
            )
        return profile


__all__ = [
    "CONSTRAINT_KINDS",
    "CONSTRAINT_MODES",
    "CONSTRAINT_SCOPES",
    "RoleConstraint",
    "RoleProfile",
    "RoleProfileError",
]
