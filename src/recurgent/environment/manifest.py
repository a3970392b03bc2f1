"""
recurgent — dependency manifests and source policy

Purpose
- Normalize dependency manifests emitted alongside generated code.
- Enforce the dependency source policy and per-package allow/block lists.
- Derive the content-addressed ``env_id`` for a manifest.

Functional requirements
- Entries are ``{name, version}``; names are lowercased and validated, an empty
  or missing version means "any".
- Duplicate names with differing versions are invalid; output is sorted and
  de-duplicated so equal manifests always normalize identically.
- ``compute_env_id`` is a pure function of engine, platform, source mode,
  sources and the normalized manifest.
"""

from __future__ import annotations

import platform as _platform
import re
import sys
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

from recurgent.constants import DEFAULT_PUBLIC_INDEX, SOURCE_MODES
from recurgent.errors import (
    DependencyManifestIncompatibleError,
    DependencyPolicyViolationError,
    InvalidDependencyManifestError,
)
from recurgent.utils.hashing import sha256_json

_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9](?:[a-z0-9._-]*[a-z0-9])?$")
_VERSION_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9.*+!<>=~, -]+$")
_OPERATOR_PREFIXES: Final[tuple[str, ...]] = ("==", ">=", "<=", "!=", "~=", "===", ">", "<")


@dataclass(frozen=True, slots=True, order=True)
class DependencySpec:
    """One normalized manifest entry."""

    name: str
    version: str = ""

    def requirement(self) -> str:
        """Render a pip requirement string."""

        if not self.version:
            return self.name
        if self.version.startswith(_OPERATOR_PREFIXES):
            return f"{self.name}{self.version}"
        return f"{self.name}=={self.version}"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "version": self.version}


@dataclass(frozen=True, slots=True)
class DependencyManifest:
    """Sorted, de-duplicated dependency manifest."""

    entries: tuple[DependencySpec, ...] = ()

    def __iter__(self) -> Iterator[DependencySpec]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(entry.name for entry in self.entries)

    def requirements(self) -> list[str]:
        return [entry.requirement() for entry in self.entries]

    def to_list(self) -> list[dict[str, str]]:
        return [entry.to_dict() for entry in self.entries]

    @classmethod
    def empty(cls) -> DependencyManifest:
        return cls()


def normalize_manifest(raw: object) -> DependencyManifest:
    """Validate and normalize a raw manifest payload.

    Accepts ``None``, an existing :class:`DependencyManifest`, or a sequence of
    mappings with ``name`` and optional ``version`` keys.
    """

    if raw is None:
        return DependencyManifest()
    if isinstance(raw, DependencyManifest):
        return raw
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
        raise InvalidDependencyManifestError("dependencies must be a list")

    versions_by_name: dict[str, str] = {}
    for index, entry in enumerate(raw):
        name, version = _normalize_entry(entry, index)
        existing = versions_by_name.get(name)
        if existing is not None and existing != version:
            raise InvalidDependencyManifestError(
                f"dependencies[{index}] conflicts with prior declaration for {name!r} "
                f"({existing!r} vs {version!r})",
                metadata={"name": name},
            )
        versions_by_name[name] = version

    return DependencyManifest(
        entries=tuple(
            sorted(
                DependencySpec(name=name, version=version)
                for name, version in versions_by_name.items()
            )
        )
    )


def _normalize_entry(entry: object, index: int) -> tuple[str, str]:
    if isinstance(entry, DependencySpec):
        return entry.name, entry.version
    if not isinstance(entry, Mapping):
        raise InvalidDependencyManifestError(f"dependencies[{index}] must be an object")

    raw_name = entry.get("name")
    if not isinstance(raw_name, str) or not raw_name.strip():
        raise InvalidDependencyManifestError(
            f"dependencies[{index}].name must be a non-empty string"
        )
    name = raw_name.strip().lower()
    if not _NAME_PATTERN.fullmatch(name):
        raise InvalidDependencyManifestError(
            f"dependencies[{index}].name is invalid: {raw_name!r}", metadata={"name": raw_name}
        )

    raw_version = entry.get("version")
    if raw_version is None:
        return name, ""
    if not isinstance(raw_version, str):
        raise InvalidDependencyManifestError(f"dependencies[{index}].version must be a string")
    version = raw_version.strip()
    if version and not _VERSION_PATTERN.fullmatch(version):
        raise InvalidDependencyManifestError(
            f"dependencies[{index}].version is invalid: {raw_version!r}", metadata={"name": name}
        )
    return name, version


def check_additive(
    previous: DependencyManifest, incoming: DependencyManifest, *, role: str
) -> None:
    """Require ``incoming`` to keep every earlier dependency at the same version."""

    incoming_versions = {entry.name: entry.version for entry in incoming}
    dropped = [
        entry.name
        for entry in previous
        if entry.name not in incoming_versions or incoming_versions[entry.name] != entry.version
    ]
    if dropped:
        raise DependencyManifestIncompatibleError(
            f"dependencies for {role} are incompatible with prior manifest "
            "(existing packages must remain with identical versions)",
            metadata={"role": role, "changed": dropped},
        )


def merge_manifests(manifests: Iterable[DependencyManifest]) -> DependencyManifest:
    """Union of manifests; conflicting versions are invalid."""

    combined: list[DependencySpec] = []
    for manifest in manifests:
        combined.extend(manifest.entries)
    return normalize_manifest(combined)


@dataclass(frozen=True, slots=True)
class DependencyPolicy:
    """Source policy plus package allow/block lists."""

    source_mode: str = "public_only"
    sources: tuple[str, ...] = (DEFAULT_PUBLIC_INDEX,)
    allowed_packages: frozenset[str] = field(default_factory=frozenset)
    blocked_packages: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.source_mode not in SOURCE_MODES:
            raise ValueError(f"source_mode must be one of {SOURCE_MODES}, got {self.source_mode!r}")
        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(
            self, "allowed_packages", frozenset(name.lower() for name in self.allowed_packages)
        )
        object.__setattr__(
            self, "blocked_packages", frozenset(name.lower() for name in self.blocked_packages)
        )

    def validate_sources(self) -> None:
        if self.source_mode != "internal_only":
            return
        if not self.sources:
            raise DependencyPolicyViolationError(
                "source_mode internal_only requires at least one internal package index"
            )
        public = [source for source in self.sources if _is_public_index(source)]
        if public:
            raise DependencyPolicyViolationError(
                f"source_mode internal_only forbids public source {public[0]}",
                metadata={"source": public[0]},
            )

    def check(self, manifest: DependencyManifest) -> None:
        """Raise ``DependencyPolicyViolationError`` when ``manifest`` breaks the policy."""

        self.validate_sources()
        for entry in manifest:
            if self.allowed_packages and entry.name not in self.allowed_packages:
                raise DependencyPolicyViolationError(
                    f"dependency policy violation for {entry.name}: not in allowed_packages",
                    metadata={"name": entry.name},
                )
            if entry.name in self.blocked_packages:
                raise DependencyPolicyViolationError(
                    f"dependency policy violation for {entry.name}: blocked by blocked_packages",
                    metadata={"name": entry.name},
                )

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> DependencyPolicy:
        return cls(
            source_mode=str(section.get("source_mode", "public_only")),
            sources=tuple(section.get("sources") or (DEFAULT_PUBLIC_INDEX,)),
            allowed_packages=frozenset(section.get("allowed_packages") or ()),
            blocked_packages=frozenset(section.get("blocked_packages") or ()),
        )


def _is_public_index(source: str) -> bool:
    return "pypi.org" in source or "pythonhosted.org" in source


def default_engine() -> str:
    version = sys.version_info
    return f"{sys.implementation.name}-{version.major}.{version.minor}.{version.micro}"


def default_platform() -> str:
    return f"{sys.platform}-{_platform.machine() or 'unknown'}"


def compute_env_id(
    *,
    engine: str,
    platform: str,
    source_mode: str,
    sources: Sequence[str],
    manifest: DependencyManifest,
) -> str:
    """Content address of an execution environment."""

    return sha256_json(
        {
            "engine": engine,
            "platform": platform,
            "source_mode": source_mode,
            "sources": list(sources),
            "manifest": manifest.to_list(),
        }
    )


__all__ = [
    "DependencyManifest",
    "DependencyPolicy",
    "DependencySpec",
    "check_additive",
    "compute_env_id",
    "default_engine",
    "default_platform",
    "merge_manifests",
    "normalize_manifest",
]
