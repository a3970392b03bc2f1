"""Unit tests for dependency manifest normalization, policy and env ids."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from recurgent.environment.manifest import (
    DependencyPolicy,
    check_additive,
    compute_env_id,
    merge_manifests,
    normalize_manifest,
)
from recurgent.errors import (
    DependencyManifestIncompatibleError,
    DependencyPolicyViolationError,
    InvalidDependencyManifestError,
)

_names = st.from_regex(r"[a-z][a-z0-9]{0,8}", fullmatch=True)
_versions = st.sampled_from(["", "1.0", "2.31.0", ">=2.0", "~=3.1"])


def _env_id(manifest: object, **overrides: object) -> str:
    params: dict[str, object] = {
        "engine": "cpython-3.12.1",
        "platform": "linux-x86_64",
        "source_mode": "public_only",
        "sources": ["https://pypi.org/simple"],
        "manifest": manifest,
    }
    params.update(overrides)
    return compute_env_id(**params)  # type: ignore[arg-type]


@settings(max_examples=50, deadline=None)
@given(entries=st.dictionaries(_names, _versions, max_size=6), data=st.data())
def test_normalization_is_order_and_case_independent(
    entries: dict[str, str], data: st.DataObject
) -> None:
    raw = [{"name": name, "version": version} for name, version in entries.items()]
    shuffled = data.draw(st.permutations(raw))
    shouted = [{"name": item["name"].upper(), "version": item["version"]} for item in shuffled]

    normalized = normalize_manifest(raw)

    assert normalize_manifest(shouted) == normalized
    assert normalize_manifest(normalized) == normalized
    assert list(normalized.names) == sorted(entries)
    assert _env_id(normalize_manifest(shuffled)) == _env_id(normalized)


def test_requirements_render_pins_and_ranges() -> None:
    manifest = normalize_manifest(
        [
            {"name": "Requests", "version": "2.31.0"},
            {"name": "numpy", "version": ">=1.26"},
            {"name": "rich"},
        ]
    )

    assert manifest.requirements() == ["numpy>=1.26", "requests==2.31.0", "rich"]


def test_duplicate_identical_entries_collapse() -> None:
    manifest = normalize_manifest([{"name": "rich"}, {"name": "RICH", "version": ""}])

    assert len(manifest) == 1


@pytest.mark.parametrize(
    "raw",
    [
        "requests",
        [{"name": ""}],
        [{"name": "bad name"}],
        [{"name": "ok", "version": 3}],
        [{"name": "ok", "version": "1.0; rm -rf"}],
        [{"name": "ok", "version": "1"}, {"name": "ok", "version": "2"}],
        ["ok"],
    ],
)
def test_invalid_manifests_are_rejected(raw: object) -> None:
    with pytest.raises(InvalidDependencyManifestError):
        normalize_manifest(raw)


def test_env_id_changes_with_inputs() -> None:
    manifest = normalize_manifest([{"name": "rich", "version": "13.7.0"}])
    baseline = _env_id(manifest)

    assert _env_id(manifest) == baseline
    assert _env_id(manifest, source_mode="internal_only") != baseline
    assert _env_id(manifest, sources=["https://mirror.internal/simple"]) != baseline
    assert _env_id(manifest, engine="cpython-3.13.0") != baseline
    assert _env_id(normalize_manifest([{"name": "rich"}])) != baseline


def test_check_additive_requires_prior_entries_unchanged() -> None:
    previous = normalize_manifest([{"name": "rich", "version": "13.7.0"}])

    grown = normalize_manifest([{"name": "rich", "version": "13.7.0"}, {"name": "attrs"}])
    bumped = normalize_manifest([{"name": "rich", "version": "14.0.0"}])

    check_additive(previous, grown, role="r")
    with pytest.raises(DependencyManifestIncompatibleError) as excinfo:
        check_additive(previous, bumped, role="r")
    assert excinfo.value.metadata["changed"] == ["rich"]
    with pytest.raises(DependencyManifestIncompatibleError):
        check_additive(previous, normalize_manifest([]), role="r")
    unpinned = normalize_manifest([{"name": "attrs"}])
    with pytest.raises(DependencyManifestIncompatibleError):
        check_additive(unpinned, normalize_manifest([{"name": "rich"}]), role="r")


def test_merge_manifests_rejects_conflicts() -> None:
    first = normalize_manifest([{"name": "rich", "version": "13.7.0"}])
    second = normalize_manifest([{"name": "attrs"}])

    assert merge_manifests([first, second]).names == ("attrs", "rich")
    with pytest.raises(InvalidDependencyManifestError):
        merge_manifests([first, normalize_manifest([{"name": "rich", "version": "14.0.0"}])])


def test_policy_allow_and_block_lists() -> None:
    manifest = normalize_manifest([{"name": "requests"}])

    DependencyPolicy().check(manifest)
    DependencyPolicy(allowed_packages=frozenset({"Requests"})).check(manifest)
    with pytest.raises(DependencyPolicyViolationError, match="not in allowed_packages"):
        DependencyPolicy(allowed_packages=frozenset({"rich"})).check(manifest)
    with pytest.raises(DependencyPolicyViolationError, match="blocked_packages"):
        DependencyPolicy(blocked_packages=frozenset({"requests"})).check(manifest)


def test_internal_only_forbids_public_sources() -> None:
    manifest = normalize_manifest([])

    internal = DependencyPolicy(source_mode="internal_only", sources=("https://pkgs.corp/simple",))
    internal.check(manifest)
    with pytest.raises(DependencyPolicyViolationError, match="forbids public source"):
        DependencyPolicy(source_mode="internal_only").check(manifest)
    with pytest.raises(DependencyPolicyViolationError, match="at least one"):
        DependencyPolicy(source_mode="internal_only", sources=()).check(manifest)
    with pytest.raises(ValueError):
        DependencyPolicy(source_mode="mirror_first")
