"""Shared fixtures: a migrated state DB and the stores built on it."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from recurgent.artifacts.lifecycle import LifecycleEngine, LifecyclePolicy
from recurgent.artifacts.store import ArtifactStore
from recurgent.guardrails.profile_registry import RoleProfileRegistry
from recurgent.persistence.state_db import StateDB

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def state_db(tmp_path: Path) -> StateDB:
    db = StateDB(tmp_path / "state" / "recurgent.sqlite3")
    db.migrate()
    return db


@pytest.fixture
def store(state_db: StateDB) -> ArtifactStore:
    return ArtifactStore(state_db)


@pytest.fixture
def registry(state_db: StateDB) -> RoleProfileRegistry:
    return RoleProfileRegistry(state_db)


@pytest.fixture
def lifecycle(store: ArtifactStore) -> LifecycleEngine:
    return LifecycleEngine(store, LifecyclePolicy(enforcement_enabled=True))
