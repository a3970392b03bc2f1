"""
recurgent — execution environment manager

Purpose
- Materialize isolated, content-addressed package environments for generated
  code that declares dependencies.

What should be included in this file
- ``CommandRunner`` protocol and a ``subprocess``-backed default.
- Resolution (``pip install --dry-run --report``) and installation
  (``pip install --target``) through the injected runner.
- Ready-marker cache with source-policy metadata.

Functional requirements
- A ready marker whose recorded ``source_mode``/``sources``/``env_id`` equal the
  current policy is a cache hit; anything else is a miss and the environment
  is rebuilt.
- Concurrent preparation of one ``env_id`` is single-flight.
- Failures raise typed dependency errors and leave no ready marker behind.
"""

from __future__ import annotations

import json
import subprocess
import sys
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import structlog

from recurgent.constants import ENV_READY_MARKER, ENV_SITE_PACKAGES_DIR
from recurgent.environment.manifest import (
    DependencyManifest,
    DependencyPolicy,
    compute_env_id,
    default_engine,
    default_platform,
)
from recurgent.errors import (
    DependencyActivationError,
    DependencyCommandError,
    DependencyInstallError,
    DependencyResolutionError,
)
from recurgent.persistence.state_db import utc_now_iso
from recurgent.utils.fs import atomic_write, safe_delete
from recurgent.utils.hashing import canonical_json

RESOLVE_REPORT_FILENAME = "resolve-report.json"


class CommandTimeoutError(RuntimeError):
    """Raised by a command runner when a command exceeds its timeout."""

    def __init__(self, command: Sequence[str], timeout_seconds: float) -> None:
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds
        super().__init__(f"command timed out after {timeout_seconds} seconds: {' '.join(command)}")


@dataclass(frozen=True, slots=True)
class CommandExecutionResult:
    """Normalized subprocess execution result."""

    command: tuple[str, ...]
    cwd: Path
    returncode: int
    stdout: str
    stderr: str


class CommandRunner(Protocol):
    """Injectable command runner used for deterministic/offline testing."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
    ) -> CommandExecutionResult: ...


class SubprocessCommandRunner:
    """Default command runner backed by ``subprocess.run``."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
    ) -> CommandExecutionResult:
        try:
            completed = subprocess.run(
                list(command),
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(command, timeout_seconds) from exc

        return CommandExecutionResult(
            command=tuple(command),
            cwd=cwd,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


@dataclass(frozen=True, slots=True)
class EnvironmentTimings:
    resolve_ms: float = 0.0
    install_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class ExecutionEnvironment:
    """A prepared (or cached) environment for one ``env_id``."""

    env_id: str
    env_dir: Path
    site_packages: Path
    ready: bool
    cache_hit: bool
    timings: EnvironmentTimings
    resolved: tuple[dict[str, str], ...] = ()


class EnvironmentManager:
    """Prepare and cache per-manifest package environments."""

    def __init__(
        self,
        env_root: Path | str,
        *,
        policy: DependencyPolicy | None = None,
        command_runner: CommandRunner | None = None,
        python_executable: str | None = None,
        resolve_timeout_seconds: float = 300.0,
        install_timeout_seconds: float = 600.0,
        engine: str | None = None,
        platform: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._env_root = Path(env_root).expanduser().resolve()
        self._policy = policy if policy is not None else DependencyPolicy()
        self._command_runner = command_runner or SubprocessCommandRunner()
        self._python_executable = python_executable or sys.executable
        self._resolve_timeout_seconds = resolve_timeout_seconds
        self._install_timeout_seconds = install_timeout_seconds
        self._engine = engine or default_engine()
        self._platform = platform or default_platform()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._locks_guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @property
    def env_root(self) -> Path:
        return self._env_root

    @property
    def policy(self) -> DependencyPolicy:
        return self._policy

    def env_id_for(self, manifest: DependencyManifest) -> str:
        return compute_env_id(
            engine=self._engine,
            platform=self._platform,
            source_mode=self._policy.source_mode,
            sources=self._policy.sources,
            manifest=manifest,
        )

    def ensure_environment(
        self,
        manifest: DependencyManifest,
        *,
        timeout_seconds: float | None = None,
    ) -> ExecutionEnvironment:
        """Return a ready environment for ``manifest``, building it on a cache miss."""

        self._policy.check(manifest)
        started = time.monotonic()
        env_id = self.env_id_for(manifest)
        env_dir = self._env_root / env_id

        cached = self._cached(env_id, env_dir, started)
        if cached is not None:
            return cached

        with self._lock_for(env_id):
            cached = self._cached(env_id, env_dir, started)
            if cached is not None:
                return cached
            return self._build(env_id, env_dir, manifest, started, timeout_seconds)

    def _cached(self, env_id: str, env_dir: Path, started: float) -> ExecutionEnvironment | None:
        marker = self._read_marker(env_dir)
        if marker is None or not self._marker_matches(marker, env_id):
            return None
        site_packages = env_dir / ENV_SITE_PACKAGES_DIR
        if not site_packages.is_dir():
            return None
        self._logger.debug("environment_cache_hit", env_id=env_id)
        return ExecutionEnvironment(
            env_id=env_id,
            env_dir=env_dir,
            site_packages=site_packages,
            ready=True,
            cache_hit=True,
            timings=EnvironmentTimings(total_ms=_elapsed_ms(started)),
            resolved=tuple(marker.get("resolved") or ()),
        )

    def _build(
        self,
        env_id: str,
        env_dir: Path,
        manifest: DependencyManifest,
        started: float,
        timeout_seconds: float | None,
    ) -> ExecutionEnvironment:
        if env_dir.exists():
            self._logger.info("environment_rebuild", env_id=env_id, reason="stale_marker")
            safe_delete(env_dir, self._env_root)
        site_packages = env_dir / ENV_SITE_PACKAGES_DIR
        site_packages.mkdir(parents=True, exist_ok=True)

        try:
            resolve_started = time.monotonic()
            resolved = self._resolve(env_dir, manifest, timeout_seconds)
            resolve_ms = _elapsed_ms(resolve_started)

            install_started = time.monotonic()
            self._install(env_dir, site_packages, manifest, timeout_seconds)
            install_ms = _elapsed_ms(install_started)

            self._activate(env_id, env_dir, site_packages, resolved)
        except DependencyCommandError as exc:
            self._logger.warning(
                "environment_prepare_failed",
                env_id=env_id,
                error_type=exc.error_type,
                detail=exc.message,
            )
            safe_delete(env_dir, self._env_root)
            raise

        timings = EnvironmentTimings(
            resolve_ms=resolve_ms,
            install_ms=install_ms,
            total_ms=_elapsed_ms(started),
        )
        self._logger.info(
            "environment_prepared",
            env_id=env_id,
            dependencies=manifest.requirements(),
            resolve_ms=timings.resolve_ms,
            install_ms=timings.install_ms,
        )
        return ExecutionEnvironment(
            env_id=env_id,
            env_dir=env_dir,
            site_packages=site_packages,
            ready=True,
            cache_hit=False,
            timings=timings,
            resolved=resolved,
        )

    def _resolve(
        self, env_dir: Path, manifest: DependencyManifest, timeout_seconds: float | None
    ) -> tuple[dict[str, str], ...]:
        if not manifest:
            return ()
        report_path = env_dir / RESOLVE_REPORT_FILENAME
        command = [
            *self._pip_prefix(),
            "--dry-run",
            "--ignore-installed",
            "--report",
            str(report_path),
            *self._index_args(),
            *manifest.requirements(),
        ]
        timeout = _bounded(self._resolve_timeout_seconds, timeout_seconds)
        self._run(
            command, cwd=env_dir, timeout_seconds=timeout, error_cls=DependencyResolutionError
        )

        if not report_path.is_file():
            raise DependencyResolutionError(
                "dependency resolution produced no report", command=command
            )
        try:
            report = json.loads(report_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise DependencyResolutionError(
                f"dependency resolution report is unreadable: {exc}", command=command
            ) from exc
        return _resolved_from_report(report)

    def _install(
        self,
        env_dir: Path,
        site_packages: Path,
        manifest: DependencyManifest,
        timeout_seconds: float | None,
    ) -> None:
        if not manifest:
            return
        command = [
            *self._pip_prefix(),
            "--target",
            str(site_packages),
            *self._index_args(),
            *manifest.requirements(),
        ]
        timeout = _bounded(self._install_timeout_seconds, timeout_seconds)
        self._run(command, cwd=env_dir, timeout_seconds=timeout, error_cls=DependencyInstallError)

    def _activate(
        self,
        env_id: str,
        env_dir: Path,
        site_packages: Path,
        resolved: tuple[dict[str, str], ...],
    ) -> None:
        if not site_packages.is_dir():
            raise DependencyActivationError(
                f"site-packages missing after install: {site_packages}",
                metadata={"env_id": env_id},
            )
        marker = {
            "env_id": env_id,
            "source_mode": self._policy.source_mode,
            "sources": list(self._policy.sources),
            "engine": self._engine,
            "platform": self._platform,
            "resolved": list(resolved),
            "ready_at": utc_now_iso(),
        }
        try:
            atomic_write(env_dir / ENV_READY_MARKER, canonical_json(marker) + "\n")
        except OSError as exc:
            raise DependencyActivationError(
                f"unable to write ready marker for {env_id}: {exc}",
                metadata={"env_id": env_id},
            ) from exc

    def _run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        error_cls: type[DependencyCommandError],
    ) -> CommandExecutionResult:
        try:
            result = self._command_runner.run(command, cwd=cwd, timeout_seconds=timeout_seconds)
        except CommandTimeoutError as exc:
            raise error_cls(
                str(exc),
                command=command,
                metadata={"reason": "timeout", "timeout_seconds": timeout_seconds},
            ) from exc
        except OSError as exc:
            raise error_cls(f"unable to run {command[0]}: {exc}", command=command) from exc
        if result.returncode != 0:
            action = "resolve" if error_cls is DependencyResolutionError else "install"
            raise error_cls(
                f"pip {action} failed ({result.returncode})",
                command=result.command,
                returncode=result.returncode,
                stderr=result.stderr or result.stdout,
            )
        return result

    def _pip_prefix(self) -> list[str]:
        return [
            self._python_executable,
            "-m",
            "pip",
            "install",
            "--disable-pip-version-check",
            "--no-input",
        ]

    def _index_args(self) -> list[str]:
        args: list[str] = []
        for index, source in enumerate(self._policy.sources):
            args.extend(("--index-url" if index == 0 else "--extra-index-url", source))
        return args

    def _read_marker(self, env_dir: Path) -> dict[str, Any] | None:
        path = env_dir / ENV_READY_MARKER
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._logger.warning("environment_marker_unreadable", path=str(path), detail=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    def _marker_matches(self, marker: dict[str, Any], env_id: str) -> bool:
        return (
            marker.get("env_id") == env_id
            and marker.get("source_mode") == self._policy.source_mode
            and marker.get("sources") == list(self._policy.sources)
        )

    def _lock_for(self, env_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(env_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[env_id] = lock
            return lock


def _resolved_from_report(report: object) -> tuple[dict[str, str], ...]:
    if not isinstance(report, dict):
        return ()
    resolved: list[dict[str, str]] = []
    for item in report.get("install") or ():
        metadata = item.get("metadata") if isinstance(item, dict) else None
        if not isinstance(metadata, dict):
            continue
        name = metadata.get("name")
        version = metadata.get("version")
        if isinstance(name, str) and isinstance(version, str):
            resolved.append({"name": name.lower(), "version": version})
    return tuple(sorted(resolved, key=lambda entry: entry["name"]))


def _bounded(configured: float, deadline: float | None) -> float:
    if deadline is None:
        return configured
    return max(0.001, min(configured, deadline))


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000.0, 3)


__all__ = [
    "CommandExecutionResult",
    "CommandRunner",
    "CommandTimeoutError",
    "EnvironmentManager",
    "EnvironmentTimings",
    "ExecutionEnvironment",
    "RESOLVE_REPORT_FILENAME",
    "SubprocessCommandRunner",
]
