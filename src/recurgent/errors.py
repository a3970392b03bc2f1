"""
recurgent — error taxonomy.

Purpose
- Define the typed failures raised inside the runtime and the mapping from
  those failures to the ``error_type`` strings carried by ``Outcome``.

Functional requirements
- Every expected failure has a stable ``error_type`` and a retriable flag.
- ``RegistryIntegrityError`` is deliberately outside the ``RecurgentError``
  hierarchy: it signals a broken runtime invariant and must never be turned
  into an outcome.
- ``ContextIntegrityError`` is the recoverable counterpart: the program that
  just ran leaked code objects into the shared context, which the caller rolls
  back and repairs.
- Failure classes (extrinsic / adaptive / intrinsic) feed lifecycle scoring.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum
from typing import Any, ClassVar, Final


class ErrorType(StrEnum):
    """Stable ``error_type`` values surfaced on outcomes."""

    TIMEOUT = "timeout"
    INVALID_CODE = "invalid_code"
    PROVIDER = "provider"
    DEPENDENCY_RESOLUTION_FAILED = "dependency_resolution_failed"
    DEPENDENCY_INSTALL_FAILED = "dependency_install_failed"
    DEPENDENCY_ACTIVATION_FAILED = "dependency_activation_failed"
    DEPENDENCY_MANIFEST_INCOMPATIBLE = "dependency_manifest_incompatible"
    INVALID_DEPENDENCY_MANIFEST = "invalid_dependency_manifest"
    DEPENDENCY_POLICY_VIOLATION = "dependency_policy_violation"
    EXECUTION = "execution"
    WORKER_CRASH = "worker_crash"
    NON_SERIALIZABLE_RESULT = "non_serializable_result"
    GUARDRAIL_VIOLATION = "guardrail_violation"
    GUARDRAIL_RETRY_EXHAUSTED = "guardrail_retry_exhausted"
    OUTCOME_REPAIR_RETRY_EXHAUSTED = "outcome_repair_retry_exhausted"
    LOW_UTILITY = "low_utility"
    CONTRACT_VIOLATION = "contract_violation"
    DELEGATION_DEPTH_EXCEEDED = "delegation_depth_exceeded"
    AUTHORITY_DENIED = "authority_denied"
    INVALID_PROPOSAL_PAYLOAD = "invalid_proposal_payload"
    INVALID_PROPOSAL_STATE = "invalid_proposal_state"
    NOT_FOUND = "not_found"


class FailureClass(StrEnum):
    EXTRINSIC = "extrinsic"
    INTRINSIC = "intrinsic"
    ADAPTIVE = "adaptive"


RETRIABLE_ERROR_TYPES: Final[frozenset[str]] = frozenset(
    {
        ErrorType.TIMEOUT,
        ErrorType.PROVIDER,
        ErrorType.INVALID_CODE,
        ErrorType.DEPENDENCY_RESOLUTION_FAILED,
        ErrorType.DEPENDENCY_INSTALL_FAILED,
        ErrorType.DEPENDENCY_ACTIVATION_FAILED,
        ErrorType.WORKER_CRASH,
        ErrorType.LOW_UTILITY,
    }
)

EXTRINSIC_ERROR_TYPES: Final[frozenset[str]] = frozenset(
    {
        ErrorType.TIMEOUT,
        ErrorType.PROVIDER,
        ErrorType.WORKER_CRASH,
        ErrorType.DEPENDENCY_RESOLUTION_FAILED,
        ErrorType.DEPENDENCY_INSTALL_FAILED,
        ErrorType.DEPENDENCY_ACTIVATION_FAILED,
        "network_error",
        "rate_limit",
        "rate_limited",
    }
)

ADAPTIVE_ERROR_TYPES: Final[frozenset[str]] = frozenset(
    {
        ErrorType.GUARDRAIL_VIOLATION,
        ErrorType.GUARDRAIL_RETRY_EXHAUSTED,
        ErrorType.OUTCOME_REPAIR_RETRY_EXHAUSTED,
        ErrorType.LOW_UTILITY,
        ErrorType.CONTRACT_VIOLATION,
        "parse_error",
        "missing_input",
        "invalid_format",
        "schema_mismatch",
        "wrong_tool_boundary",
    }
)


def is_retriable(error_type: str) -> bool:
    return error_type in RETRIABLE_ERROR_TYPES


def failure_class(error_type: str | None) -> FailureClass:
    """Classify an error type for lifecycle scoring."""

    if error_type is None:
        return FailureClass.INTRINSIC
    if error_type in EXTRINSIC_ERROR_TYPES:
        return FailureClass.EXTRINSIC
    if error_type in ADAPTIVE_ERROR_TYPES:
        return FailureClass.ADAPTIVE
    return FailureClass.INTRINSIC


class RecurgentError(RuntimeError):
    """Base class for typed, outcome-convertible runtime failures."""

    default_error_type: ClassVar[str] = ErrorType.EXECUTION
    default_retriable: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        retriable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type: str = str(self.default_error_type)
        self.retriable = self.default_retriable if retriable is None else bool(retriable)
        self.metadata: dict[str, Any] = dict(metadata or {})


class ProviderError(RecurgentError):
    """Normalized provider failure with deterministic machine-readable fields."""

    default_error_type = ErrorType.PROVIDER
    default_retriable = True

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        retryable: bool = True,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self.provider = provider.strip() or "provider"
        self.code = code.strip() or "provider"
        self.detail = " ".join(detail.split()) or "no detail"
        message = (
            f"provider={self.provider} code={self.code} "
            f"retryable={str(bool(retryable)).lower()} detail={self.detail}"
        )
        super().__init__(message, metadata=metadata, retriable=retryable)


class ProviderTimeoutError(ProviderError):
    default_error_type = ErrorType.TIMEOUT

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="timeout", detail=detail, retryable=True)


class InvalidCodeError(ProviderError):
    """Provider returned code that is empty or does not compile."""

    default_error_type = ErrorType.INVALID_CODE

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="invalid_code", detail=detail, retryable=True)


class InvalidDependencyManifestError(RecurgentError):
    default_error_type = ErrorType.INVALID_DEPENDENCY_MANIFEST


class DependencyManifestIncompatibleError(RecurgentError):
    """A role's new manifest drops or changes a previously declared dependency."""

    default_error_type = ErrorType.DEPENDENCY_MANIFEST_INCOMPATIBLE


class DependencyPolicyViolationError(RecurgentError):
    default_error_type = ErrorType.DEPENDENCY_POLICY_VIOLATION


class DependencyCommandError(RecurgentError):
    """Base for failures of a resolve/install command."""

    default_retriable = True

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr
        merged: dict[str, Any] = dict(metadata or {})
        if self.command:
            merged.setdefault("command", list(self.command))
        if returncode is not None:
            merged.setdefault("returncode", returncode)
        detail = stderr.strip()
        if detail:
            merged.setdefault("stderr", detail[-2000:])
        super().__init__(message, metadata=merged)


class DependencyResolutionError(DependencyCommandError):
    default_error_type = ErrorType.DEPENDENCY_RESOLUTION_FAILED


class DependencyInstallError(DependencyCommandError):
    default_error_type = ErrorType.DEPENDENCY_INSTALL_FAILED


class DependencyActivationError(DependencyCommandError):
    default_error_type = ErrorType.DEPENDENCY_ACTIVATION_FAILED


class ExecutionError(RecurgentError):
    """Uncaught failure inside generated code."""

    default_error_type = ErrorType.EXECUTION

    def __init__(
        self,
        message: str,
        *,
        exception_class: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        merged: dict[str, Any] = dict(metadata or {})
        if exception_class is not None:
            merged.setdefault("exception_class", exception_class)
        self.exception_class = exception_class
        super().__init__(message, metadata=merged)


class WorkerCrashError(RecurgentError):
    default_error_type = ErrorType.WORKER_CRASH
    default_retriable = True


class WorkerTimeoutError(WorkerCrashError):
    """A worker failed to answer before its deadline and was killed."""

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(
            message, metadata={"reason": "timeout", "timeout_seconds": timeout_seconds}
        )


class NonSerializableResultError(RecurgentError):
    default_error_type = ErrorType.NON_SERIALIZABLE_RESULT


class GuardrailViolationError(RecurgentError):
    """Terminal guardrail violation; no recovery is attempted."""

    default_error_type = ErrorType.GUARDRAIL_VIOLATION


class GuardrailRetryExhaustedError(RecurgentError):
    default_error_type = ErrorType.GUARDRAIL_RETRY_EXHAUSTED


class OutcomeRepairRetryExhaustedError(RecurgentError):
    default_error_type = ErrorType.OUTCOME_REPAIR_RETRY_EXHAUSTED


class DelegationDepthExceededError(RecurgentError):
    default_error_type = ErrorType.DELEGATION_DEPTH_EXCEEDED


class CallTimeoutError(RecurgentError):
    """The caller's total-latency bound expired."""

    default_error_type = ErrorType.TIMEOUT
    default_retriable = True


class ContextIntegrityError(RecurgentError):
    """The program that just ran stored a callable or module in the shared context."""

    default_error_type = ErrorType.GUARDRAIL_VIOLATION

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(
            message, metadata={"violation_type": "context_integrity_violation", "path": path}
        )
        self.path = path


class RegistryIntegrityError(RuntimeError):
    """Fatal: the shared context held code objects before the runtime handed it out."""

    def __init__(self, message: str, *, role: str | None = None, method: str | None = None) -> None:
        super().__init__(message)
        self.role = role
        self.method = method


def error_type_for(exc: BaseException) -> str:
    if isinstance(exc, RecurgentError):
        return exc.error_type
    return ErrorType.EXECUTION


__all__ = [
    "ADAPTIVE_ERROR_TYPES",
    "CallTimeoutError",
    "ContextIntegrityError",
    "DelegationDepthExceededError",
    "DependencyActivationError",
    "DependencyCommandError",
    "DependencyInstallError",
    "DependencyManifestIncompatibleError",
    "DependencyPolicyViolationError",
    "DependencyResolutionError",
    "EXTRINSIC_ERROR_TYPES",
    "ErrorType",
    "ExecutionError",
    "FailureClass",
    "GuardrailRetryExhaustedError",
    "GuardrailViolationError",
    "InvalidCodeError",
    "InvalidDependencyManifestError",
    "NonSerializableResultError",
    "OutcomeRepairRetryExhaustedError",
    "ProviderError",
    "ProviderTimeoutError",
    "RETRIABLE_ERROR_TYPES",
    "RecurgentError",
    "RegistryIntegrityError",
    "WorkerCrashError",
    "WorkerTimeoutError",
    "error_type_for",
    "failure_class",
    "is_retriable",
]
