"""Public observability primitives: structured logging and per-call records."""

from recurgent.observability.call_log import (
    CallRecord,
    CallRecordSink,
    InMemoryCallLog,
    JsonLinesCallLog,
)
from recurgent.observability.logging import (
    LoggingConfig,
    RuntimeLogging,
    correlation_scope,
    current_correlation,
    redact_secrets,
)

__all__ = [
    "CallRecord",
    "CallRecordSink",
    "InMemoryCallLog",
    "JsonLinesCallLog",
    "LoggingConfig",
    "RuntimeLogging",
    "correlation_scope",
    "current_correlation",
    "redact_secrets",
]
