"""Code generation: provider contract and the bounded retry engine."""

from recurgent.synthesis.generation import (
    GeneratedArtifact,
    GenerationEngine,
    GenerationResult,
    compute_checksum,
    validate_payload,
)
from recurgent.synthesis.provider import (
    CodeProvider,
    GenerationRequest,
    normalize_provider_exception,
    provider_name,
)

__all__ = [
    "CodeProvider",
    "GeneratedArtifact",
    "GenerationEngine",
    "GenerationRequest",
    "GenerationResult",
    "compute_checksum",
    "normalize_provider_exception",
    "provider_name",
    "validate_payload",
]
