"""
recurgent — runtime for generated, versioned role implementations.

Purpose
- Package root. Defines public package-level metadata and import boundaries.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Heavy components (controller, runtime wiring) are imported from their modules.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
