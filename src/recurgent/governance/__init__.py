"""Governed mutation of role profiles, retention policies and artifact lifecycle."""

from recurgent.governance.proposals import (
    GOVERNANCE_ROLE,
    PROPOSAL_TYPES,
    ProposalEvent,
    ProposalRecord,
    ProposalService,
    validate_payload,
)

__all__ = [
    "GOVERNANCE_ROLE",
    "PROPOSAL_TYPES",
    "ProposalEvent",
    "ProposalRecord",
    "ProposalService",
    "validate_payload",
]
