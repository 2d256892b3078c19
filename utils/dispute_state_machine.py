"""
Dispute Status State Machine
Forward-only escalation with a withdrawal side exit
"""

from typing import Dict, Set

from models import DisputeStatus

RESOLVED_STATUSES: Set[str] = {
    DisputeStatus.RESOLVED_BUYER.value,
    DisputeStatus.RESOLVED_SELLER.value,
    DisputeStatus.RESOLVED_SPLIT.value,
}

PENDING_STATUSES: Set[str] = {
    DisputeStatus.SUBMITTED.value,
    DisputeStatus.UNDER_REVIEW.value,
    DisputeStatus.EVIDENCE_REQUESTED.value,
}

RESOLUTION_OUTCOMES: Dict[str, str] = {
    "buyer": DisputeStatus.RESOLVED_BUYER.value,
    "seller": DisputeStatus.RESOLVED_SELLER.value,
    "split": DisputeStatus.RESOLVED_SPLIT.value,
}


class DisputeStateValidator:
    """Validates dispute status transitions"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        DisputeStatus.SUBMITTED.value: {
            DisputeStatus.UNDER_REVIEW.value,
            DisputeStatus.EVIDENCE_REQUESTED.value,
            DisputeStatus.WITHDRAWN.value,
        },
        DisputeStatus.UNDER_REVIEW.value: {
            DisputeStatus.EVIDENCE_REQUESTED.value,
            DisputeStatus.MEDIATION.value,
            DisputeStatus.ARBITRATION.value,
            DisputeStatus.WITHDRAWN.value,
        },
        DisputeStatus.EVIDENCE_REQUESTED.value: {
            DisputeStatus.MEDIATION.value,
            DisputeStatus.ARBITRATION.value,
            DisputeStatus.WITHDRAWN.value,
        },
        DisputeStatus.MEDIATION.value: {
            DisputeStatus.ARBITRATION.value,
            DisputeStatus.WITHDRAWN.value,
        } | RESOLVED_STATUSES,
        DisputeStatus.ARBITRATION.value: {
            DisputeStatus.WITHDRAWN.value,
        } | RESOLVED_STATUSES,
        # Terminal
        DisputeStatus.RESOLVED_BUYER.value: set(),
        DisputeStatus.RESOLVED_SELLER.value: set(),
        DisputeStatus.RESOLVED_SPLIT.value: set(),
        DisputeStatus.WITHDRAWN.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: str, new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: str) -> Set[str]:
        return set(cls.VALID_TRANSITIONS.get(current_status, set()))

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def is_resolved(cls, status: str) -> bool:
        return status in RESOLVED_STATUSES
