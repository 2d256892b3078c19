"""
Deal Stage State Machine
Role-gated transition table for the trade deal lifecycle
"""

import logging
from enum import Enum
from typing import Dict, Optional, Set

from models import DealStage, NotificationPriority

logger = logging.getLogger(__name__)


class DealRole(Enum):
    """Party role derived from the caller's wallet, never self-reported"""

    BUYER = "buyer"
    SELLER = "seller"


def normalize_wallet(wallet: Optional[str]) -> str:
    return (wallet or "").strip().lower()


def resolve_role(caller_wallet: str, buyer_wallet: str, seller_wallet: str) -> Optional[DealRole]:
    """Return the caller's role on a deal, or None when the caller is not a party"""
    caller = normalize_wallet(caller_wallet)
    if not caller:
        return None
    if caller == normalize_wallet(buyer_wallet):
        return DealRole.BUYER
    if caller == normalize_wallet(seller_wallet):
        return DealRole.SELLER
    return None


class DealStateValidator:
    """Validates deal stage transitions per (current stage, actor role)"""

    VALID_TRANSITIONS: Dict[str, Dict[DealRole, Set[str]]] = {
        DealStage.DRAFT.value: {
            DealRole.BUYER: {DealStage.LOI_PENDING.value, DealStage.CANCELLED.value},
            DealRole.SELLER: {DealStage.CANCELLED.value},
        },
        DealStage.LOI_PENDING.value: {
            DealRole.BUYER: {DealStage.LOI_SIGNED.value, DealStage.CANCELLED.value},
            DealRole.SELLER: {DealStage.LOI_SIGNED.value, DealStage.CANCELLED.value},
        },
        DealStage.LOI_SIGNED.value: {
            DealRole.BUYER: {DealStage.ESCROW_PENDING.value, DealStage.CANCELLED.value},
            DealRole.SELLER: {DealStage.CANCELLED.value},
        },
        DealStage.ESCROW_PENDING.value: {
            DealRole.BUYER: {DealStage.ESCROW_FUNDED.value},
            DealRole.SELLER: set(),
        },
        DealStage.ESCROW_FUNDED.value: {
            DealRole.BUYER: set(),
            DealRole.SELLER: {DealStage.IN_PRODUCTION.value},
        },
        DealStage.IN_PRODUCTION.value: {
            DealRole.BUYER: set(),
            DealRole.SELLER: {DealStage.QUALITY_CHECK.value},
        },
        DealStage.QUALITY_CHECK.value: {
            DealRole.BUYER: {DealStage.SHIPPING.value, DealStage.DISPUTED.value},
            DealRole.SELLER: {DealStage.SHIPPING.value},
        },
        DealStage.SHIPPING.value: {
            DealRole.BUYER: set(),
            DealRole.SELLER: {DealStage.DELIVERED.value},
        },
        DealStage.DELIVERED.value: {
            DealRole.BUYER: {DealStage.COMPLETED.value, DealStage.DISPUTED.value},
            DealRole.SELLER: set(),
        },
        # Terminal stages
        DealStage.COMPLETED.value: {DealRole.BUYER: set(), DealRole.SELLER: set()},
        DealStage.CANCELLED.value: {DealRole.BUYER: set(), DealRole.SELLER: set()},
        DealStage.DISPUTED.value: {DealRole.BUYER: set(), DealRole.SELLER: set()},
    }

    # Dispute resolution is the only way out of DISPUTED and is not a party action
    RESOLUTION_TRANSITIONS: Dict[str, Set[str]] = {
        DealStage.DISPUTED.value: {DealStage.COMPLETED.value, DealStage.CANCELLED.value},
    }

    @classmethod
    def get_valid_transitions(cls, current_stage: str, role: DealRole) -> Set[str]:
        """Get all stages the role may move the deal to"""
        return set(cls.VALID_TRANSITIONS.get(current_stage, {}).get(role, set()))

    @classmethod
    def is_valid_transition(cls, current_stage: str, new_stage: str, role: DealRole) -> bool:
        return new_stage in cls.get_valid_transitions(current_stage, role)

    @classmethod
    def is_valid_resolution(cls, current_stage: str, new_stage: str) -> bool:
        return new_stage in cls.RESOLUTION_TRANSITIONS.get(current_stage, set())

    @classmethod
    def is_terminal_stage(cls, stage: str) -> bool:
        """Check if no party may move the deal any further"""
        transitions = cls.VALID_TRANSITIONS.get(stage, {})
        return all(len(targets) == 0 for targets in transitions.values())

    @classmethod
    def is_known_stage(cls, stage: str) -> bool:
        return stage in cls.VALID_TRANSITIONS


STAGE_LABELS: Dict[str, str] = {
    DealStage.DRAFT.value: "Draft",
    DealStage.LOI_PENDING.value: "LOI Pending",
    DealStage.LOI_SIGNED.value: "LOI Signed",
    DealStage.ESCROW_PENDING.value: "Escrow Pending",
    DealStage.ESCROW_FUNDED.value: "Escrow Funded",
    DealStage.IN_PRODUCTION.value: "In Production",
    DealStage.QUALITY_CHECK.value: "Quality Check",
    DealStage.SHIPPING.value: "Shipping",
    DealStage.DELIVERED.value: "Delivered",
    DealStage.COMPLETED.value: "Completed",
    DealStage.DISPUTED.value: "Disputed",
    DealStage.CANCELLED.value: "Cancelled",
}


def format_stage(stage: str) -> str:
    return STAGE_LABELS.get(stage, stage.replace("_", " ").title())


# (title, message, priority) sent to the counterparty when a deal enters a stage
STAGE_NOTIFICATIONS: Dict[str, tuple] = {
    DealStage.LOI_PENDING.value: (
        "Letter of Intent Pending",
        "A Letter of Intent is awaiting your signature",
        NotificationPriority.HIGH.value,
    ),
    DealStage.LOI_SIGNED.value: (
        "Letter of Intent Signed",
        "The Letter of Intent has been signed",
        NotificationPriority.MEDIUM.value,
    ),
    DealStage.ESCROW_PENDING.value: (
        "Escrow Funding Required",
        "The deal is ready for escrow funding",
        NotificationPriority.HIGH.value,
    ),
    DealStage.ESCROW_FUNDED.value: (
        "Escrow Funded",
        "Escrow has been funded, production can begin",
        NotificationPriority.HIGH.value,
    ),
    DealStage.IN_PRODUCTION.value: (
        "Production Started",
        "The seller has started production",
        NotificationPriority.MEDIUM.value,
    ),
    DealStage.QUALITY_CHECK.value: (
        "Quality Check",
        "Goods are ready for quality inspection",
        NotificationPriority.MEDIUM.value,
    ),
    DealStage.SHIPPING.value: (
        "Goods Shipped",
        "The goods are in transit",
        NotificationPriority.HIGH.value,
    ),
    DealStage.DELIVERED.value: (
        "Goods Delivered",
        "The goods have been delivered, please confirm receipt",
        NotificationPriority.HIGH.value,
    ),
    DealStage.COMPLETED.value: (
        "Deal Completed",
        "The deal has been completed",
        NotificationPriority.MEDIUM.value,
    ),
    DealStage.CANCELLED.value: (
        "Deal Cancelled",
        "The deal has been cancelled",
        NotificationPriority.HIGH.value,
    ),
    DealStage.DISPUTED.value: (
        "Dispute Opened",
        "A dispute has been opened on this deal",
        NotificationPriority.CRITICAL.value,
    ),
}


def stage_notification(stage: str, deal_reference: str) -> tuple:
    title, message, priority = STAGE_NOTIFICATIONS.get(
        stage,
        ("Deal Updated", f"Deal moved to {format_stage(stage)}", NotificationPriority.MEDIUM.value),
    )
    return title, f"{message} ({deal_reference})", priority
