"""
Dispute Service
Escalation sub-state-machine attached to disputed trade deals

Opening a dispute moves the deal to ``disputed`` in the same transaction that creates
the dispute. Only a resolution drives the deal on, to ``cancelled`` (buyer wins) or
``completed`` (seller wins or split); a withdrawn dispute leaves the deal disputed.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import async_managed_session
from models import (
    Deal, DealStage, Dispute, DisputeStatus, DisputeType, NotificationPriority, TimelineEventType, utc_now
)
from services.deal_service import DealService, add_timeline_event, deal_action_url, dispatch_all, require_caller
from services.errors import (
    ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
)
from utils.atomic_transactions import ConditionalUpdateMissed, retry_on_conflict, update_if
from utils.deal_state_machine import DealRole, DealStateValidator, format_stage
from utils.decimal_precision import MonetaryDecimal
from utils.dispute_state_machine import (
    PENDING_STATUSES, RESOLUTION_OUTCOMES, RESOLVED_STATUSES, DisputeStateValidator
)

logger = logging.getLogger(__name__)

DISPUTE_TYPES = {t.value for t in DisputeType}

# Deal stage each resolution outcome drives the deal to
OUTCOME_DEAL_STAGE = {
    "buyer": DealStage.CANCELLED.value,
    "seller": DealStage.COMPLETED.value,
    "split": DealStage.COMPLETED.value,
}


class DisputePage(NamedTuple):
    disputes: List[Dispute]
    total: int
    page: int
    limit: int


def is_platform_admin(wallet: str) -> bool:
    return wallet in Config.PLATFORM_ADMIN_WALLETS


class DisputeService:
    """Dispute lifecycle operations"""

    @classmethod
    async def _load_dispute(cls, session: AsyncSession, dispute_id: int) -> Dispute:
        dispute = (await session.execute(
            select(Dispute).where(Dispute.id == dispute_id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        return dispute

    @classmethod
    async def _move_status(
        cls,
        session: AsyncSession,
        dispute: Dispute,
        target_status: str,
        extra_values: Optional[Dict[str, Any]] = None,
    ):
        """Forward-only status change, conditional on the status read"""
        if not DisputeStateValidator.is_valid_transition(dispute.status, target_status):
            raise InvalidTransitionError(
                dispute.status, target_status,
                DisputeStateValidator.get_valid_transitions(dispute.status),
                entity="dispute",
            )
        updated = await update_if(
            session,
            Dispute,
            where=[Dispute.id == dispute.id, Dispute.status == dispute.status],
            values={"status": target_status, "updated_at": utc_now(), **(extra_values or {})},
        )
        if updated != 1:
            raise ConflictError(
                f"Dispute {dispute.id} changed concurrently, expected status {dispute.status}",
                details={"dispute_id": dispute.id},
            )

    @classmethod
    def _party_notifications(
        cls, deal: Deal, dispute: Dispute, notification_type: str, title: str, message: str, priority: str
    ) -> List[Dict[str, Any]]:
        return [
            {
                "recipient_wallet": party,
                "notification_type": notification_type,
                "title": title,
                "message": message,
                "data": {
                    "dealId": deal.id,
                    "dealReference": deal.reference,
                    "disputeId": dispute.id,
                    "status": dispute.status,
                },
                "priority": priority,
                "action_url": f"{deal_action_url(deal.id)}/dispute",
            }
            for party in (deal.buyer_wallet, deal.seller_wallet)
        ]

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    @classmethod
    async def open_dispute(
        cls,
        deal_id: int,
        caller_wallet: str,
        description: str,
        dispute_type: str = DisputeType.OTHER.value,
        claimed_amount=0,
        currency: Optional[str] = None,
    ) -> Dispute:
        """
        Open a dispute on a deal in ``quality_check`` or ``delivered``.

        The deal moves to ``disputed`` and the dispute is created as ``submitted`` with
        a response deadline, atomically. The respondent is notified after commit.
        """
        caller = require_caller(caller_wallet)
        if not description or not description.strip():
            raise ValidationError("Dispute description is required", details={"field": "description"})
        if dispute_type not in DISPUTE_TYPES:
            raise ValidationError(f"Unknown dispute type '{dispute_type}'", details={"field": "dispute_type"})
        claimed = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_decimal(claimed_amount, "claimed_amount"))
        if claimed < 0:
            raise ValidationError("claimed_amount cannot be negative", details={"field": "claimed_amount"})

        deal, dispute = await cls._open(deal_id, caller, description.strip(), dispute_type, claimed, currency)

        logger.warning(
            f"⚠️ DISPUTE_OPENED: {deal.reference} dispute={dispute.id} type={dispute_type} "
            f"by={caller} claimed={claimed}"
        )
        respondent = dispute.respondent_wallet
        dispatch_all([
            {
                "recipient_wallet": respondent,
                "notification_type": "dispute_opened",
                "title": "Dispute Opened",
                "message": (
                    f"A dispute was opened on {deal.reference}: {dispute_type.replace('_', ' ')}. "
                    f"Please respond within {Config.DISPUTE_RESPONSE_DAYS} days"
                ),
                "data": {"dealId": deal.id, "dealReference": deal.reference, "disputeId": dispute.id},
                "priority": NotificationPriority.CRITICAL.value,
                "action_url": f"{deal_action_url(deal.id)}/dispute",
            },
        ])
        return dispute

    @classmethod
    @retry_on_conflict(attempts=Config.STAGE_CHANGE_MAX_RETRIES, operation="open_dispute")
    async def _open(cls, deal_id: int, caller: str, description: str, dispute_type: str, claimed: Decimal, currency):
        async with async_managed_session() as session:
            deal = await DealService._load_deal(session, deal_id)
            role = DealService._party_role(deal, caller)
            target = DealStage.DISPUTED.value
            if not DealStateValidator.is_valid_transition(deal.stage, target, role):
                raise InvalidTransitionError(
                    deal.stage, target, DealStateValidator.get_valid_transitions(deal.stage, role)
                )

            await DealService.apply_transition(
                session, deal, target, caller,
                metadata={"disputeType": dispute_type},
                timeline_title="Dispute Opened",
            )

            now = utc_now()
            respondent = deal.seller_wallet if role == DealRole.BUYER else deal.buyer_wallet
            dispute = Dispute(
                deal_id=deal.id,
                dispute_type=dispute_type,
                status=DisputeStatus.SUBMITTED.value,
                initiator_wallet=caller,
                respondent_wallet=respondent,
                claimed_amount=claimed,
                currency=(currency or deal.currency).upper(),
                description=description,
                resolution_fee=Config.DISPUTE_RESOLUTION_FEE_USD,
                deadline=now + timedelta(days=Config.DISPUTE_RESPONSE_DAYS),
                created_at=now,
                updated_at=now,
            )
            session.add(dispute)
            await session.flush()

            add_timeline_event(
                session, deal.id, TimelineEventType.DISPUTE.value, "Dispute Submitted", caller,
                description=description,
                metadata={"disputeId": dispute.id, "disputeType": dispute_type, "claimedAmount": str(claimed)},
            )
            deal = await DealService._load_deal(session, deal_id)
        return deal, dispute

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @classmethod
    async def _admin_advance(
        cls,
        dispute_id: int,
        caller_wallet: str,
        target_status: str,
        notes: Optional[str] = None,
        arbiter_wallet: Optional[str] = None,
    ) -> Dispute:
        caller = require_caller(caller_wallet)
        if not is_platform_admin(caller):
            raise ForbiddenError("Platform admin access required")

        extra: Dict[str, Any] = {}
        if notes:
            extra["resolution_notes"] = notes
        if arbiter_wallet:
            extra["arbiter_wallet"] = arbiter_wallet

        async with async_managed_session() as session:
            dispute = await cls._load_dispute(session, dispute_id)
            deal = await DealService._load_deal(session, dispute.deal_id)
            await cls._move_status(session, dispute, target_status, extra)
            add_timeline_event(
                session, deal.id, TimelineEventType.DISPUTE.value,
                f"Dispute {target_status.replace('_', ' ').title()}", caller,
                description=notes,
                metadata={"disputeId": dispute.id, "status": target_status, "arbiter": arbiter_wallet},
            )
            dispute = await cls._load_dispute(session, dispute_id)

        logger.info(f"DISPUTE_STATUS_CHANGED: dispute={dispute_id} -> {target_status} by admin {caller}")

        priority = (
            NotificationPriority.HIGH.value
            if target_status == DisputeStatus.ARBITRATION.value
            else NotificationPriority.MEDIUM.value
        )
        dispatch_all(cls._party_notifications(
            deal, dispute, "dispute_update", "Dispute Update",
            f"The dispute on {deal.reference} is now {target_status.replace('_', ' ')}",
            priority,
        ))
        return dispute

    @classmethod
    async def begin_review(cls, dispute_id: int, caller_wallet: str, notes: Optional[str] = None) -> Dispute:
        return await cls._admin_advance(dispute_id, caller_wallet, DisputeStatus.UNDER_REVIEW.value, notes)

    @classmethod
    async def request_evidence(cls, dispute_id: int, caller_wallet: str, notes: Optional[str] = None) -> Dispute:
        return await cls._admin_advance(dispute_id, caller_wallet, DisputeStatus.EVIDENCE_REQUESTED.value, notes)

    @classmethod
    async def start_mediation(cls, dispute_id: int, caller_wallet: str, notes: Optional[str] = None) -> Dispute:
        return await cls._admin_advance(dispute_id, caller_wallet, DisputeStatus.MEDIATION.value, notes)

    @classmethod
    async def assign_arbiter(
        cls, dispute_id: int, caller_wallet: str, arbiter_wallet: str, notes: Optional[str] = None
    ) -> Dispute:
        """Escalate to arbitration under the given arbiter"""
        arbiter = (arbiter_wallet or "").strip().lower()
        if not arbiter:
            raise ValidationError("arbiter_wallet is required", details={"field": "arbiter_wallet"})
        return await cls._admin_advance(
            dispute_id, caller_wallet, DisputeStatus.ARBITRATION.value, notes, arbiter_wallet=arbiter
        )

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    @classmethod
    async def withdraw_dispute(cls, dispute_id: int, caller_wallet: str, reason: Optional[str] = None) -> Dispute:
        """Initiator withdraws; the deal stays disputed"""
        caller = require_caller(caller_wallet)

        async with async_managed_session() as session:
            dispute = await cls._load_dispute(session, dispute_id)
            if dispute.initiator_wallet != caller:
                raise ForbiddenError("Only the dispute initiator can withdraw it")
            deal = await DealService._load_deal(session, dispute.deal_id)
            await cls._move_status(session, dispute, DisputeStatus.WITHDRAWN.value, {"resolved_at": utc_now()})
            add_timeline_event(
                session, deal.id, TimelineEventType.DISPUTE.value, "Dispute Withdrawn", caller,
                description=reason,
                metadata={"disputeId": dispute.id, "status": DisputeStatus.WITHDRAWN.value},
            )
            dispute = await cls._load_dispute(session, dispute_id)

        logger.info(f"DISPUTE_WITHDRAWN: dispute={dispute_id} deal={deal.reference} by={caller}")
        dispatch_all(cls._party_notifications(
            deal, dispute, "dispute_update", "Dispute Withdrawn",
            f"The dispute on {deal.reference} was withdrawn", NotificationPriority.MEDIUM.value,
        ))
        return dispute

    @classmethod
    async def resolve_dispute(
        cls, dispute_id: int, caller_wallet: str, outcome: str, notes: Optional[str] = None
    ) -> Dispute:
        """
        Resolve a dispute in mediation or arbitration.

        ``outcome`` is ``buyer``, ``seller`` or ``split``. The dispute becomes
        ``resolved_<outcome>`` and the deal leaves ``disputed`` for ``cancelled`` (buyer)
        or ``completed`` (seller, split) in the same transaction.
        """
        caller = require_caller(caller_wallet)
        outcome = (outcome or "").strip().lower()
        if outcome not in RESOLUTION_OUTCOMES:
            raise ValidationError(
                f"Unknown resolution outcome '{outcome}'",
                details={"field": "outcome", "allowed": sorted(RESOLUTION_OUTCOMES)},
            )
        target_status = RESOLUTION_OUTCOMES[outcome]
        target_stage = OUTCOME_DEAL_STAGE[outcome]

        async with async_managed_session() as session:
            dispute = await cls._load_dispute(session, dispute_id)
            if caller != dispute.arbiter_wallet and not is_platform_admin(caller):
                raise ForbiddenError("Only the assigned arbiter or a platform admin can resolve disputes")

            deal = await DealService._load_deal(session, dispute.deal_id)
            if not DealStateValidator.is_valid_resolution(deal.stage, target_stage):
                raise InvalidTransitionError(
                    deal.stage, target_stage, DealStateValidator.RESOLUTION_TRANSITIONS.get(deal.stage, set())
                )

            now = utc_now()
            await cls._move_status(
                session, dispute, target_status,
                {"resolution_notes": notes, "resolved_at": now},
            )
            try:
                await DealService.apply_transition(
                    session, deal, target_stage, caller,
                    metadata={"disputeId": dispute.id, "outcome": outcome},
                    timeline_title=f"Dispute Resolved: {format_stage(target_stage)}",
                )
            except ConditionalUpdateMissed:
                raise ConflictError(
                    f"Deal {deal.reference} changed while resolving dispute {dispute.id}",
                    details={"dispute_id": dispute.id},
                )
            add_timeline_event(
                session, deal.id, TimelineEventType.DISPUTE.value, "Dispute Resolved", caller,
                description=notes,
                metadata={"disputeId": dispute.id, "status": target_status, "outcome": outcome},
            )
            dispute = await cls._load_dispute(session, dispute_id)
            deal = await DealService._load_deal(session, deal.id)

        logger.info(
            f"✅ DISPUTE_RESOLVED: dispute={dispute_id} deal={deal.reference} outcome={outcome} "
            f"deal_stage={deal.stage} by={caller}"
        )
        dispatch_all(cls._party_notifications(
            deal, dispute, "dispute_resolved", "Dispute Resolved",
            f"The dispute on {deal.reference} was resolved in favour of the {outcome}"
            if outcome != "split" else f"The dispute on {deal.reference} was resolved with a split outcome",
            NotificationPriority.HIGH.value,
        ))
        return dispute

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @classmethod
    async def get_dispute(cls, dispute_id: int, caller_wallet: str) -> Dispute:
        caller = require_caller(caller_wallet)
        async with async_managed_session() as session:
            dispute = await cls._load_dispute(session, dispute_id)
            deal = await DealService._load_deal(session, dispute.deal_id)
        if not is_platform_admin(caller) and caller not in (
            deal.buyer_wallet, deal.seller_wallet, dispute.arbiter_wallet
        ):
            raise ForbiddenError()
        return dispute

    @classmethod
    async def get_dispute_stats(cls) -> Dict[str, Any]:
        """Counts by status and value at risk, recomputed from the table"""
        async with async_managed_session() as session:
            rows = (await session.execute(
                select(Dispute.status, func.count(Dispute.id)).group_by(Dispute.status)
            )).all()
            open_value = (await session.execute(
                select(func.coalesce(func.sum(Dispute.claimed_amount), 0)).where(
                    Dispute.status.notin_(list(RESOLVED_STATUSES | {DisputeStatus.WITHDRAWN.value}))
                )
            )).scalar_one()

        counts = {status: int(count) for status, count in rows}
        return {
            "total": sum(counts.values()),
            "pending": sum(counts.get(s, 0) for s in PENDING_STATUSES),
            "in_mediation": counts.get(DisputeStatus.MEDIATION.value, 0),
            "in_arbitration": counts.get(DisputeStatus.ARBITRATION.value, 0),
            "resolved": sum(counts.get(s, 0) for s in RESOLVED_STATUSES),
            "withdrawn": counts.get(DisputeStatus.WITHDRAWN.value, 0),
            "total_value": MonetaryDecimal.quantize_ledger(Decimal(str(open_value))),
        }

    @classmethod
    async def list_disputes(
        cls,
        caller_wallet: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> DisputePage:
        """
        Admins see every dispute; parties see disputes on their own deals.
        ``status='resolved'`` matches every resolved outcome.
        """
        caller = require_caller(caller_wallet)
        page = max(1, int(page))
        limit = min(max(1, int(limit)), 100)

        filters = []
        if not is_platform_admin(caller):
            filters.append(or_(Deal.buyer_wallet == caller, Deal.seller_wallet == caller))
        if status:
            if status == "resolved":
                filters.append(Dispute.status.in_(list(RESOLVED_STATUSES)))
            elif status in DisputeStateValidator.VALID_TRANSITIONS:
                filters.append(Dispute.status == status)
            else:
                raise ValidationError(f"Unknown dispute status '{status}'", details={"field": "status"})
        if search:
            pattern = f"%{search.strip()}%"
            filters.append(or_(Dispute.description.ilike(pattern), Deal.reference.ilike(pattern)))

        base = select(Dispute).join(Deal, Deal.id == Dispute.deal_id).where(*filters)

        async with async_managed_session() as session:
            total = (await session.execute(
                select(func.count()).select_from(base.subquery())
            )).scalar_one()
            disputes = (await session.execute(
                base.order_by(Dispute.created_at.desc(), Dispute.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )).scalars().all()

        return DisputePage(list(disputes), int(total), page, limit)
