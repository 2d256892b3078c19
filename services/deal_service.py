"""
Trade Deal Service
Deal creation, role-gated stage transitions, escrow accounting and milestone release

All mutations run inside one ``async_managed_session`` transaction and use conditional
updates against the stage/escrow values they were validated against. Notifications are
dispatched only after the transaction commits and never affect its outcome.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config import Config
from database import async_managed_session
from models import (
    Deal, DealMilestone, DealStage, DealTimelineEvent, DisputeType, EscrowMovement, EscrowMovementType,
    EscrowStatus, MilestoneStatus, MilestoneType, NotificationPriority, TimelineEventType, utc_now
)
from services.errors import (
    ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError, UnauthorizedError,
    ValidationError
)
from services.notification_dispatcher import notification_dispatcher
from services.reference_generator import DealReferenceGenerator
from utils.atomic_transactions import ConditionalUpdateMissed, retry_on_conflict, update_if
from utils.deal_state_machine import (
    DealRole, DealStateValidator, format_stage, normalize_wallet, resolve_role, stage_notification
)
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

FROZEN_STAGES = (DealStage.COMPLETED.value, DealStage.CANCELLED.value, DealStage.DISPUTED.value)


@dataclass
class DealParty:
    wallet: str
    company: str
    country: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    kyc_level: int = 0


@dataclass
class DealProduct:
    name: str
    quantity: Any
    unit: str
    unit_price: Any
    currency: str
    category: Optional[str] = None
    description: Optional[str] = None
    hs_code: Optional[str] = None


@dataclass
class DealTerms:
    incoterm: Optional[str] = None
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None
    origin_port: Optional[str] = None
    destination_port: Optional[str] = None
    delivery_date: Optional[date] = None
    payment_terms: Optional[str] = None
    inspection_required: bool = False
    insurance_required: bool = False


@dataclass
class MilestoneTerms:
    name: str
    payment_percentage: int
    milestone_type: str = MilestoneType.CUSTOM.value
    description: Optional[str] = None
    auto_release: bool = False


DEFAULT_MILESTONES: List[MilestoneTerms] = [
    MilestoneTerms("Contract Execution", 0, MilestoneType.CONTRACT_SIGNED.value,
                   "Purchase agreement signed by all parties"),
    MilestoneTerms("Advance Payment", 30, MilestoneType.ADVANCE_PAYMENT.value,
                   "Initial deposit to secure order"),
    MilestoneTerms("Production Complete", 0, MilestoneType.PRODUCTION_COMPLETE.value,
                   "Goods manufactured and ready for inspection"),
    MilestoneTerms("Inspection Passed", 20, MilestoneType.INSPECTION_PASSED.value,
                   "Third-party inspection approved", auto_release=True),
    MilestoneTerms("Goods Shipped", 30, MilestoneType.GOODS_SHIPPED.value,
                   "Goods loaded and in transit", auto_release=True),
    MilestoneTerms("Final Acceptance", 20, MilestoneType.FINAL_ACCEPTANCE.value,
                   "Buyer confirms receipt and acceptance"),
]


class DealPage(NamedTuple):
    deals: List[Deal]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def require_caller(caller_wallet: Optional[str]) -> str:
    caller = normalize_wallet(caller_wallet)
    if not caller:
        raise UnauthorizedError()
    return caller


def deal_action_url(deal_id: int) -> str:
    return f"/trade/deals/{deal_id}"


def validate_milestone_percentages(milestones: Sequence[MilestoneTerms]) -> int:
    """Percentages are integers in [0, 100] that sum to exactly 100"""
    if not milestones:
        raise ValidationError("At least one milestone is required", details={"field": "milestones"})

    total = 0
    for index, milestone in enumerate(milestones):
        pct = milestone.payment_percentage
        if isinstance(pct, bool) or not isinstance(pct, int):
            raise ValidationError(
                f"Milestone {index + 1} percentage must be an integer, got {pct!r}",
                details={"field": "payment_percentage", "index": index},
            )
        if pct < 0 or pct > 100:
            raise ValidationError(
                f"Milestone {index + 1} percentage must be between 0 and 100, got {pct}",
                details={"field": "payment_percentage", "index": index},
            )
        if not milestone.name or not milestone.name.strip():
            raise ValidationError(f"Milestone {index + 1} name is required", details={"index": index})
        total += pct

    if total != 100:
        raise ValidationError(
            f"Milestone percentages must sum to 100, got {total}",
            details={"field": "milestones", "sum": total},
        )
    return total


def add_timeline_event(
    session: AsyncSession,
    deal_id: int,
    event_type: str,
    title: str,
    actor: str,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> DealTimelineEvent:
    event = DealTimelineEvent(
        deal_id=deal_id,
        event_type=event_type,
        title=title,
        description=description,
        actor=actor,
        event_metadata=metadata or {},
        created_at=utc_now(),
    )
    session.add(event)
    return event


def dispatch_all(notifications: List[Dict[str, Any]]):
    for notification in notifications:
        notification_dispatcher.notify(**notification)


class DealService:
    """Trade deal lifecycle operations"""

    # ------------------------------------------------------------------
    # Loading helpers
    # ------------------------------------------------------------------

    @classmethod
    async def _load_deal(cls, session: AsyncSession, deal_id: int, with_children: bool = False) -> Deal:
        stmt = select(Deal).where(Deal.id == deal_id).execution_options(populate_existing=True)
        if with_children:
            stmt = stmt.options(selectinload(Deal.milestones), selectinload(Deal.timeline_events))
        deal = (await session.execute(stmt)).scalar_one_or_none()
        if deal is None:
            raise NotFoundError(f"Deal {deal_id} not found")
        return deal

    @classmethod
    async def _load_milestones(cls, session: AsyncSession, deal_id: int) -> List[DealMilestone]:
        return list((await session.execute(
            select(DealMilestone)
            .where(DealMilestone.deal_id == deal_id)
            .order_by(DealMilestone.order_index)
            .execution_options(populate_existing=True)
        )).scalars().all())

    @classmethod
    def _party_role(cls, deal: Deal, caller: str) -> DealRole:
        role = resolve_role(caller, deal.buyer_wallet, deal.seller_wallet)
        if role is None:
            raise ForbiddenError(f"Access denied to deal {deal.reference}")
        return role

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @classmethod
    async def create_deal(
        cls,
        caller_wallet: str,
        buyer: DealParty,
        seller: DealParty,
        product: DealProduct,
        terms: Optional[DealTerms] = None,
        milestones: Optional[Sequence[MilestoneTerms]] = None,
        description: Optional[str] = None,
    ) -> Deal:
        """
        Create a deal in ``draft`` together with its milestones and the opening
        timeline event, in one transaction.

        Only the buyer may create a deal. Milestone percentages must sum to exactly
        100; when no milestones are given the standard six-step schedule is used.
        """
        caller = require_caller(caller_wallet)
        buyer_wallet = normalize_wallet(buyer.wallet)
        seller_wallet = normalize_wallet(seller.wallet)

        if caller != buyer_wallet:
            raise ForbiddenError("Only the buyer can create a deal")
        if not seller_wallet:
            raise ValidationError("Seller wallet is required", details={"field": "seller.wallet"})
        if buyer_wallet == seller_wallet:
            raise ValidationError("Buyer and seller must be different wallets")
        if not (buyer.company or "").strip() or not (seller.company or "").strip():
            raise ValidationError("Buyer and seller company names are required")
        if not (product.name or "").strip():
            raise ValidationError("Product name is required", details={"field": "product.name"})
        if not (product.currency or "").strip():
            raise ValidationError("Currency is required", details={"field": "product.currency"})
        if not (product.unit or "").strip():
            raise ValidationError("Unit is required", details={"field": "product.unit"})

        quantity = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(product.quantity, "quantity"))
        unit_price = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(product.unit_price, "unit_price"))
        if quantity <= 0 or unit_price <= 0:
            raise ValidationError("Quantity and unit price must be greater than zero")

        schedule = list(milestones) if milestones is not None else list(DEFAULT_MILESTONES)
        validate_milestone_percentages(schedule)

        terms = terms or DealTerms()
        total_value = MonetaryDecimal.quantize_ledger(quantity * unit_price)
        escrow_fee = MonetaryDecimal.percentage_of(total_value, Config.ESCROW_FEE_PERCENTAGE)
        currency = product.currency.strip().upper()
        now = utc_now()

        async with async_managed_session() as session:
            reference = await DealReferenceGenerator.generate(session, now.year)

            deal = Deal(
                reference=reference,
                title=f"{product.name.strip()} from {seller.company.strip()}",
                description=description,
                buyer_wallet=buyer_wallet,
                buyer_company=buyer.company.strip(),
                buyer_country=buyer.country,
                buyer_contact=buyer.contact_name,
                buyer_email=buyer.email,
                buyer_kyc_level=buyer.kyc_level,
                seller_wallet=seller_wallet,
                seller_company=seller.company.strip(),
                seller_country=seller.country,
                seller_contact=seller.contact_name,
                seller_email=seller.email,
                seller_kyc_level=seller.kyc_level,
                product_name=product.name.strip(),
                product_category=product.category,
                product_description=product.description,
                hs_code=product.hs_code,
                quantity=quantity,
                unit=product.unit.strip(),
                unit_price=unit_price,
                currency=currency,
                total_value=total_value,
                incoterm=terms.incoterm,
                origin_country=terms.origin_country,
                destination_country=terms.destination_country,
                origin_port=terms.origin_port,
                destination_port=terms.destination_port,
                delivery_date=terms.delivery_date,
                payment_terms=terms.payment_terms,
                inspection_required=terms.inspection_required,
                insurance_required=terms.insurance_required,
                stage=DealStage.DRAFT.value,
                stage_updated_at=now,
                escrow_amount=total_value,
                escrow_funded=Decimal("0"),
                escrow_released=Decimal("0"),
                escrow_status=EscrowStatus.PENDING.value,
                escrow_fee_amount=escrow_fee,
                created_by=caller,
                created_at=now,
                updated_at=now,
            )
            session.add(deal)
            await session.flush()

            for index, step in enumerate(schedule):
                session.add(DealMilestone(
                    deal_id=deal.id,
                    order_index=index,
                    milestone_type=step.milestone_type,
                    name=step.name.strip(),
                    description=step.description,
                    payment_percentage=step.payment_percentage,
                    payment_amount=MonetaryDecimal.quantize_crypto(
                        total_value * Decimal(step.payment_percentage) / Decimal("100")
                    ),
                    auto_release=step.auto_release,
                    status=MilestoneStatus.PENDING.value,
                ))

            add_timeline_event(
                session, deal.id, TimelineEventType.DEAL_CREATED.value, "Deal Created", caller,
                description=f"Trade deal {reference} created for {product.name.strip()}",
                metadata={"reference": reference, "totalValue": str(total_value), "currency": currency},
            )
            await session.flush()
            deal = await cls._load_deal(session, deal.id, with_children=True)

        logger.info(
            f"✅ DEAL_CREATED: {deal.reference} buyer={buyer_wallet} seller={seller_wallet} "
            f"value={total_value} {currency} milestones={len(schedule)}"
        )

        dispatch_all([
            {
                "recipient_wallet": seller_wallet,
                "notification_type": "trade_invitation",
                "title": "New Trade Deal Invitation",
                "message": f"{deal.buyer_company} invited you to trade deal {deal.reference}: {deal.title}",
                "data": {"dealId": deal.id, "dealReference": deal.reference},
                "priority": NotificationPriority.HIGH.value,
                "action_url": deal_action_url(deal.id),
            },
            {
                "recipient_wallet": buyer_wallet,
                "notification_type": "deal_created",
                "title": "Deal Created Successfully",
                "message": f"Trade deal {deal.reference} has been created and sent to {deal.seller_company}",
                "data": {"dealId": deal.id, "dealReference": deal.reference},
                "priority": NotificationPriority.MEDIUM.value,
                "action_url": deal_action_url(deal.id),
            },
        ])
        return deal

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    @classmethod
    async def apply_transition(
        cls,
        session: AsyncSession,
        deal: Deal,
        target_stage: str,
        actor: str,
        metadata: Optional[Dict[str, Any]] = None,
        timeline_title: Optional[str] = None,
    ) -> str:
        """
        Move ``deal`` to ``target_stage`` provided its stage still equals the value read.

        Authorization is the caller's job; this only performs the conditional write and
        the timeline entry. Raises ConditionalUpdateMissed when the deal moved meanwhile.
        """
        previous_stage = deal.stage
        now = utc_now()
        updated = await update_if(
            session,
            Deal,
            where=[Deal.id == deal.id, Deal.stage == previous_stage],
            values={"stage": target_stage, "stage_updated_at": now, "updated_at": now},
        )
        if updated != 1:
            raise ConditionalUpdateMissed(f"deal {deal.id} left stage {previous_stage}")

        add_timeline_event(
            session, deal.id, TimelineEventType.STAGE_CHANGE.value,
            timeline_title or f"Stage changed to {format_stage(target_stage)}",
            actor,
            description=f"Deal moved from {format_stage(previous_stage)} to {format_stage(target_stage)}",
            metadata={**(metadata or {}), "previousStage": previous_stage, "newStage": target_stage},
        )
        await session.flush()
        logger.info(f"DEAL_STAGE_CHANGED: {deal.reference} {previous_stage} -> {target_stage} by {actor}")
        return previous_stage

    @classmethod
    def stage_change_notification(cls, deal: Deal, recipient: str, previous_stage: str, new_stage: str) -> Dict[str, Any]:
        title, message, priority = stage_notification(new_stage, deal.reference)
        return {
            "recipient_wallet": recipient,
            "notification_type": "trade_update",
            "title": title,
            "message": message,
            "data": {
                "dealId": deal.id,
                "dealReference": deal.reference,
                "previousStage": previous_stage,
                "newStage": new_stage,
            },
            "priority": priority,
            "action_url": deal_action_url(deal.id),
        }

    @classmethod
    async def request_stage_change(
        cls,
        deal_id: int,
        caller_wallet: str,
        target_stage: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Deal:
        """
        Move a deal to ``target_stage`` on behalf of one of its parties.

        The caller's role is derived from the deal, never taken from input. The
        counterparty is notified after commit; a lost race is retried against the
        fresh stage and ends in ConflictError when it keeps losing.
        """
        caller = require_caller(caller_wallet)
        target_stage = (target_stage or "").strip().lower()
        if not DealStateValidator.is_known_stage(target_stage):
            raise ValidationError(f"Unknown deal stage '{target_stage}'", details={"field": "stage"})
        if target_stage == DealStage.DISPUTED.value:
            return await cls._dispute_by_stage_change(deal_id, caller, metadata or {})

        deal, previous_stage, recipient = await cls._request_stage_change(deal_id, caller, target_stage, metadata)

        dispatch_all([cls.stage_change_notification(deal, recipient, previous_stage, target_stage)])
        return deal

    @classmethod
    async def _dispute_by_stage_change(cls, deal_id: int, caller: str, metadata: Dict[str, Any]) -> Deal:
        """
        A permitted move to ``disputed`` opens a dispute record in the same step.

        ``metadata`` may carry ``description``, ``dispute_type`` and ``claimed_amount``.
        """
        # dispute_service imports this module
        from services.dispute_service import DisputeService

        target = DealStage.DISPUTED.value
        async with async_managed_session() as session:
            deal = await cls._load_deal(session, deal_id)
            role = cls._party_role(deal, caller)
            if not DealStateValidator.is_valid_transition(deal.stage, target, role):
                logger.warning(
                    f"DEAL_TRANSITION_REJECTED: {deal.reference} {deal.stage} -> {target} by {role.value} {caller}"
                )
                raise InvalidTransitionError(
                    deal.stage, target, DealStateValidator.get_valid_transitions(deal.stage, role)
                )
            current_stage = deal.stage

        description = str(metadata.get("description") or "").strip()
        await DisputeService.open_dispute(
            deal_id,
            caller,
            description or f"Dispute raised at {format_stage(current_stage)}",
            dispute_type=metadata.get("dispute_type") or DisputeType.OTHER.value,
            claimed_amount=metadata.get("claimed_amount") or 0,
        )
        return await cls.get_deal(deal_id, caller)

    @classmethod
    @retry_on_conflict(attempts=Config.STAGE_CHANGE_MAX_RETRIES, operation="deal_stage_change")
    async def _request_stage_change(cls, deal_id: int, caller: str, target_stage: str, metadata):
        async with async_managed_session() as session:
            deal = await cls._load_deal(session, deal_id)
            role = cls._party_role(deal, caller)

            if not DealStateValidator.is_valid_transition(deal.stage, target_stage, role):
                logger.warning(
                    f"DEAL_TRANSITION_REJECTED: {deal.reference} {deal.stage} -> {target_stage} "
                    f"by {role.value} {caller}"
                )
                raise InvalidTransitionError(
                    deal.stage, target_stage, DealStateValidator.get_valid_transitions(deal.stage, role)
                )

            previous_stage = await cls.apply_transition(session, deal, target_stage, caller, metadata)
            deal = await cls._load_deal(session, deal_id, with_children=True)

        recipient = deal.seller_wallet if role == DealRole.BUYER else deal.buyer_wallet
        return deal, previous_stage, recipient

    # ------------------------------------------------------------------
    # Escrow accounting
    # ------------------------------------------------------------------

    @classmethod
    async def _find_movement(cls, tx_hash: str) -> Optional[EscrowMovement]:
        async with async_managed_session() as session:
            return (await session.execute(
                select(EscrowMovement).where(EscrowMovement.tx_hash == tx_hash)
            )).scalar_one_or_none()

    @classmethod
    def _check_replay(cls, movement: EscrowMovement, deal_id: int, movement_type: str, amount: Decimal):
        """Identical replay is a no-op; any divergence is a conflict"""
        if (
            movement.deal_id != deal_id
            or movement.movement_type != movement_type
            or Decimal(movement.amount) != amount
        ):
            logger.error(
                f"ESCROW_REPLAY_CONFLICT: tx={movement.tx_hash} recorded deal={movement.deal_id} "
                f"{movement.movement_type} {movement.amount}, replay deal={deal_id} {movement_type} {amount}"
            )
            raise ConflictError(
                f"Transaction {movement.tx_hash} already recorded with different parameters",
                details={"tx_hash": movement.tx_hash},
            )
        logger.info(f"ESCROW_REPLAY_IGNORED: tx={movement.tx_hash} deal={deal_id}")

    @classmethod
    async def _record_fund(cls, session: AsyncSession, deal: Deal, amount: Decimal, tx_hash: str, actor: str):
        if deal.stage in FROZEN_STAGES:
            raise ValidationError(f"Deal {deal.reference} is {deal.stage} and cannot receive escrow funds")

        session.add(EscrowMovement(
            deal_id=deal.id,
            tx_hash=tx_hash,
            movement_type=EscrowMovementType.FUND.value,
            amount=amount,
            actor=actor,
            created_at=utc_now(),
        ))
        await session.flush()

        updated = await update_if(
            session,
            Deal,
            where=[
                Deal.id == deal.id,
                Deal.stage.notin_(FROZEN_STAGES),
                Deal.escrow_funded + amount <= Deal.escrow_amount,
            ],
            values={
                "escrow_funded": Deal.escrow_funded + amount,
                "escrow_status": case(
                    (Deal.escrow_funded + amount >= Deal.escrow_amount, EscrowStatus.FUNDED.value),
                    else_=EscrowStatus.PARTIAL.value,
                ),
                "updated_at": utc_now(),
            },
        )
        if updated != 1:
            current = await cls._load_deal(session, deal.id)
            if current.stage in FROZEN_STAGES:
                raise ValidationError(f"Deal {current.reference} is {current.stage} and cannot receive escrow funds")
            remaining = Decimal(current.escrow_amount) - Decimal(current.escrow_funded)
            raise ValidationError(
                f"Funding {amount} exceeds the remaining escrow amount {remaining}",
                details={"remaining": str(remaining), "amount": str(amount)},
            )

        add_timeline_event(
            session, deal.id, TimelineEventType.PAYMENT.value, "Escrow Funded", actor,
            description=f"{amount} {deal.currency} deposited into escrow",
            metadata={"txHash": tx_hash, "amount": str(amount), "movement": EscrowMovementType.FUND.value},
        )
        await session.flush()

    @classmethod
    async def _record_release(
        cls,
        session: AsyncSession,
        deal: Deal,
        amount: Decimal,
        tx_hash: str,
        actor: str,
        milestone_id: Optional[int] = None,
    ):
        existing = (await session.execute(
            select(EscrowMovement).where(EscrowMovement.tx_hash == tx_hash)
        )).scalar_one_or_none()
        if existing is not None:
            cls._check_replay(existing, deal.id, EscrowMovementType.RELEASE.value, amount)
            return False

        session.add(EscrowMovement(
            deal_id=deal.id,
            tx_hash=tx_hash,
            movement_type=EscrowMovementType.RELEASE.value,
            amount=amount,
            milestone_id=milestone_id,
            actor=actor,
            created_at=utc_now(),
        ))
        await session.flush()

        updated = await update_if(
            session,
            Deal,
            where=[Deal.id == deal.id, Deal.escrow_released + amount <= Deal.escrow_funded],
            values={
                "escrow_released": Deal.escrow_released + amount,
                "escrow_status": case(
                    (Deal.escrow_released + amount >= Deal.escrow_amount, EscrowStatus.RELEASED.value),
                    else_=Deal.escrow_status,
                ),
                "updated_at": utc_now(),
            },
        )
        if updated != 1:
            current = await cls._load_deal(session, deal.id)
            releasable = Decimal(current.escrow_funded) - Decimal(current.escrow_released)
            raise ValidationError(
                f"Release of {amount} exceeds the funded, unreleased escrow {releasable}",
                details={"releasable": str(releasable), "amount": str(amount)},
            )

        add_timeline_event(
            session, deal.id, TimelineEventType.PAYMENT.value, "Escrow Released", actor,
            description=f"{amount} {deal.currency} released to the seller",
            metadata={
                "txHash": tx_hash,
                "amount": str(amount),
                "movement": EscrowMovementType.RELEASE.value,
                "milestoneId": milestone_id,
            },
        )
        await session.flush()
        return True

    @classmethod
    def _normalize_movement(cls, tx_hash: str, amount) -> tuple:
        tx_hash = (tx_hash or "").strip().lower()
        if not tx_hash:
            raise ValidationError("tx_hash is required", details={"field": "tx_hash"})
        amount = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(amount, "amount"))
        return tx_hash, amount

    @classmethod
    async def fund_escrow(cls, deal_id: int, caller_wallet: str, tx_hash: str, amount) -> Deal:
        """
        Record an on-chain escrow deposit by the buyer.

        Idempotent per ``tx_hash``: replaying the same deposit changes nothing,
        replaying the hash with another deal or amount raises ConflictError.
        """
        caller = require_caller(caller_wallet)
        tx_hash, amount = cls._normalize_movement(tx_hash, amount)

        existing = await cls._find_movement(tx_hash)
        if existing is not None:
            cls._check_replay(existing, deal_id, EscrowMovementType.FUND.value, amount)
            return await cls.get_deal(deal_id, caller)

        try:
            async with async_managed_session() as session:
                deal = await cls._load_deal(session, deal_id)
                if cls._party_role(deal, caller) != DealRole.BUYER:
                    raise ForbiddenError("Only the buyer can fund escrow")
                await cls._record_fund(session, deal, amount, tx_hash, caller)
                deal = await cls._load_deal(session, deal_id, with_children=True)
        except IntegrityError:
            # Concurrent replay of the same hash won the insert
            existing = await cls._find_movement(tx_hash)
            if existing is None:
                raise
            cls._check_replay(existing, deal_id, EscrowMovementType.FUND.value, amount)
            return await cls.get_deal(deal_id, caller)

        logger.info(
            f"💰 ESCROW_FUNDED: {deal.reference} +{amount} {deal.currency} "
            f"({deal.escrow_funded}/{deal.escrow_amount}, status={deal.escrow_status})"
        )
        dispatch_all([{
            "recipient_wallet": deal.seller_wallet,
            "notification_type": "payment_received",
            "title": "Escrow Deposit Received",
            "message": f"{amount} {deal.currency} was deposited into escrow for {deal.reference}",
            "data": {"dealId": deal.id, "dealReference": deal.reference, "amount": str(amount), "txHash": tx_hash},
            "priority": NotificationPriority.HIGH.value,
            "action_url": deal_action_url(deal.id),
        }])
        return deal

    @classmethod
    async def release_escrow(
        cls, deal_id: int, caller_wallet: str, tx_hash: str, amount, milestone_id: Optional[int] = None
    ) -> Deal:
        """Buyer releases escrowed funds to the seller; idempotent per ``tx_hash``"""
        caller = require_caller(caller_wallet)
        tx_hash, amount = cls._normalize_movement(tx_hash, amount)

        try:
            async with async_managed_session() as session:
                deal = await cls._load_deal(session, deal_id)
                if cls._party_role(deal, caller) != DealRole.BUYER:
                    raise ForbiddenError("Only the buyer can release escrow")
                released = await cls._record_release(session, deal, amount, tx_hash, caller, milestone_id)
                deal = await cls._load_deal(session, deal_id, with_children=True)
        except IntegrityError:
            existing = await cls._find_movement(tx_hash)
            if existing is None:
                raise
            cls._check_replay(existing, deal_id, EscrowMovementType.RELEASE.value, amount)
            return await cls.get_deal(deal_id, caller)

        if released:
            logger.info(f"💸 ESCROW_RELEASED: {deal.reference} {amount} {deal.currency} tx={tx_hash}")
            dispatch_all([cls._payment_notification(deal, amount)])
        return deal

    @classmethod
    def _payment_notification(cls, deal: Deal, amount: Decimal, milestone_name: Optional[str] = None) -> Dict[str, Any]:
        suffix = f" for milestone '{milestone_name}'" if milestone_name else ""
        return {
            "recipient_wallet": deal.seller_wallet,
            "notification_type": "payment_received",
            "title": "Payment Released",
            "message": f"{amount} {deal.currency} was released from escrow{suffix} ({deal.reference})",
            "data": {"dealId": deal.id, "dealReference": deal.reference, "amount": str(amount)},
            "priority": NotificationPriority.HIGH.value,
            "action_url": deal_action_url(deal.id),
        }

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    @classmethod
    def _find_milestone(cls, milestones: List[DealMilestone], milestone_id: int, deal: Deal) -> DealMilestone:
        for milestone in milestones:
            if milestone.id == milestone_id:
                return milestone
        raise NotFoundError(f"Milestone {milestone_id} not found on deal {deal.reference}")

    @classmethod
    def _ensure_active(cls, deal: Deal):
        if deal.stage in FROZEN_STAGES:
            raise ValidationError(f"Deal {deal.reference} is {deal.stage}; milestones can no longer change")

    @classmethod
    async def _set_milestone_status(
        cls, session: AsyncSession, milestone: DealMilestone, from_statuses: Sequence[str], values: Dict[str, Any]
    ):
        updated = await update_if(
            session,
            DealMilestone,
            where=[DealMilestone.id == milestone.id, DealMilestone.status.in_(list(from_statuses))],
            values=values,
        )
        if updated != 1:
            raise InvalidTransitionError(milestone.status, values["status"], entity="milestone")

    @classmethod
    async def start_milestone(cls, deal_id: int, milestone_id: int, caller_wallet: str) -> DealMilestone:
        """Seller starts work on the next open milestone"""
        caller = require_caller(caller_wallet)

        async with async_managed_session() as session:
            deal = await cls._load_deal(session, deal_id)
            if cls._party_role(deal, caller) != DealRole.SELLER:
                raise ForbiddenError("Only the seller can start milestones")
            cls._ensure_active(deal)

            milestones = await cls._load_milestones(session, deal_id)
            milestone = cls._find_milestone(milestones, milestone_id, deal)
            next_open = next((m for m in milestones if m.status != MilestoneStatus.APPROVED.value), None)
            if next_open is None or next_open.id != milestone.id:
                raise ValidationError(
                    f"Milestone '{milestone.name}' is not the next milestone in sequence",
                    details={"milestone_id": milestone_id},
                )

            await cls._set_milestone_status(
                session, milestone, [MilestoneStatus.PENDING.value],
                {"status": MilestoneStatus.IN_PROGRESS.value},
            )
            add_timeline_event(
                session, deal.id, TimelineEventType.MILESTONE.value, f"Milestone Started: {milestone.name}", caller,
                metadata={"milestoneId": milestone.id, "status": MilestoneStatus.IN_PROGRESS.value},
            )
            milestone = cls._find_milestone(await cls._load_milestones(session, deal_id), milestone_id, deal)

        logger.info(f"MILESTONE_STARTED: {deal.reference} #{milestone.order_index} {milestone.name}")
        return milestone

    @classmethod
    async def complete_milestone(cls, deal_id: int, milestone_id: int, caller_wallet: str) -> DealMilestone:
        """
        Seller marks a milestone complete. Auto-release milestones are approved in the
        same transaction and their payment released under key ``milestone-<id>``.
        """
        caller = require_caller(caller_wallet)
        notifications: List[Dict[str, Any]] = []

        async with async_managed_session() as session:
            deal = await cls._load_deal(session, deal_id)
            if cls._party_role(deal, caller) != DealRole.SELLER:
                raise ForbiddenError("Only the seller can complete milestones")
            cls._ensure_active(deal)

            milestones = await cls._load_milestones(session, deal_id)
            milestone = cls._find_milestone(milestones, milestone_id, deal)

            await cls._set_milestone_status(
                session, milestone,
                [MilestoneStatus.PENDING.value, MilestoneStatus.IN_PROGRESS.value],
                {"status": MilestoneStatus.COMPLETED.value, "completed_at": utc_now()},
            )
            add_timeline_event(
                session, deal.id, TimelineEventType.MILESTONE.value, f"Milestone Completed: {milestone.name}", caller,
                metadata={"milestoneId": milestone.id, "status": MilestoneStatus.COMPLETED.value},
            )
            for party in (deal.buyer_wallet, deal.seller_wallet):
                notifications.append({
                    "recipient_wallet": party,
                    "notification_type": "milestone_completed",
                    "title": "Milestone Completed",
                    "message": f"Milestone '{milestone.name}' was completed on {deal.reference}",
                    "data": {"dealId": deal.id, "dealReference": deal.reference, "milestoneId": milestone.id},
                    "priority": NotificationPriority.MEDIUM.value,
                    "action_url": deal_action_url(deal.id),
                })

            if milestone.auto_release:
                milestone = await cls._load_milestone(session, milestone_id)
                notifications.extend(
                    await cls._approve(session, deal, milestone, caller, f"milestone-{milestone.id}")
                )

            milestone = await cls._load_milestone(session, milestone_id)

        logger.info(
            f"MILESTONE_COMPLETED: {deal.reference} #{milestone.order_index} {milestone.name} "
            f"status={milestone.status}"
        )
        dispatch_all(notifications)
        return milestone

    @classmethod
    async def approve_milestone(
        cls, deal_id: int, milestone_id: int, caller_wallet: str, tx_hash: Optional[str] = None
    ) -> DealMilestone:
        """Buyer approves a completed milestone, releasing its payment from escrow"""
        caller = require_caller(caller_wallet)

        async with async_managed_session() as session:
            deal = await cls._load_deal(session, deal_id)
            if cls._party_role(deal, caller) != DealRole.BUYER:
                raise ForbiddenError("Only the buyer can approve milestones")
            cls._ensure_active(deal)

            milestone = cls._find_milestone(await cls._load_milestones(session, deal_id), milestone_id, deal)
            release_key = (tx_hash or "").strip().lower() or f"milestone-{milestone.id}"
            notifications = await cls._approve(session, deal, milestone, caller, release_key)
            milestone = await cls._load_milestone(session, milestone_id)

        dispatch_all(notifications)
        return milestone

    @classmethod
    async def _load_milestone(cls, session: AsyncSession, milestone_id: int) -> DealMilestone:
        return (await session.execute(
            select(DealMilestone)
            .where(DealMilestone.id == milestone_id)
            .execution_options(populate_existing=True)
        )).scalar_one()

    @classmethod
    async def _approve(
        cls, session: AsyncSession, deal: Deal, milestone: DealMilestone, actor: str, release_key: str
    ) -> List[Dict[str, Any]]:
        notifications: List[Dict[str, Any]] = []
        now = utc_now()

        await cls._set_milestone_status(
            session, milestone, [MilestoneStatus.COMPLETED.value],
            {
                "status": MilestoneStatus.APPROVED.value,
                "approved_at": now,
                "approved_by": actor,
                "release_tx_hash": release_key if Decimal(milestone.payment_amount) > 0 else None,
            },
        )
        add_timeline_event(
            session, deal.id, TimelineEventType.MILESTONE.value, f"Milestone Approved: {milestone.name}", actor,
            metadata={"milestoneId": milestone.id, "status": MilestoneStatus.APPROVED.value},
        )

        amount = Decimal(milestone.payment_amount)
        if amount > 0:
            released = await cls._record_release(session, deal, amount, release_key, actor, milestone.id)
            if released:
                notifications.append(cls._payment_notification(deal, amount, milestone.name))

        milestones = await cls._load_milestones(session, deal.id)
        next_pending = next((m for m in milestones if m.status == MilestoneStatus.PENDING.value), None)
        if next_pending is not None:
            await update_if(
                session,
                DealMilestone,
                where=[DealMilestone.id == next_pending.id, DealMilestone.status == MilestoneStatus.PENDING.value],
                values={"status": MilestoneStatus.IN_PROGRESS.value},
            )

        all_approved = all(m.status == MilestoneStatus.APPROVED.value for m in milestones)
        if all_approved:
            current = await cls._load_deal(session, deal.id)
            if current.stage == DealStage.DELIVERED.value:
                try:
                    await cls.apply_transition(
                        session, current, DealStage.COMPLETED.value, actor,
                        metadata={"reason": "all_milestones_approved"},
                        timeline_title="Deal Completed",
                    )
                    for party in (current.buyer_wallet, current.seller_wallet):
                        notifications.append(cls.stage_change_notification(
                            current, party, DealStage.DELIVERED.value, DealStage.COMPLETED.value
                        ))
                except ConditionalUpdateMissed:
                    logger.warning(f"Deal {current.reference} moved while completing milestones, left as is")

        logger.info(
            f"MILESTONE_APPROVED: {deal.reference} {milestone.name} released={amount} {deal.currency}"
        )
        return notifications

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @classmethod
    async def get_deal(cls, deal_id: int, caller_wallet: str) -> Deal:
        """Deal with milestones and timeline, visible to its parties and platform admins"""
        caller = require_caller(caller_wallet)
        async with async_managed_session() as session:
            deal = await cls._load_deal(session, deal_id, with_children=True)
        if caller not in Config.PLATFORM_ADMIN_WALLETS:
            cls._party_role(deal, caller)
        return deal

    @classmethod
    async def get_timeline(cls, deal_id: int, caller_wallet: str) -> List[DealTimelineEvent]:
        deal = await cls.get_deal(deal_id, caller_wallet)
        return list(deal.timeline_events)

    @classmethod
    async def list_deals(
        cls,
        caller_wallet: str,
        role: str = "all",
        stage: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> DealPage:
        """Deals where the caller is a party, newest first"""
        caller = require_caller(caller_wallet)
        if role not in ("all", DealRole.BUYER.value, DealRole.SELLER.value):
            raise ValidationError(f"Unknown role filter '{role}'", details={"field": "role"})
        if stage is not None and not DealStateValidator.is_known_stage(stage):
            raise ValidationError(f"Unknown deal stage '{stage}'", details={"field": "stage"})
        page = max(1, int(page))
        limit = min(max(1, int(limit)), 100)

        if role == DealRole.BUYER.value:
            party_filter = Deal.buyer_wallet == caller
        elif role == DealRole.SELLER.value:
            party_filter = Deal.seller_wallet == caller
        else:
            party_filter = (Deal.buyer_wallet == caller) | (Deal.seller_wallet == caller)

        filters = [party_filter]
        if stage:
            filters.append(Deal.stage == stage)

        async with async_managed_session() as session:
            total = (await session.execute(select(func.count(Deal.id)).where(*filters))).scalar_one()
            deals = (await session.execute(
                select(Deal)
                .where(*filters)
                .options(selectinload(Deal.milestones))
                .order_by(Deal.created_at.desc(), Deal.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )).scalars().all()

        return DealPage(list(deals), int(total), page, limit)
