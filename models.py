"""
TradePort Trade & Exchange Platform - Database Schema
=====================================================

Schema for the two transactional cores of the platform:
- Multi-party trade deals with staged lifecycle, milestone escrow and disputes
- Internal exchange custody balances, order book, fills and venue-relayed trades

Invariants the database can carry are declared as check constraints.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Date, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """UTC now without tzinfo, for lease columns stored as naive timestamps"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DealStage(Enum):
    """Trade deal lifecycle stages (wire vocabulary)"""
    DRAFT = "draft"
    LOI_PENDING = "loi_pending"
    LOI_SIGNED = "loi_signed"
    ESCROW_PENDING = "escrow_pending"
    ESCROW_FUNDED = "escrow_funded"
    IN_PRODUCTION = "in_production"
    QUALITY_CHECK = "quality_check"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class EscrowStatus(Enum):
    """Escrow funding status of a deal"""
    PENDING = "pending"
    PARTIAL = "partial"
    FUNDED = "funded"
    RELEASED = "released"


class EscrowMovementType(Enum):
    FUND = "fund"
    RELEASE = "release"


class MilestoneStatus(Enum):
    """Milestone progression"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"  # Seller finished, awaiting buyer approval
    APPROVED = "approved"  # Buyer approved, payment released


class MilestoneType(Enum):
    LOI_SIGNED = "loi_signed"
    KYC_APPROVED = "kyc_approved"
    CONTRACT_SIGNED = "contract_signed"
    ADVANCE_PAYMENT = "advance_payment"
    PRODUCTION_COMPLETE = "production_complete"
    INSPECTION_PASSED = "inspection_passed"
    GOODS_SHIPPED = "goods_shipped"
    CUSTOMS_CLEARED = "customs_cleared"
    GOODS_DELIVERED = "goods_delivered"
    FINAL_ACCEPTANCE = "final_acceptance"
    CUSTOM = "custom"


class TimelineEventType(Enum):
    DEAL_CREATED = "deal_created"
    STAGE_CHANGE = "stage_change"
    PAYMENT = "payment"
    MILESTONE = "milestone"
    DISPUTE = "dispute"


class DisputeStatus(Enum):
    """Dispute escalation states (wire vocabulary)"""
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    EVIDENCE_REQUESTED = "evidence_requested"
    MEDIATION = "mediation"
    ARBITRATION = "arbitration"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_SELLER = "resolved_seller"
    RESOLVED_SPLIT = "resolved_split"
    WITHDRAWN = "withdrawn"


class DisputeType(Enum):
    QUALITY_ISSUE = "quality_issue"
    QUANTITY_DISCREPANCY = "quantity_discrepancy"
    LATE_DELIVERY = "late_delivery"
    DOCUMENTATION_ISSUE = "documentation_issue"
    PAYMENT_DISPUTE = "payment_dispute"
    FRAUD_SUSPECTED = "fraud_suspected"
    CONTRACT_BREACH = "contract_breach"
    OTHER = "other"


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    LIMIT = "limit"
    MARKET = "market"


class OrderStatus(Enum):
    """Exchange order lifecycle"""
    OPEN = "open"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"


class WithdrawalStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VenueTradeStatus(Enum):
    """Venue relay settlement states"""
    SUBMITTED = "submitted"  # Balance locked, venue call in flight
    SETTLED = "settled"
    FAILED = "failed"


class NotificationPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# TRADE DEALS
# ============================================================================

class Deal(Base):
    """Bilateral trade agreement between a buyer and a seller"""
    __tablename__ = 'trade_deals'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)  # DEAL-2026-0001
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Parties
    buyer_wallet: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    buyer_company: Mapped[str] = mapped_column(String(255), nullable=False)
    buyer_country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    buyer_contact: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_kyc_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    seller_wallet: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_company: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    seller_contact: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    seller_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    seller_kyc_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Product
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    product_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hs_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)  # quantity * unit_price

    # Trade terms
    incoterm: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    origin_country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    destination_country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    origin_port: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    destination_port: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    delivery_date = Column(Date, nullable=True)
    payment_terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    inspection_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    insurance_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Lifecycle
    stage: Mapped[str] = mapped_column(String(32), default=DealStage.DRAFT.value, nullable=False, index=True)
    stage_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    # Escrow accounting
    escrow_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    escrow_funded: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    escrow_released: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    escrow_status: Mapped[str] = mapped_column(String(20), default=EscrowStatus.PENDING.value, nullable=False)
    escrow_fee_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    escrow_contract_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    milestones: Mapped[List["DealMilestone"]] = relationship(
        "DealMilestone", back_populates="deal", order_by="DealMilestone.order_index"
    )
    timeline_events: Mapped[List["DealTimelineEvent"]] = relationship(
        "DealTimelineEvent", back_populates="deal",
        order_by=lambda: [DealTimelineEvent.created_at, DealTimelineEvent.id]
    )

    __table_args__ = (
        CheckConstraint('buyer_wallet <> seller_wallet', name='ck_deal_distinct_parties'),
        CheckConstraint('quantity > 0', name='ck_deal_quantity_positive'),
        CheckConstraint('unit_price > 0', name='ck_deal_unit_price_positive'),
        CheckConstraint('escrow_funded >= 0', name='ck_deal_escrow_funded_positive'),
        CheckConstraint('escrow_funded <= escrow_amount', name='ck_deal_escrow_funded_cap'),
        CheckConstraint('escrow_released >= 0', name='ck_deal_escrow_released_positive'),
        CheckConstraint('escrow_released <= escrow_funded', name='ck_deal_escrow_released_cap'),
        Index('ix_trade_deals_buyer_stage', 'buyer_wallet', 'stage'),
        Index('ix_trade_deals_seller_stage', 'seller_wallet', 'stage'),
        Index('ix_trade_deals_created', 'created_at'),
    )


class DealMilestone(Base):
    """Percentage-weighted escrow payment tranche of a deal"""
    __tablename__ = 'deal_milestones'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, ForeignKey('trade_deals.id'), nullable=False, index=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    milestone_type: Mapped[str] = mapped_column(String(32), default=MilestoneType.CUSTOM.value, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    auto_release: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=MilestoneStatus.PENDING.value, nullable=False)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    release_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    deal: Mapped["Deal"] = relationship("Deal", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint('deal_id', 'order_index', name='uq_milestone_deal_order'),
        CheckConstraint(
            'payment_percentage >= 0 AND payment_percentage <= 100',
            name='ck_milestone_percentage_range'
        ),
    )


class DealTimelineEvent(Base):
    """Append-only audit entry for a deal"""
    __tablename__ = 'deal_timeline_events'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, ForeignKey('trade_deals.id'), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    event_metadata = Column('metadata', JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    deal: Mapped["Deal"] = relationship("Deal", back_populates="timeline_events")

    __table_args__ = (
        Index('ix_timeline_deal_created', 'deal_id', 'created_at', 'id'),
    )


class EscrowMovement(Base):
    """On-chain escrow funding/release keyed by transaction hash (replay guard)"""
    __tablename__ = 'deal_escrow_movements'

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey('trade_deals.id'), nullable=False, index=True)
    tx_hash = Column(String(128), unique=True, nullable=False)
    movement_type = Column(String(16), nullable=False)  # fund, release
    amount = Column(Numeric(38, 18), nullable=False)
    milestone_id = Column(Integer, ForeignKey('deal_milestones.id'), nullable=True)
    actor = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_escrow_movement_amount_positive'),
    )


class DealReferenceCounter(Base):
    """Yearly sequence backing DEAL-<year>-<seq> references"""
    __tablename__ = 'deal_reference_counters'

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_sequence = Column(Integer, default=0, nullable=False)


class Dispute(Base):
    """Escalation attached to a disputed deal"""
    __tablename__ = 'trade_disputes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey('trade_deals.id'), nullable=False, index=True)
    dispute_type = Column(String(32), default=DisputeType.OTHER.value, nullable=False)
    status = Column(String(32), default=DisputeStatus.SUBMITTED.value, nullable=False, index=True)

    initiator_wallet = Column(String(64), nullable=False)
    respondent_wallet = Column(String(64), nullable=False)
    arbiter_wallet = Column(String(64), nullable=True)

    claimed_amount = Column(Numeric(38, 18), default=0, nullable=False)
    currency = Column(String(10), nullable=True)
    description = Column(Text, nullable=False)
    resolution_notes = Column(Text, nullable=True)
    resolution_fee = Column(Numeric(38, 18), default=0, nullable=False)

    deadline = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('claimed_amount >= 0', name='ck_dispute_claim_positive'),
        Index('ix_disputes_status_created', 'status', 'created_at'),
    )


# ============================================================================
# EXCHANGE
# ============================================================================

class ExchangeBalance(Base):
    """Per-wallet, per-token custody balance"""
    __tablename__ = 'exchange_balances'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token: Mapped[str] = mapped_column(String(16), nullable=False)
    available_balance: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    locked_balance: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('wallet_address', 'token', name='uq_exchange_balance_wallet_token'),
        CheckConstraint('available_balance >= 0', name='ck_exchange_available_positive'),
        CheckConstraint('locked_balance >= 0', name='ck_exchange_locked_positive'),
    )


class TradingPair(Base):
    """Tradable pair; venue_symbol marks venue-backed pairs"""
    __tablename__ = 'exchange_trading_pairs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(20), unique=True, nullable=False)  # e.g. ETH-USDC
    base_token = Column(String(16), nullable=False)
    quote_token = Column(String(16), nullable=False)
    min_order_size = Column(Numeric(38, 18), nullable=False)
    price_precision = Column(Integer, default=8, nullable=False)
    quantity_precision = Column(Integer, default=8, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    venue_symbol = Column(String(20), nullable=True)  # e.g. ETHUSDC on MEXC
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('base_token <> quote_token', name='ck_pair_distinct_tokens'),
        CheckConstraint('min_order_size > 0', name='ck_pair_min_order_positive'),
    )


class ExchangeOrder(Base):
    """Order on an internal pair"""
    __tablename__ = 'exchange_orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    pair_id = Column(Integer, ForeignKey('exchange_trading_pairs.id'), nullable=False)
    side = Column(String(4), nullable=False)
    order_type = Column(String(8), nullable=False)
    price = Column(Numeric(38, 18), nullable=True)
    quantity = Column(Numeric(38, 18), nullable=False)
    filled_quantity = Column(Numeric(38, 18), default=0, nullable=False)
    locked_amount = Column(Numeric(38, 18), default=0, nullable=False)  # Outstanding reservation
    locked_token = Column(String(16), nullable=False)
    status = Column(String(16), default=OrderStatus.OPEN.value, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    @property
    def remaining_quantity(self) -> Decimal:
        return Decimal(self.quantity) - Decimal(self.filled_quantity or 0)

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_quantity_positive'),
        CheckConstraint('filled_quantity >= 0', name='ck_order_filled_positive'),
        CheckConstraint('filled_quantity <= quantity', name='ck_order_filled_cap'),
        CheckConstraint('locked_amount >= 0', name='ck_order_locked_positive'),
        CheckConstraint(
            "(order_type = 'limit' AND price IS NOT NULL) OR (order_type = 'market' AND price IS NULL)",
            name='ck_order_price_matches_type'
        ),
        Index('ix_orders_book', 'pair_id', 'side', 'status', 'price', 'created_at'),
    )


class ExchangeTrade(Base):
    """Immutable fill between a buy order and a sell order"""
    __tablename__ = 'exchange_trades'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pair_id = Column(Integer, ForeignKey('exchange_trading_pairs.id'), nullable=False)
    buy_order_id = Column(Integer, ForeignKey('exchange_orders.id'), nullable=False)
    sell_order_id = Column(Integer, ForeignKey('exchange_orders.id'), nullable=False)
    buyer_wallet = Column(String(64), nullable=False, index=True)
    seller_wallet = Column(String(64), nullable=False, index=True)
    taker_side = Column(String(4), nullable=False)
    price = Column(Numeric(38, 18), nullable=False)
    quantity = Column(Numeric(38, 18), nullable=False)
    total = Column(Numeric(38, 18), nullable=False)
    buyer_fee = Column(Numeric(38, 18), default=0, nullable=False)  # In base token
    seller_fee = Column(Numeric(38, 18), default=0, nullable=False)  # In quote token
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_trades_pair_created', 'pair_id', 'created_at'),
    )


class ExchangeDeposit(Base):
    """Confirmed on-chain deposit, unique per transaction hash"""
    __tablename__ = 'exchange_deposits'

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    token = Column(String(16), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    tx_hash = Column(String(128), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class ExchangeWithdrawal(Base):
    """Withdrawal request handed to settlement"""
    __tablename__ = 'exchange_withdrawals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    token = Column(String(16), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    destination_address = Column(String(128), nullable=False)
    status = Column(String(16), default=WithdrawalStatus.PENDING.value, nullable=False)
    tx_hash = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
    )


class VenueTrade(Base):
    """Market order relayed to the external venue"""
    __tablename__ = 'venue_trades'

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    pair_id = Column(Integer, ForeignKey('exchange_trading_pairs.id'), nullable=False)
    venue_symbol = Column(String(20), nullable=False)
    side = Column(String(4), nullable=False)
    quantity = Column(Numeric(38, 18), nullable=False)
    locked_token = Column(String(16), nullable=False)
    locked_amount = Column(Numeric(38, 18), nullable=False)
    status = Column(String(16), default=VenueTradeStatus.SUBMITTED.value, nullable=False, index=True)

    venue_order_id = Column(String(64), nullable=True)
    executed_quantity = Column(Numeric(38, 18), nullable=True)
    executed_price = Column(Numeric(38, 18), nullable=True)
    received_token = Column(String(16), nullable=True)
    received_amount = Column(Numeric(38, 18), nullable=True)
    spent_amount = Column(Numeric(38, 18), nullable=True)
    markup_revenue = Column(Numeric(38, 18), nullable=True)
    fee_revenue = Column(Numeric(38, 18), nullable=True)
    platform_revenue = Column(Numeric(38, 18), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)


class PlatformRevenue(Base):
    """Fee and markup income per trade"""
    __tablename__ = 'platform_revenue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    revenue_type = Column(String(32), nullable=False)  # trade_fee, venue_markup
    source_type = Column(String(32), nullable=False)  # exchange_trade, venue_trade
    source_id = Column(Integer, nullable=False)
    token = Column(String(16), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_platform_revenue_source', 'source_type', 'source_id'),
    )


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

class DistributedLock(Base):
    """Database-backed distributed lock with lease expiry"""
    __tablename__ = 'distributed_locks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lock_name = Column(String(255), unique=True, nullable=False)
    locked_by = Column(String(255), nullable=True)
    locked_at = Column(DateTime(timezone=False), default=utc_now_naive, nullable=True)
    expires_at = Column(DateTime(timezone=False), nullable=False)
    lock_metadata = Column('metadata', JSONType, nullable=True)

    __table_args__ = (
        Index('ix_distributed_locks_expires_at', 'expires_at'),
    )


class NotificationQueue(Base):
    """Outbound notifications handed to the delivery layer"""
    __tablename__ = 'notification_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_wallet = Column(String(64), nullable=False, index=True)
    notification_type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONType, nullable=True)
    priority = Column(String(16), default=NotificationPriority.MEDIUM.value, nullable=False)
    action_url = Column(String(255), nullable=True)
    status = Column(String(20), default='pending', nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_notifications_recipient_status', 'recipient_wallet', 'status'),
    )
