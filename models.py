"""
Marketplace Escrow Platform - Database Schema
=============================================

Schema for the escrow & wallet consistency engine:
- Orders snapshotting a service listing and moving through escrow
- Payments reconciled from gateway notifications
- Per-seller wallets with an append-only ledger
- Admin-mediated withdrawals and disputes

All monetary columns are integers in the smallest currency unit.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from sqlalchemy import (
    Integer, BigInteger, String, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def generate_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class ServiceStatus(Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class OrderStatus(Enum):
    """Order lifecycle states"""
    DRAFT = "draft"
    WAITING_PAYMENT = "waiting_payment"
    PAID_ESCROW = "paid_escrow"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    REVISION = "revision"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


# is_paid is true exactly while the order holds (or has released) escrowed money
PAID_ORDER_STATUSES = frozenset({
    OrderStatus.PAID_ESCROW.value,
    OrderStatus.IN_PROGRESS.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.REVISION.value,
    OrderStatus.COMPLETED.value,
    OrderStatus.DISPUTED.value,
})

# Orders whose escrow hold is still open
ACTIVE_ESCROW_STATUSES = frozenset({
    OrderStatus.PAID_ESCROW.value,
    OrderStatus.IN_PROGRESS.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.REVISION.value,
    OrderStatus.DISPUTED.value,
})


class PaymentStatus(Enum):
    """Normalized gateway payment states"""
    PENDING = "pending"
    SETTLEMENT = "settlement"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUND = "refund"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.SETTLEMENT.value,
    PaymentStatus.SUCCESS.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.EXPIRED.value,
    PaymentStatus.CANCELLED.value,
    PaymentStatus.REFUND.value,
})

SUCCESSFUL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.SETTLEMENT.value,
    PaymentStatus.SUCCESS.value,
})


class LedgerEntryType(Enum):
    """Wallet ledger entry types"""
    ESCROW_HOLD = "ESCROW_HOLD"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    WITHDRAWAL = "WITHDRAWAL"
    WITHDRAWAL_REVERSAL = "WITHDRAWAL_REVERSAL"
    REFUND = "REFUND"
    PLATFORM_FEE = "PLATFORM_FEE"
    ADJUSTMENT = "ADJUSTMENT"
    BONUS = "BONUS"
    PENALTY = "PENALTY"


# Entries that move wallet.balance; the balance is the sum of these
BALANCE_AFFECTING_TYPES = frozenset({
    LedgerEntryType.ESCROW_RELEASE.value,
    LedgerEntryType.WITHDRAWAL.value,
    LedgerEntryType.WITHDRAWAL_REVERSAL.value,
    LedgerEntryType.ADJUSTMENT.value,
    LedgerEntryType.BONUS.value,
    LedgerEntryType.PENALTY.value,
})


class WithdrawalStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DisputeStatus(Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class DisputeResolution(Enum):
    RELEASE_TO_SELLER = "RELEASE_TO_SELLER"
    REFUND_TO_BUYER = "REFUND_TO_BUYER"


class NotificationType(Enum):
    ORDER = "ORDER"
    PAYMENT = "PAYMENT"
    WALLET = "WALLET"
    DISPUTE = "DISPUTE"


# ============================================================================
# EXTERNAL COLLABORATOR TABLES (read / statistics only)
# ============================================================================

class User(Base):
    """Marketplace account, as far as the escrow core needs it"""
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.BUYER.value, nullable=False)
    total_orders_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User(id={self.id}, role={self.role})>"


class Service(Base):
    """Service listing an order snapshots at creation"""
    __tablename__ = 'services'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delivery_time: Mapped[int] = mapped_column(Integer, nullable=False)  # days
    revisions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ServiceStatus.ACTIVE.value, nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    seller: Mapped["User"] = relationship("User")

    __table_args__ = (
        CheckConstraint('price > 0', name='ck_service_price_positive'),
    )


# ============================================================================
# ESCROW CORE
# ============================================================================

class Order(Base):
    """One buyer-seller engagement for a fixed service snapshot"""
    __tablename__ = 'orders'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    buyer_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(36), ForeignKey('services.id'), nullable=False, index=True)

    # Snapshot of the listing at creation - never updated afterwards
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delivery_time: Mapped[int] = mapped_column(Integer, nullable=False)
    max_revisions: Mapped[int] = mapped_column(Integer, nullable=False)

    requirements: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attachments: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    delivery_files: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    delivery_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.DRAFT.value, nullable=False, index=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revision_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    buyer: Mapped["User"] = relationship("User", foreign_keys=[buyer_id])
    seller: Mapped["User"] = relationship("User", foreign_keys=[seller_id])
    service: Mapped["Service"] = relationship("Service")
    payment: Mapped[Optional["Payment"]] = relationship("Payment", back_populates="order", uselist=False)
    disputes: Mapped[List["Dispute"]] = relationship("Dispute", back_populates="order")

    __table_args__ = (
        CheckConstraint('price > 0', name='ck_order_price_positive'),
        CheckConstraint('revision_count >= 0', name='ck_order_revision_count_positive'),
        CheckConstraint('revision_count <= max_revisions', name='ck_order_revision_quota'),
        Index('ix_orders_buyer_status', 'buyer_id', 'status'),
        Index('ix_orders_seller_status', 'seller_id', 'status'),
    )

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, price={self.price})>"


class Payment(Base):
    """One gateway transaction record per order"""
    __tablename__ = 'payments'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey('orders.id'), nullable=False, unique=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    provider: Mapped[str] = mapped_column(String(50), default="midtrans", nullable=False)
    token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    payment_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="IDR", nullable=False)
    payment_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payment")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def cancelled_locally(self) -> bool:
        """Cancelled by the marketplace while still pending at the gateway"""
        return bool((self.payment_metadata or {}).get("cancelled_locally"))


class Wallet(Base):
    """Seller wallet; balance is the sum of its balance-affecting ledger entries"""
    __tablename__ = 'wallets'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, unique=True)
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="wallet")
    entries: Mapped[List["LedgerEntry"]] = relationship(
        "LedgerEntry", back_populates="wallet", order_by="LedgerEntry.created_at"
    )

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_wallet_balance_positive'),
    )


class LedgerEntry(Base):
    """Immutable wallet ledger entry"""
    __tablename__ = 'wallet_transactions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    wallet_id: Mapped[str] = mapped_column(String(36), ForeignKey('wallets.id'), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # signed: negative = debit
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ref_order_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey('orders.id'), nullable=True)
    ref_withdrawal_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey('withdrawals.id'), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    entry_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    wallet: Mapped["Wallet"] = relationship("Wallet", back_populates="entries")

    # NULL refs never collide, so adjustments are unconstrained
    __table_args__ = (
        UniqueConstraint('ref_order_id', 'type', name='uq_ledger_order_entry_type'),
        UniqueConstraint('ref_withdrawal_id', 'type', name='uq_ledger_withdrawal_entry_type'),
        CheckConstraint('amount <> 0', name='ck_ledger_amount_nonzero'),
        CheckConstraint(
            'ref_order_id IS NULL OR ref_withdrawal_id IS NULL',
            name='ck_ledger_single_reference'
        ),
        Index('ix_wallet_transactions_wallet_type_created', 'wallet_id', 'type', 'created_at'),
    )

    def __repr__(self):
        return f"<LedgerEntry(type={self.type}, amount={self.amount}, wallet_id={self.wallet_id})>"


class Withdrawal(Base):
    """Seller payout request; the gross amount is held at creation"""
    __tablename__ = 'withdrawals'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    wallet_id: Mapped[str] = mapped_column(String(36), ForeignKey('wallets.id'), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    bank_code: Mapped[str] = mapped_column(String(20), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_number: Mapped[str] = mapped_column(String(30), nullable=False)
    account_holder_name: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=WithdrawalStatus.PENDING.value, nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    withdrawal_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    wallet: Mapped["Wallet"] = relationship("Wallet")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
        CheckConstraint('net_amount > 0', name='ck_withdrawal_net_positive'),
        CheckConstraint('fee + net_amount = amount', name='ck_withdrawal_fee_split'),
        Index('ix_withdrawals_user_status', 'user_id', 'status'),
    )


class Dispute(Base):
    """Escalation freezing an order until an admin resolves it"""
    __tablename__ = 'disputes'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey('orders.id'), nullable=False, index=True)
    opened_by_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DisputeStatus.OPEN.value, nullable=False, index=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    resolved_by_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="disputes")
    messages: Mapped[List["DisputeMessage"]] = relationship(
        "DisputeMessage", back_populates="dispute", order_by="DisputeMessage.created_at"
    )

    def __repr__(self):
        return f"<Dispute(order_id={self.order_id}, status={self.status})>"


class DisputeMessage(Base):
    """Messages exchanged while a dispute is open"""
    __tablename__ = 'dispute_messages'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    dispute_id: Mapped[str] = mapped_column(String(36), ForeignKey('disputes.id'), nullable=False, index=True)
    sender_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute: Mapped["Dispute"] = relationship("Dispute", back_populates="messages")


class WebhookEvent(Base):
    """Processed gateway notifications, keyed for redelivery detection"""
    __tablename__ = 'webhook_events'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    transaction_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'event_id', name='uq_webhook_event_provider_id'),
    )
