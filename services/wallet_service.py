"""
Wallet Service - the wallet ledger

Every balance change goes through ``apply_entry``: one immutable ledger
row per event, written in the caller's unit of work together with the
wallet balance update. Escrow memo entries (hold, platform fee, refund)
are recorded against the seller wallet for traceability but do not move
the available balance; see ``BALANCE_AFFECTING_TYPES``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable, Union

from sqlalchemy import select, func, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Wallet, LedgerEntry, LedgerEntryType, Order, User, Withdrawal, WithdrawalStatus,
    BALANCE_AFFECTING_TYPES, ACTIVE_ESCROW_STATUSES, NotificationType, generate_id
)
from services.notification_service import queue_notification
from utils.atomic_transactions import atomic_transaction, lock_wallet
from utils.datetime_helpers import get_naive_utc_now, ensure_naive_datetime, current_month_bounds
from utils.exception_handler import NotFoundError, ResourceConflictError, ValidationError
from utils.pagination import Page, paginate

logger = logging.getLogger(__name__)

ADJUSTMENT_CATEGORIES = frozenset({
    LedgerEntryType.ADJUSTMENT.value,
    LedgerEntryType.BONUS.value,
    LedgerEntryType.PENALTY.value,
})

HISTORY_SORTS = {
    "newest": (LedgerEntry.created_at.desc(),),
    "oldest": (LedgerEntry.created_at.asc(),),
    "amount_high": (LedgerEntry.amount.desc(), LedgerEntry.created_at.desc()),
    "amount_low": (LedgerEntry.amount.asc(), LedgerEntry.created_at.desc()),
}

RECENT_TRANSACTIONS_LIMIT = 10


@dataclass
class WalletSummary:
    wallet_id: str
    user_id: str
    balance: int
    pending_balance: int
    available_for_withdrawal: int
    this_month_earnings: int
    this_month_withdrawals: int
    total_earnings: int
    total_withdrawn: int
    pending_withdrawals_count: int
    pending_withdrawals_amount: int
    recent_transactions: List[LedgerEntry] = field(default_factory=list)


@dataclass
class BalanceCheck:
    wallet_id: str
    stored_balance: int
    ledger_balance: int

    @property
    def is_consistent(self) -> bool:
        return self.stored_balance == self.ledger_balance

    @property
    def drift(self) -> int:
        return self.stored_balance - self.ledger_balance


def _entry_type_value(entry_type: Union[LedgerEntryType, str]) -> str:
    value = entry_type.value if isinstance(entry_type, LedgerEntryType) else entry_type
    if value not in LedgerEntryType._value2member_map_:
        raise ValidationError(f"Unknown ledger entry type: {value}")
    return value


class WalletService:
    """Wallet ledger operations; all run inside the caller's Session"""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    def get_or_create_wallet(self, user_id: str) -> Wallet:
        """
        Return the user's wallet, creating it with a zero balance if absent.

        Creation uses INSERT ... ON CONFLICT DO NOTHING so two concurrent
        first payments for the same seller cannot violate the unique
        ``wallets.user_id`` constraint.
        """
        with atomic_transaction(self.db):
            if self.db.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

            dialect = self.db.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
                now = get_naive_utc_now()
                self.db.execute(
                    insert(Wallet)
                    .values(id=generate_id(), user_id=user_id, balance=0, created_at=now, updated_at=now)
                    .on_conflict_do_nothing(index_elements=["user_id"])
                )
            else:
                existing = self.db.execute(select(Wallet.id).where(Wallet.user_id == user_id)).scalar_one_or_none()
                if existing is None:
                    self.db.add(Wallet(user_id=user_id, balance=0))
                    self.db.flush()

            return self.db.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one()

    def get_wallet(self, user_id: str) -> Wallet:
        wallet = self.db.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()
        if wallet is None:
            raise NotFoundError(f"Wallet for user {user_id} not found")
        return wallet

    # ------------------------------------------------------------------
    # Ledger mutation
    # ------------------------------------------------------------------

    def entry_exists(
        self,
        entry_type: Union[LedgerEntryType, str],
        ref_order_id: Optional[str] = None,
        ref_withdrawal_id: Optional[str] = None,
    ) -> bool:
        type_value = _entry_type_value(entry_type)
        if ref_order_id is not None:
            criteria = LedgerEntry.ref_order_id == ref_order_id
        elif ref_withdrawal_id is not None:
            criteria = LedgerEntry.ref_withdrawal_id == ref_withdrawal_id
        else:
            return False
        found = self.db.execute(
            select(LedgerEntry.id).where(criteria, LedgerEntry.type == type_value).limit(1)
        ).scalar_one_or_none()
        return found is not None

    def apply_entry(
        self,
        wallet_id: str,
        entry_type: Union[LedgerEntryType, str],
        amount: int,
        ref_order_id: Optional[str] = None,
        ref_withdrawal_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """
        Insert one ledger entry and adjust the wallet balance.

        Raises:
            ResourceConflictError: an entry of this type already exists for
                the referenced order/withdrawal.
            ValidationError: zero or non-integer amount, both references
                set, or a debit that would take the balance below the
                configured minimum.
        """
        type_value = _entry_type_value(entry_type)
        if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
            raise ValidationError(f"Ledger amount must be a non-zero integer, got {amount!r}")
        if ref_order_id is not None and ref_withdrawal_id is not None:
            raise ValidationError("A ledger entry references an order or a withdrawal, not both")

        with atomic_transaction(self.db):
            wallet = lock_wallet(self.db, wallet_id)

            if self.entry_exists(type_value, ref_order_id, ref_withdrawal_id):
                ref = ref_order_id or ref_withdrawal_id
                logger.warning(f"🔁 LEDGER_DUPLICATE: {type_value} already recorded for {ref}")
                raise ResourceConflictError(
                    f"{type_value} already recorded for {ref}",
                    details={"type": type_value, "ref": ref},
                )

            balance_before = wallet.balance
            balance_after = balance_before
            if type_value in BALANCE_AFFECTING_TYPES:
                balance_after = balance_before + amount
                if amount < 0 and balance_after < Config.WALLET_MIN_BALANCE:
                    raise ValidationError(
                        "Insufficient wallet balance",
                        details={"balance": balance_before, "requested": -amount},
                    )

            entry = LedgerEntry(
                wallet_id=wallet.id,
                type=type_value,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
                ref_order_id=ref_order_id,
                ref_withdrawal_id=ref_withdrawal_id,
                description=description,
                entry_metadata=metadata or {},
            )
            self.db.add(entry)
            wallet.balance = balance_after

            try:
                self.db.flush()
            except IntegrityError as e:
                # A concurrent unit of work inserted the same (ref, type) first
                raise ResourceConflictError(
                    f"{type_value} already recorded for {ref_order_id or ref_withdrawal_id}"
                ) from e

            logger.info(
                f"📒 LEDGER_{type_value}: wallet={wallet.id} amount={amount:+d} "
                f"balance {balance_before} -> {balance_after}"
            )
            return entry

    def adjust_balance(
        self,
        admin_id: str,
        user_id: str,
        category: Union[LedgerEntryType, str],
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Manual admin adjustment: ADJUSTMENT (either sign), BONUS (+) or PENALTY (-)"""
        category_value = _entry_type_value(category)
        if category_value not in ADJUSTMENT_CATEGORIES:
            raise ValidationError(f"{category_value} is not a manual adjustment category")
        reason = (reason or "").strip()
        if not 20 <= len(reason) <= 500:
            raise ValidationError("Adjustment reason must be between 20 and 500 characters")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
            raise ValidationError("Adjustment amount must be a non-zero integer")
        if category_value == LedgerEntryType.BONUS.value and amount < 0:
            raise ValidationError("A bonus must be positive")
        if category_value == LedgerEntryType.PENALTY.value and amount > 0:
            raise ValidationError("A penalty must be negative")

        with atomic_transaction(self.db):
            wallet = self.get_or_create_wallet(user_id)
            entry = self.apply_entry(
                wallet.id,
                category_value,
                amount,
                description=reason,
                metadata={**(metadata or {}), "adjusted_by": admin_id},
            )
            queue_notification(
                self.db,
                user_id,
                f"Your wallet balance was adjusted by {amount:+,} {Config.CURRENCY}: {reason}",
                link=f"{Config.FRONTEND_URL}/wallet",
                notification_type=NotificationType.WALLET,
            )
            logger.info(f"🛠️ WALLET_ADJUSTMENT: admin={admin_id} user={user_id} {category_value} {amount:+d}")
            return entry

    # ------------------------------------------------------------------
    # Derived balances (always aggregated, never stored)
    # ------------------------------------------------------------------

    def _sum_entries(
        self,
        wallet_id: str,
        types: Iterable[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        criteria = [LedgerEntry.wallet_id == wallet_id, LedgerEntry.type.in_(list(types))]
        if start is not None:
            criteria.append(LedgerEntry.created_at >= ensure_naive_datetime(start))
        if end is not None:
            criteria.append(LedgerEntry.created_at < ensure_naive_datetime(end))
        total = self.db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(and_(*criteria))
        ).scalar_one()
        return int(total)

    def get_pending_balance(self, wallet_id: str) -> int:
        """Escrow still held for orders that have not been released or refunded"""
        held = self.db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .join(Order, Order.id == LedgerEntry.ref_order_id)
            .where(
                LedgerEntry.wallet_id == wallet_id,
                LedgerEntry.type == LedgerEntryType.ESCROW_HOLD.value,
                Order.status.in_(list(ACTIVE_ESCROW_STATUSES)),
            )
        ).scalar_one()
        return abs(int(held))

    def get_earnings(self, wallet_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None) -> int:
        return self._sum_entries(wallet_id, [LedgerEntryType.ESCROW_RELEASE.value], start, end)

    def get_withdrawn(self, wallet_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None) -> int:
        """Gross amount held for withdrawals in the period, net of reversals"""
        net = self._sum_entries(
            wallet_id,
            [LedgerEntryType.WITHDRAWAL.value, LedgerEntryType.WITHDRAWAL_REVERSAL.value],
            start,
            end,
        )
        return -net

    def get_total_earnings(self, wallet_id: str) -> int:
        return self.get_earnings(wallet_id)

    def get_total_withdrawn(self, user_id: str) -> int:
        """Net amount actually paid out by completed withdrawals"""
        total = self.db.execute(
            select(func.coalesce(func.sum(Withdrawal.net_amount), 0)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.COMPLETED.value,
            )
        ).scalar_one()
        return int(total)

    def get_ledger_balance(self, wallet_id: str) -> int:
        return self._sum_entries(wallet_id, BALANCE_AFFECTING_TYPES)

    def verify_wallet_integrity(self, wallet_id: str) -> BalanceCheck:
        """Compare the stored balance with the sum of balance-affecting entries"""
        wallet = self.db.get(Wallet, wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        check = BalanceCheck(
            wallet_id=wallet_id,
            stored_balance=wallet.balance,
            ledger_balance=self.get_ledger_balance(wallet_id),
        )
        if not check.is_consistent:
            logger.error(
                f"🚨 BALANCE_DRIFT: wallet={wallet_id} stored={check.stored_balance} "
                f"ledger={check.ledger_balance} drift={check.drift}"
            )
        return check

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def get_wallet_summary(self, user_id: str) -> WalletSummary:
        wallet = self.get_or_create_wallet(user_id)
        month_start, month_end = current_month_bounds()

        pending_count, pending_amount = self.db.execute(
            select(func.count(Withdrawal.id), func.coalesce(func.sum(Withdrawal.amount), 0)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.PENDING.value,
            )
        ).one()

        recent = self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.wallet_id == wallet.id)
            .order_by(LedgerEntry.created_at.desc())
            .limit(RECENT_TRANSACTIONS_LIMIT)
        ).scalars().all()

        return WalletSummary(
            wallet_id=wallet.id,
            user_id=user_id,
            balance=wallet.balance,
            pending_balance=self.get_pending_balance(wallet.id),
            available_for_withdrawal=max(0, wallet.balance - Config.WALLET_MIN_BALANCE),
            this_month_earnings=self.get_earnings(wallet.id, month_start, month_end),
            this_month_withdrawals=self.get_withdrawn(wallet.id, month_start, month_end),
            total_earnings=self.get_total_earnings(wallet.id),
            total_withdrawn=self.get_total_withdrawn(user_id),
            pending_withdrawals_count=int(pending_count),
            pending_withdrawals_amount=int(pending_amount),
            recent_transactions=list(recent),
        )

    def get_transaction_history(
        self,
        user_id: str,
        entry_type: Optional[Union[LedgerEntryType, str]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        order_id: Optional[str] = None,
        sort_by: str = "newest",
        page: int = 1,
        limit: int = 20,
    ) -> Page[LedgerEntry]:
        if sort_by not in HISTORY_SORTS:
            raise ValidationError(f"Unsupported sort order: {sort_by}")
        start_date = ensure_naive_datetime(start_date)
        end_date = ensure_naive_datetime(end_date)
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")

        wallet = self.get_wallet(user_id)
        stmt = select(LedgerEntry).where(LedgerEntry.wallet_id == wallet.id)
        if entry_type is not None:
            stmt = stmt.where(LedgerEntry.type == _entry_type_value(entry_type))
        if start_date is not None:
            stmt = stmt.where(LedgerEntry.created_at >= start_date)
        if end_date is not None:
            stmt = stmt.where(LedgerEntry.created_at <= end_date)
        if order_id is not None:
            stmt = stmt.where(LedgerEntry.ref_order_id == order_id)

        return paginate(self.db, stmt.order_by(*HISTORY_SORTS[sort_by]), page, limit)
