"""
Withdrawal Service - seller payouts through admin approval

pending -> processing -> completed, pending -> cancelled, processing -> failed.
The gross amount is held from the wallet when the request is created;
every way back out (reject, fail, user cancel) goes through
``_reverse_hold`` so hold and reversal always mirror each other.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, List

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from config import Config
from models import (
    Withdrawal, WithdrawalStatus, LedgerEntry, LedgerEntryType, NotificationType
)
from services.notification_service import queue_notification
from services.wallet_service import WalletService
from utils.atomic_transactions import atomic_transaction, lock_withdrawal, lock_wallet_for_user
from utils.bank_codes import is_valid_bank_code, get_bank_name
from utils.data_sanitizer import mask_account_number
from utils.datetime_helpers import get_naive_utc_now
from utils.entity_state_machines import WithdrawalStateValidator
from utils.exception_handler import (
    NotFoundError, ForbiddenError, ValidationError, QuotaExceededError
)
from utils.fee_calculator import FeeCalculator
from utils.pagination import Page, paginate

logger = logging.getLogger(__name__)

ACCOUNT_NUMBER_PATTERN = re.compile(r"^[0-9]{5,25}$")
ACCOUNT_HOLDER_PATTERN = re.compile(r"^[A-Za-z\s.]{3,100}$")

DEFAULT_APPROVE_NOTE = "Approved and being processed"
DEFAULT_COMPLETE_NOTE = "Transfer successful"


@dataclass
class BankDetails:
    bank_code: str
    account_number: str
    account_holder_name: str

    def validated(self) -> "BankDetails":
        code = (self.bank_code or "").strip().upper()
        if not is_valid_bank_code(code):
            raise ValidationError(f"Unsupported bank code: {self.bank_code}")
        number = (self.account_number or "").strip()
        if not ACCOUNT_NUMBER_PATTERN.match(number):
            raise ValidationError("Account number must be 5-25 digits")
        holder = (self.account_holder_name or "").strip()
        if not ACCOUNT_HOLDER_PATTERN.match(holder):
            raise ValidationError("Account holder name may only contain letters, spaces and dots (3-100 characters)")
        return BankDetails(bank_code=code, account_number=number, account_holder_name=holder.upper())


class WithdrawalService:
    """Withdrawal workflow bound to one Session"""

    def __init__(self, db: Session):
        self.db = db
        self.wallets = WalletService(db)

    @staticmethod
    def _link() -> str:
        return f"{Config.FRONTEND_URL}/wallet/withdrawals"

    def _set_status(self, withdrawal: Withdrawal, new_status: WithdrawalStatus) -> None:
        WithdrawalStateValidator.ensure_transition(withdrawal.status, new_status.value, withdrawal.id)
        logger.info(f"🏦 WITHDRAWAL_STATUS: {withdrawal.id} {withdrawal.status} -> {new_status.value}")
        withdrawal.status = new_status.value

    def _reverse_hold(self, withdrawal: Withdrawal, reason: str, actor_id: str) -> LedgerEntry:
        """Return a withdrawal's held amount to the wallet"""
        return self.wallets.apply_entry(
            withdrawal.wallet_id,
            LedgerEntryType.WITHDRAWAL_REVERSAL,
            withdrawal.amount,
            ref_withdrawal_id=withdrawal.id,
            description=f"Withdrawal returned: {reason}",
            metadata={"reason": reason, "actor_id": actor_id},
        )

    def count_pending(self, user_id: str) -> int:
        return self.db.execute(
            select(func.count(Withdrawal.id)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.PENDING.value,
            )
        ).scalar_one()

    def create(
        self,
        user_id: str,
        amount: int,
        bank_details: BankDetails,
        notes: Optional[str] = None,
    ) -> Withdrawal:
        """Request a payout; the gross amount leaves the available balance immediately"""
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError("Withdrawal amount must be a whole number")
        if not Config.MIN_WITHDRAWAL_AMOUNT <= amount <= Config.MAX_WITHDRAWAL_AMOUNT:
            raise ValidationError(
                f"Withdrawal amount must be between {Config.MIN_WITHDRAWAL_AMOUNT:,} and "
                f"{Config.MAX_WITHDRAWAL_AMOUNT:,} {Config.CURRENCY}"
            )
        bank = bank_details.validated()
        split = FeeCalculator.calculate_withdrawal_fee(amount)
        if split.net <= 0:
            raise ValidationError("Withdrawal amount does not cover the withdrawal fee")

        with atomic_transaction(self.db):
            # The wallet lock serializes concurrent requests from the same user
            wallet = lock_wallet_for_user(self.db, user_id)
            if wallet is None:
                raise NotFoundError("Wallet not found")

            available = wallet.balance - Config.WALLET_MIN_BALANCE
            if available < amount:
                raise ValidationError(
                    f"Insufficient balance: available {max(0, available):,} {Config.CURRENCY}",
                    details={"available": max(0, available), "requested": amount},
                )
            if self.count_pending(user_id) >= Config.MAX_PENDING_WITHDRAWALS:
                raise QuotaExceededError(
                    f"You already have {Config.MAX_PENDING_WITHDRAWALS} pending withdrawals"
                )

            WithdrawalStateValidator.ensure_transition(None, WithdrawalStatus.PENDING.value)
            withdrawal = Withdrawal(
                user_id=user_id,
                wallet_id=wallet.id,
                amount=amount,
                fee=split.fee,
                net_amount=split.net,
                bank_code=bank.bank_code,
                bank_name=get_bank_name(bank.bank_code),
                account_number=bank.account_number,
                account_holder_name=bank.account_holder_name,
                status=WithdrawalStatus.PENDING.value,
                notes=notes,
            )
            self.db.add(withdrawal)
            self.db.flush()

            self.wallets.apply_entry(
                wallet.id,
                LedgerEntryType.WITHDRAWAL,
                -amount,
                ref_withdrawal_id=withdrawal.id,
                description=f"Withdrawal to {bank.bank_code} {mask_account_number(bank.account_number)}",
                metadata={"fee": split.fee, "net_amount": split.net},
            )

            queue_notification(
                self.db, user_id,
                f"Withdrawal request of {amount:,} {Config.CURRENCY} received. You will receive "
                f"{split.net:,} {Config.CURRENCY} within {Config.WITHDRAWAL_PROCESSING_DAYS_MIN}-"
                f"{Config.WITHDRAWAL_PROCESSING_DAYS_MAX} business days.",
                self._link(), NotificationType.WALLET,
            )
            logger.info(
                f"💸 WITHDRAWAL_CREATE: {withdrawal.id} user={user_id} amount={amount} fee={split.fee} "
                f"net={split.net} to {bank.bank_code} {mask_account_number(bank.account_number)}"
            )
            return withdrawal

    def approve(self, admin_id: str, withdrawal_id: str, notes: Optional[str] = None) -> Withdrawal:
        with atomic_transaction(self.db):
            withdrawal = lock_withdrawal(self.db, withdrawal_id)
            self._set_status(withdrawal, WithdrawalStatus.PROCESSING)
            withdrawal.processed_by = admin_id
            withdrawal.processed_at = get_naive_utc_now()
            withdrawal.admin_notes = notes or DEFAULT_APPROVE_NOTE
            queue_notification(
                self.db, withdrawal.user_id,
                f"Your withdrawal of {withdrawal.amount:,} {Config.CURRENCY} was approved and is being processed.",
                self._link(), NotificationType.WALLET,
            )
            return withdrawal

    def reject(self, admin_id: str, withdrawal_id: str, reason: str) -> Withdrawal:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")
        with atomic_transaction(self.db):
            withdrawal = lock_withdrawal(self.db, withdrawal_id)
            self._set_status(withdrawal, WithdrawalStatus.CANCELLED)
            now = get_naive_utc_now()
            withdrawal.processed_by = admin_id
            withdrawal.processed_at = now
            withdrawal.cancelled_at = now
            withdrawal.admin_notes = reason
            self._reverse_hold(withdrawal, reason, admin_id)
            queue_notification(
                self.db, withdrawal.user_id,
                f"Your withdrawal of {withdrawal.amount:,} {Config.CURRENCY} was rejected: {reason}. "
                f"The funds are back in your wallet.",
                self._link(), NotificationType.WALLET,
            )
            return withdrawal

    def complete(
        self,
        admin_id: str,
        withdrawal_id: str,
        proof_of_transfer: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Withdrawal:
        """Admin attests the bank transfer went through"""
        with atomic_transaction(self.db):
            withdrawal = lock_withdrawal(self.db, withdrawal_id)
            self._set_status(withdrawal, WithdrawalStatus.COMPLETED)
            withdrawal.completed_at = get_naive_utc_now()
            withdrawal.admin_notes = notes or DEFAULT_COMPLETE_NOTE
            withdrawal.withdrawal_metadata = {
                **(withdrawal.withdrawal_metadata or {}),
                "proof_of_transfer": proof_of_transfer,
                "completed_by": admin_id,
            }
            queue_notification(
                self.db, withdrawal.user_id,
                f"{withdrawal.net_amount:,} {Config.CURRENCY} has been transferred to your "
                f"{withdrawal.bank_code} account.",
                self._link(), NotificationType.WALLET,
            )
            return withdrawal

    def fail(self, admin_id: str, withdrawal_id: str, reason: str) -> Withdrawal:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A failure reason is required")
        with atomic_transaction(self.db):
            withdrawal = lock_withdrawal(self.db, withdrawal_id)
            self._set_status(withdrawal, WithdrawalStatus.FAILED)
            withdrawal.admin_notes = reason
            withdrawal.withdrawal_metadata = {**(withdrawal.withdrawal_metadata or {}), "failed_by": admin_id}
            self._reverse_hold(withdrawal, reason, admin_id)
            queue_notification(
                self.db, withdrawal.user_id,
                f"Your withdrawal of {withdrawal.amount:,} {Config.CURRENCY} failed: {reason}. "
                f"The funds are back in your wallet.",
                self._link(), NotificationType.WALLET,
            )
            return withdrawal

    def cancel(self, user_id: str, withdrawal_id: str, reason: Optional[str] = None) -> Withdrawal:
        """Owner cancels a request that no admin has picked up yet"""
        with atomic_transaction(self.db):
            withdrawal = lock_withdrawal(self.db, withdrawal_id)
            if withdrawal.user_id != user_id:
                raise ForbiddenError("You can only cancel your own withdrawals")
            self._set_status(withdrawal, WithdrawalStatus.CANCELLED)
            reason = (reason or "").strip() or "Cancelled by user"
            withdrawal.cancelled_at = get_naive_utc_now()
            withdrawal.admin_notes = reason
            self._reverse_hold(withdrawal, reason, user_id)
            logger.info(f"🚫 WITHDRAWAL_CANCEL: {withdrawal.id} by user {user_id}")
            return withdrawal

    def get_withdrawal(self, user_id: str, withdrawal_id: str) -> Withdrawal:
        withdrawal = self.db.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        if withdrawal.user_id != user_id:
            raise ForbiddenError("You can only view your own withdrawals")
        return withdrawal

    def list_user_withdrawals(
        self,
        user_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Withdrawal]:
        stmt = select(Withdrawal).where(Withdrawal.user_id == user_id)
        if status is not None:
            if status not in WithdrawalStatus._value2member_map_:
                raise ValidationError(f"Unknown withdrawal status: {status}")
            stmt = stmt.where(Withdrawal.status == status)
        return paginate(self.db, stmt.order_by(Withdrawal.created_at.desc()), page, limit)

    def list_pending_withdrawals(self) -> List[Withdrawal]:
        """Admin queue, oldest first"""
        return list(
            self.db.execute(
                select(Withdrawal)
                .where(Withdrawal.status == WithdrawalStatus.PENDING.value)
                .order_by(Withdrawal.created_at.asc())
            ).scalars().all()
        )
