"""
Escrow Service - bridges payment events and order transitions into ledger entries

Hold on verified payment, release on completion, refund on cancellation.
Each operation runs in the caller's unit of work so the order status, the
ledger entries and the wallet balance always land together.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from config import Config
from models import (
    Order, OrderStatus, LedgerEntry, LedgerEntryType, PaymentStatus, NotificationType
)
from services.notification_service import queue_notification
from services.wallet_service import WalletService
from utils.atomic_transactions import atomic_transaction, lock_order, lock_payment_for_order
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import InvalidStateError, ResourceConflictError, ValidationError
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

CLOSING_ENTRY_TYPES = (LedgerEntryType.ESCROW_RELEASE, LedgerEntryType.REFUND)


@dataclass
class EscrowReleaseResult:
    order_id: str
    gross_amount: int
    platform_fee: int
    seller_net: int
    release_entry_id: str
    fee_entry_id: Optional[str]


class EscrowService:
    """Escrow coordinator: the only writer of escrow ledger entries"""

    def __init__(self, db: Session):
        self.db = db
        self.wallets = WalletService(db)

    def _order_link(self, order: Order) -> str:
        return f"{Config.FRONTEND_URL}/orders/{order.id}"

    def _ensure_hold_open(self, order: Order) -> None:
        """The hold must exist and must not have been released or refunded yet"""
        if not self.wallets.entry_exists(LedgerEntryType.ESCROW_HOLD, ref_order_id=order.id):
            raise InvalidStateError(f"Order {order.id} has no escrow hold")
        for closing_type in CLOSING_ENTRY_TYPES:
            if self.wallets.entry_exists(closing_type, ref_order_id=order.id):
                raise ResourceConflictError(
                    f"Escrow for order {order.id} already closed by {closing_type.value}",
                    details={"order_id": order.id, "type": closing_type.value},
                )

    def on_payment_verified(
        self,
        order_id: str,
        paid_amount: int,
        transaction_meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply a verified settlement to its order.

        Returns True when the hold was recorded, False when the order was
        already paid (redelivered settlement).
        """
        from services.order_service import OrderService

        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            if order.is_paid:
                logger.info(f"🔁 ESCROW_HOLD: order {order_id} already paid - settlement ignored")
                return False

            if paid_amount < order.price:
                raise ValidationError(
                    f"Paid amount {paid_amount} is below order price {order.price}",
                    details={"order_id": order_id, "paid_amount": paid_amount, "price": order.price},
                )

            OrderService(self.db).mark_paid(order)

            wallet = self.wallets.get_or_create_wallet(order.seller_id)
            self.wallets.apply_entry(
                wallet.id,
                LedgerEntryType.ESCROW_HOLD,
                -order.price,
                ref_order_id=order.id,
                description=f"Escrow hold for order {order.title}",
                metadata=transaction_meta or {},
            )

            queue_notification(
                self.db, order.seller_id,
                f"New paid order: {order.title}. Funds are held in escrow - you can start working.",
                self._order_link(order), NotificationType.ORDER,
            )
            queue_notification(
                self.db, order.buyer_id,
                f"Payment received for {order.title}. Your funds are safely held in escrow.",
                self._order_link(order), NotificationType.PAYMENT,
            )
            logger.info(f"🔒 ESCROW_HOLD: order={order.id} amount={order.price} seller={order.seller_id}")
            return True

    def release_escrow(self, order_id: str) -> EscrowReleaseResult:
        """Move a completed order's escrow to the seller, minus the platform fee"""
        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            if order.status != OrderStatus.COMPLETED.value:
                raise InvalidStateError(
                    f"Escrow can only be released for completed orders (order {order.id} is {order.status})"
                )
            self._ensure_hold_open(order)

            split = FeeCalculator.calculate_platform_fee(order.price)
            wallet = self.wallets.get_or_create_wallet(order.seller_id)

            release_entry = self.wallets.apply_entry(
                wallet.id,
                LedgerEntryType.ESCROW_RELEASE,
                split.net,
                ref_order_id=order.id,
                description=f"Escrow released for order {order.title}",
                metadata={"gross_amount": split.gross, "platform_fee": split.fee},
            )
            fee_entry: Optional[LedgerEntry] = None
            if split.fee > 0:
                fee_entry = self.wallets.apply_entry(
                    wallet.id,
                    LedgerEntryType.PLATFORM_FEE,
                    -split.fee,
                    ref_order_id=order.id,
                    description=f"Platform fee {FeeCalculator.get_platform_fee_percentage()}% for order {order.title}",
                )

            queue_notification(
                self.db, order.seller_id,
                f"{split.net:,} {Config.CURRENCY} from {order.title} is now available in your wallet.",
                f"{Config.FRONTEND_URL}/wallet", NotificationType.WALLET,
            )
            logger.info(
                f"💰 ESCROW_RELEASE: order={order.id} gross={split.gross} fee={split.fee} net={split.net}"
            )
            return EscrowReleaseResult(
                order_id=order.id,
                gross_amount=split.gross,
                platform_fee=split.fee,
                seller_net=split.net,
                release_entry_id=release_entry.id,
                fee_entry_id=fee_entry.id if fee_entry else None,
            )

    def refund_escrow(self, order_id: str, reason: str) -> LedgerEntry:
        """
        Close a cancelled order's hold with a REFUND entry of the full price.

        The buyer's money goes back through the payment gateway; here the
        Payment is marked refunded and the buyer is told to expect it.
        """
        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            if order.status != OrderStatus.CANCELLED.value:
                raise InvalidStateError(
                    f"Escrow can only be refunded for cancelled orders (order {order.id} is {order.status})"
                )
            self._ensure_hold_open(order)

            wallet = self.wallets.get_or_create_wallet(order.seller_id)
            entry = self.wallets.apply_entry(
                wallet.id,
                LedgerEntryType.REFUND,
                order.price,
                ref_order_id=order.id,
                description=f"Escrow refunded to buyer: {reason}",
                metadata={"reason": reason, "buyer_id": order.buyer_id},
            )

            now = get_naive_utc_now()
            order.is_paid = False
            order.refunded_at = now

            payment = lock_payment_for_order(self.db, order.id)
            if payment is not None:
                payment.status = PaymentStatus.REFUND.value
                payment.payment_metadata = {
                    **(payment.payment_metadata or {}),
                    "refund_reason": reason,
                    "refunded_at": now.isoformat(),
                }

            queue_notification(
                self.db, order.buyer_id,
                f"Order {order.title} was cancelled. {order.price:,} {Config.CURRENCY} will be refunded "
                f"to your original payment method.",
                self._order_link(order), NotificationType.PAYMENT,
            )
            logger.info(f"↩️ ESCROW_REFUND: order={order.id} amount={order.price} reason={reason}")
            return entry
