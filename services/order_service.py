"""
Order Service - the order lifecycle state machine

draft -> waiting_payment -> paid_escrow -> in_progress -> delivered
-> (revision -> delivered)* -> completed, with cancellation before work
starts and disputes once it has. Every public method is one unit of work;
guard failures raise and roll back everything the method touched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Tuple

from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from config import Config
from models import (
    Order, OrderStatus, Service, ServiceStatus, User, Payment, PaymentStatus,
    NotificationType, Dispute, SUCCESSFUL_PAYMENT_STATUSES
)
from services.escrow_service import EscrowService, EscrowReleaseResult
from services.notification_service import queue_notification
from services.payment_gateway import PaymentGateway, MidtransGateway, CustomerDetails, LineItem, PaymentSession
from utils.atomic_transactions import atomic_transaction, lock_order, lock_payment_for_order
from utils.datetime_helpers import get_naive_utc_now, ensure_naive_datetime
from utils.entity_state_machines import OrderStateValidator
from utils.exception_handler import (
    NotFoundError, ForbiddenError, InvalidStateError, ValidationError, QuotaExceededError
)
from utils.pagination import Page, paginate

logger = logging.getLogger(__name__)

ORDER_SORTS = {
    "newest": (Order.created_at.desc(),),
    "oldest": (Order.created_at.asc(),),
    "deadline": (Order.due_date.asc(),),
    "price_high": (Order.price.desc(), Order.created_at.desc()),
    "price_low": (Order.price.asc(), Order.created_at.desc()),
}

BUYER_CANCELLABLE = frozenset({
    OrderStatus.DRAFT.value,
    OrderStatus.WAITING_PAYMENT.value,
    OrderStatus.PAID_ESCROW.value,
})
SELLER_CANCELLABLE = frozenset({
    OrderStatus.WAITING_PAYMENT.value,
    OrderStatus.PAID_ESCROW.value,
})


@dataclass
class CancellationResult:
    order: Order
    refunded: bool


class OrderService:
    """Order lifecycle operations bound to one Session"""

    def __init__(self, db: Session, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self._gateway = gateway
        self.escrow = EscrowService(db)

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = MidtransGateway()
        return self._gateway

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _link(order: Order) -> str:
        return f"{Config.FRONTEND_URL}/orders/{order.id}"

    @staticmethod
    def _require_buyer(order: Order, user_id: str) -> None:
        if order.buyer_id != user_id:
            raise ForbiddenError("Only the buyer of this order can do that")

    @staticmethod
    def _require_seller(order: Order, user_id: str) -> None:
        if order.seller_id != user_id:
            raise ForbiddenError("Only the seller of this order can do that")

    @staticmethod
    def _set_status(order: Order, new_status: OrderStatus) -> None:
        OrderStateValidator.ensure_transition(order.status, new_status.value, order.id)
        logger.info(f"📦 ORDER_STATUS: {order.id} {order.status} -> {new_status.value}")
        order.status = new_status.value

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def create(
        self,
        buyer_id: str,
        service_id: str,
        requirements: Optional[str] = None,
        attachments: Optional[List[str]] = None,
        custom_deadline: Optional[datetime] = None,
    ) -> Order:
        """Create a draft order that snapshots the service listing"""
        with atomic_transaction(self.db):
            service = self.db.get(Service, service_id)
            if service is None:
                raise NotFoundError(f"Service {service_id} not found")
            if not service.is_active or service.status != ServiceStatus.ACTIVE.value:
                raise ValidationError("This service is not available for ordering")
            if self.db.get(User, buyer_id) is None:
                raise NotFoundError(f"User {buyer_id} not found")
            if service.seller_id == buyer_id:
                raise ValidationError("You cannot order your own service")
            if not Config.MIN_TRANSACTION_AMOUNT <= service.price <= Config.MAX_TRANSACTION_AMOUNT:
                raise ValidationError(
                    f"Order amount must be between {Config.MIN_TRANSACTION_AMOUNT:,} and "
                    f"{Config.MAX_TRANSACTION_AMOUNT:,} {Config.CURRENCY}"
                )

            now = get_naive_utc_now()
            if custom_deadline is not None:
                due_date = ensure_naive_datetime(custom_deadline)
                if due_date <= now:
                    raise ValidationError("Deadline must be in the future")
            else:
                due_date = now + timedelta(days=service.delivery_time)

            OrderStateValidator.ensure_transition(None, OrderStatus.DRAFT.value)
            order = Order(
                buyer_id=buyer_id,
                seller_id=service.seller_id,
                service_id=service.id,
                title=service.title,
                price=service.price,
                delivery_time=service.delivery_time,
                max_revisions=service.revisions,
                requirements=requirements,
                attachments=list(attachments or []),
                status=OrderStatus.DRAFT.value,
                is_paid=False,
                revision_count=0,
                due_date=due_date,
            )
            self.db.add(order)
            self.db.flush()
            logger.info(f"📝 ORDER_CREATE: {order.id} buyer={buyer_id} service={service_id} price={order.price}")
            return order

    def confirm(self, buyer_id: str, order_id: str) -> Tuple[Order, Payment]:
        """
        draft -> waiting_payment, opening a gateway payment session.

        The gateway is called before any row is locked. A gateway failure
        raises UpstreamFailureError with nothing written, so the order stays
        in draft and the buyer can simply retry.
        """
        order = self._get_for_buyer(buyer_id, order_id)
        OrderStateValidator.ensure_transition(order.status, OrderStatus.WAITING_PAYMENT.value, order.id)
        session = self._request_session(order)

        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            # Re-checked under the lock: a concurrent confirm may have won
            OrderStateValidator.ensure_transition(order.status, OrderStatus.WAITING_PAYMENT.value, order.id)
            payment = self._store_session(order, session)
            self._set_status(order, OrderStatus.WAITING_PAYMENT)
            return order, payment

    def _get_for_buyer(self, buyer_id: str, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        self._require_buyer(order, buyer_id)
        return order

    @staticmethod
    def _reusable(payment: Optional[Payment]) -> bool:
        return (
            payment is not None
            and payment.status == PaymentStatus.PENDING.value
            and bool(payment.token)
            and (payment.expires_at is None or payment.expires_at > get_naive_utc_now())
        )

    def _request_session(self, order: Order) -> PaymentSession:
        buyer = self.db.get(User, order.buyer_id)
        return self.gateway.create_session(
            order.id,
            order.price,
            CustomerDetails(full_name=buyer.full_name, email=buyer.email),
            [LineItem(id=order.service_id, name=order.title, price=order.price)],
        )

    def _store_session(self, order: Order, session: PaymentSession) -> Payment:
        """Upsert the order's Payment as a fresh pending session"""
        payment = lock_payment_for_order(self.db, order.id)
        if payment is None:
            payment = Payment(order_id=order.id, amount=order.price)
            self.db.add(payment)
        elif payment.status in SUCCESSFUL_PAYMENT_STATUSES:
            raise InvalidStateError(f"Order {order.id} is already paid")
        payment.provider = self.gateway.provider
        payment.token = session.token
        payment.redirect_url = session.redirect_url
        payment.transaction_id = None
        payment.status = PaymentStatus.PENDING.value
        payment.amount = order.price
        payment.currency = Config.CURRENCY
        payment.expires_at = get_naive_utc_now() + timedelta(minutes=Config.PAYMENT_EXPIRY_MINUTES)
        self.db.flush()
        return payment

    def get_payment_session(self, buyer_id: str, order_id: str) -> Payment:
        """
        Return the payment session of an order awaiting payment.

        A still-valid pending session is reused. Once the previous attempt
        has failed, expired or been cancelled a new session is opened, so
        the buyer can pay again.
        """
        order = self._get_for_buyer(buyer_id, order_id)
        if order.status != OrderStatus.WAITING_PAYMENT.value:
            raise InvalidStateError(f"Order {order.id} is not awaiting payment")
        if self._reusable(order.payment):
            return order.payment

        session = self._request_session(order)
        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            if order.status != OrderStatus.WAITING_PAYMENT.value:
                raise InvalidStateError(f"Order {order.id} is not awaiting payment")
            payment = self._store_session(order, session)
            logger.info(f"🔄 PAYMENT_SESSION: new session for order {order.id} token={payment.token}")
            return payment

    def mark_paid(self, order: Order) -> bool:
        """
        waiting_payment -> paid_escrow. Called by the escrow coordinator only,
        with the order already locked. Returns False if it was already paid.
        """
        if order.is_paid:
            return False
        self._set_status(order, OrderStatus.PAID_ESCROW)
        order.is_paid = True
        order.paid_at = get_naive_utc_now()
        return True

    def start_work(self, seller_id: str, order_id: str) -> Order:
        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            self._require_seller(order, seller_id)
            self._set_status(order, OrderStatus.IN_PROGRESS)
            queue_notification(
                self.db, order.buyer_id, f"The seller started working on {order.title}.",
                self._link(order), NotificationType.ORDER,
            )
            return order

    def deliver(
        self,
        seller_id: str,
        order_id: str,
        delivery_files: List[str],
        delivery_note: Optional[str] = None,
    ) -> Order:
        files = [f for f in (delivery_files or []) if f and f.strip()]
        if not files:
            raise ValidationError("At least one delivery file is required")

        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            self._require_seller(order, seller_id)
            self._set_status(order, OrderStatus.DELIVERED)
            order.delivery_files = files
            order.delivery_note = delivery_note
            order.delivered_at = get_naive_utc_now()
            queue_notification(
                self.db, order.buyer_id,
                f"{order.title} has been delivered. Please review and approve or request a revision.",
                self._link(order), NotificationType.ORDER,
            )
            return order

    def request_revision(self, buyer_id: str, order_id: str, note: Optional[str] = None) -> Order:
        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            self._require_buyer(order, buyer_id)
            OrderStateValidator.ensure_transition(order.status, OrderStatus.REVISION.value, order.id)
            if order.revision_count >= order.max_revisions:
                raise QuotaExceededError(
                    f"Revision limit reached ({order.max_revisions})",
                    details={"revision_count": order.revision_count, "max_revisions": order.max_revisions},
                )
            self._set_status(order, OrderStatus.REVISION)
            order.revision_count += 1
            content = f"Revision {order.revision_count}/{order.max_revisions} requested for {order.title}"
            if note:
                content = f"{content}: {note}"
            queue_notification(self.db, order.seller_id, content, self._link(order), NotificationType.ORDER)
            return order

    def approve(self, buyer_id: str, order_id: str) -> EscrowReleaseResult:
        """delivered -> completed, releasing escrow to the seller"""
        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            self._require_buyer(order, buyer_id)
            if order.status != OrderStatus.DELIVERED.value:
                raise InvalidStateError(f"Only delivered orders can be approved (order is {order.status})")
            return self.complete_order(order)

    def complete_order(self, order: Order) -> EscrowReleaseResult:
        """Complete a locked order: status, statistics and escrow release together"""
        with atomic_transaction(self.db):
            self._set_status(order, OrderStatus.COMPLETED)
            order.completed_at = get_naive_utc_now()

            service = self.db.get(Service, order.service_id)
            if service is not None:
                service.total_orders += 1
            seller = self.db.get(User, order.seller_id)
            if seller is not None:
                seller.total_orders_completed += 1

            result = self.escrow.release_escrow(order.id)
            queue_notification(
                self.db, order.seller_id, f"{order.title} was approved and completed.",
                self._link(order), NotificationType.ORDER,
            )
            return result

    def cancel(self, user_id: str, order_id: str, reason: Optional[str] = None) -> CancellationResult:
        """
        Cancel before work starts. Buyers may cancel draft, waiting_payment
        and paid_escrow orders; sellers may decline waiting_payment and
        paid_escrow orders (with a reason once paid). A paid order is
        refunded in full in the same unit of work.
        """
        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            if order.buyer_id == user_id:
                allowed = BUYER_CANCELLABLE
            elif order.seller_id == user_id:
                allowed = SELLER_CANCELLABLE
            else:
                raise ForbiddenError("You are not a party to this order")

            if order.status not in allowed:
                if order.status in OrderStateValidator.DISPUTABLE_STATUSES:
                    raise InvalidStateError("Work has started on this order - open a dispute instead")
                raise InvalidStateError(f"An order in status '{order.status}' cannot be cancelled")

            reason = (reason or "").strip() or None
            if order.seller_id == user_id and order.is_paid and not reason:
                raise ValidationError("A reason is required to cancel a paid order")

            result = self.cancel_order(order, reason or "Cancelled by user")
            other_party = order.seller_id if user_id == order.buyer_id else order.buyer_id
            queue_notification(
                self.db, other_party, f"Order {order.title} was cancelled: {order.cancellation_reason}",
                self._link(order), NotificationType.ORDER,
            )
            return result

    def cancel_order(self, order: Order, reason: str) -> CancellationResult:
        """Move a locked order to cancelled, refunding escrow if it was paid"""
        with atomic_transaction(self.db):
            was_paid = order.is_paid
            self._set_status(order, OrderStatus.CANCELLED)
            order.cancelled_at = get_naive_utc_now()
            order.cancellation_reason = reason

            if was_paid:
                self.escrow.refund_escrow(order.id, reason)
            else:
                payment = lock_payment_for_order(self.db, order.id)
                if payment is not None and payment.status == PaymentStatus.PENDING.value:
                    payment.status = PaymentStatus.CANCELLED.value
                    # The gateway session stays open; a late settlement must be refunded by hand
                    payment.payment_metadata = {
                        **(payment.payment_metadata or {}),
                        "cancelled_locally": True,
                        "cancel_reason": reason,
                    }
            logger.info(f"🚫 ORDER_CANCEL: {order.id} refunded={was_paid} reason={reason}")
            return CancellationResult(order=order, refunded=was_paid)

    def open_dispute(self, user_id: str, order_id: str, reason: str) -> Dispute:
        from services.dispute_resolution import DisputeResolutionService

        return DisputeResolutionService(self.db).open(user_id, order_id, reason)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_order(self, user_id: str, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if not order.is_party(user_id):
            raise ForbiddenError("You are not a party to this order")
        return order

    def list_orders(
        self,
        user_id: str,
        role: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "newest",
        page: int = 1,
        limit: int = 10,
    ) -> Page[Order]:
        if sort_by not in ORDER_SORTS:
            raise ValidationError(f"Unsupported sort order: {sort_by}")

        stmt = select(Order)
        if role == "buyer":
            stmt = stmt.where(Order.buyer_id == user_id)
        elif role == "seller":
            stmt = stmt.where(Order.seller_id == user_id)
        elif role is None:
            stmt = stmt.where(or_(Order.buyer_id == user_id, Order.seller_id == user_id))
        else:
            raise ValidationError(f"Unknown role filter: {role}")

        if status is not None:
            if status not in OrderStatus._value2member_map_:
                raise ValidationError(f"Unknown order status: {status}")
            stmt = stmt.where(Order.status == status)
        if search:
            stmt = stmt.where(Order.title.ilike(f"%{search.strip()}%"))

        return paginate(self.db, stmt.order_by(*ORDER_SORTS[sort_by]), page, limit)
