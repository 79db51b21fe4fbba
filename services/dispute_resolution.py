"""
Dispute Resolution Service
Freezes an order while a dispute is open and, on admin resolution,
releases escrow to the seller or refunds the buyer in one unit of work
"""

import logging
from typing import Optional, NamedTuple, List, Union

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from config import Config
from models import (
    Dispute, DisputeMessage, DisputeStatus, DisputeResolution, OrderStatus, NotificationType
)
from services.notification_service import queue_notification, queue_admin_notification
from services.order_service import OrderService
from utils.atomic_transactions import atomic_transaction, lock_order, lock_dispute
from utils.datetime_helpers import get_naive_utc_now
from utils.entity_state_machines import OrderStateValidator, DisputeStateValidator
from utils.exception_handler import (
    NotFoundError, ForbiddenError, InvalidStateError, ValidationError
)

logger = logging.getLogger(__name__)


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    dispute_id: str
    order_id: str
    resolution: str
    order_status: str
    amount: int
    seller_net: Optional[int] = None
    platform_fee: Optional[int] = None


class DisputeResolutionService:
    """Dispute lifecycle: open, discuss, resolve"""

    def __init__(self, db: Session, order_service: Optional[OrderService] = None):
        self.db = db
        self.orders = order_service or OrderService(db)

    @staticmethod
    def _link(dispute: Dispute) -> str:
        return f"{Config.FRONTEND_URL}/disputes/{dispute.id}"

    def open(self, user_id: str, order_id: str, reason: str) -> Dispute:
        """Open a dispute on an order in progress, delivered or under revision"""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A dispute reason is required")

        with atomic_transaction(self.db):
            order = lock_order(self.db, order_id)
            if not order.is_party(user_id):
                raise ForbiddenError("Only the buyer or seller of this order can open a dispute")
            if order.status not in OrderStateValidator.DISPUTABLE_STATUSES:
                raise InvalidStateError(f"An order in status '{order.status}' cannot be disputed")

            OrderStateValidator.ensure_transition(order.status, OrderStatus.DISPUTED.value, order.id)
            order.status = OrderStatus.DISPUTED.value

            DisputeStateValidator.ensure_transition(None, DisputeStatus.OPEN.value)
            dispute = Dispute(
                order_id=order.id,
                opened_by_id=user_id,
                reason=reason,
                status=DisputeStatus.OPEN.value,
            )
            self.db.add(dispute)
            self.db.flush()

            other_party = order.seller_id if user_id == order.buyer_id else order.buyer_id
            queue_notification(
                self.db, other_party, f"A dispute was opened on {order.title}: {reason}",
                self._link(dispute), NotificationType.DISPUTE,
            )
            queue_admin_notification(
                self.db, f"New dispute on order {order.id} ({order.title}) needs review",
                self._link(dispute), NotificationType.DISPUTE,
            )
            logger.warning(f"⚖️ DISPUTE_OPEN: dispute={dispute.id} order={order.id} by={user_id}")
            return dispute

    def resolve(
        self,
        admin_id: str,
        dispute_id: str,
        resolution: Union[DisputeResolution, str],
        notes: Optional[str] = None,
    ) -> ResolutionResult:
        """
        Resolve an OPEN dispute.

        RELEASE_TO_SELLER completes the order and releases escrow;
        REFUND_TO_BUYER cancels it and refunds. ``admin_id`` is recorded for
        attribution only.
        """
        try:
            resolution_value = DisputeResolution(
                resolution.value if isinstance(resolution, DisputeResolution) else resolution
            ).value
        except ValueError:
            raise ValidationError(f"Unknown dispute resolution: {resolution}") from None

        with atomic_transaction(self.db):
            dispute = lock_dispute(self.db, dispute_id)
            DisputeStateValidator.ensure_transition(dispute.status, DisputeStatus.RESOLVED.value, dispute.id)

            order = lock_order(self.db, dispute.order_id)
            if order.status != OrderStatus.DISPUTED.value:
                raise InvalidStateError(f"Order {order.id} is not disputed (status {order.status})")

            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution = resolution_value
            dispute.resolved_by_id = admin_id
            dispute.resolved_at = get_naive_utc_now()
            dispute.admin_notes = notes

            if resolution_value == DisputeResolution.RELEASE_TO_SELLER.value:
                release = self.orders.complete_order(order)
                result = ResolutionResult(
                    dispute_id=dispute.id,
                    order_id=order.id,
                    resolution=resolution_value,
                    order_status=order.status,
                    amount=order.price,
                    seller_net=release.seller_net,
                    platform_fee=release.platform_fee,
                )
                outcome = "released to the seller"
            else:
                reason = f"Dispute resolved: refund to buyer{f' - {notes}' if notes else ''}"
                self.orders.cancel_order(order, reason)
                result = ResolutionResult(
                    dispute_id=dispute.id,
                    order_id=order.id,
                    resolution=resolution_value,
                    order_status=order.status,
                    amount=order.price,
                )
                outcome = "refunded to the buyer"

            for party in (order.buyer_id, order.seller_id):
                queue_notification(
                    self.db, party,
                    f"The dispute on {order.title} was resolved: funds {outcome}.",
                    self._link(dispute), NotificationType.DISPUTE,
                )
            logger.info(
                f"⚖️ DISPUTE_RESOLVED: dispute={dispute.id} order={order.id} "
                f"resolution={resolution_value} admin={admin_id}"
            )
            return result

    def add_message(
        self,
        user_id: str,
        dispute_id: str,
        content: str,
        attachments: Optional[List[str]] = None,
    ) -> DisputeMessage:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content is required")

        with atomic_transaction(self.db):
            dispute = self.db.get(Dispute, dispute_id)
            if dispute is None:
                raise NotFoundError(f"Dispute {dispute_id} not found")
            order = dispute.order
            if not order.is_party(user_id):
                raise ForbiddenError("You are not a party to this dispute")
            if dispute.status != DisputeStatus.OPEN.value:
                raise InvalidStateError("Messages can only be added to an open dispute")

            message = DisputeMessage(
                dispute_id=dispute.id,
                sender_id=user_id,
                content=content,
                attachments=list(attachments or []),
            )
            self.db.add(message)
            self.db.flush()

            other_party = order.seller_id if user_id == order.buyer_id else order.buyer_id
            queue_notification(
                self.db, other_party, f"New message in the dispute on {order.title}",
                self._link(dispute), NotificationType.DISPUTE,
            )
            return message

    def get_dispute(self, user_id: str, dispute_id: str) -> Dispute:
        dispute = self.db.execute(
            select(Dispute).options(selectinload(Dispute.messages)).where(Dispute.id == dispute_id)
        ).scalar_one_or_none()
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        if not dispute.order.is_party(user_id):
            raise ForbiddenError("You are not a party to this dispute")
        return dispute

    def list_open_disputes(self) -> List[Dispute]:
        """Admin queue, oldest first"""
        return list(
            self.db.execute(
                select(Dispute)
                .where(Dispute.status == DisputeStatus.OPEN.value)
                .order_by(Dispute.created_at.asc())
            ).scalars().all()
        )
