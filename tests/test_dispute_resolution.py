"""
Dispute resolution tests
"""

import pytest
from sqlalchemy import select

from models import (
    DisputeResolution, DisputeStatus, LedgerEntry, LedgerEntryType, Order, OrderStatus, PaymentStatus
)
from services.dispute_resolution import DisputeResolutionService
from services.wallet_service import WalletService
from utils.exception_handler import ForbiddenError, InvalidStateError, NotFoundError, ValidationError


@pytest.fixture
def disputed(test_data_factory, test_db_session, buyer, service):
    order = test_data_factory.create_delivered_order(buyer, service)
    dispute = DisputeResolutionService(test_db_session).open(buyer.id, order.id, "Files do not match the brief")
    return order, dispute


def _entry_types(session, order_id):
    return [
        e.type for e in session.execute(
            select(LedgerEntry).where(LedgerEntry.ref_order_id == order_id)
        ).scalars().all()
    ]


class TestOpenDispute:

    def test_buyer_opens_from_in_progress(
        self, test_db_session, test_data_factory, notifier, buyer, seller, admin, service
    ):
        order = test_data_factory.create_in_progress_order(buyer, service)

        dispute = test_data_factory.orders().open_dispute(buyer.id, order.id, "Seller stopped replying")

        assert dispute.status == DisputeStatus.OPEN.value
        assert dispute.opened_by_id == buyer.id
        assert test_db_session.get(Order, order.id).status == OrderStatus.DISPUTED.value
        assert any(n.type == "DISPUTE" for n in notifier.for_user(seller.id))
        assert any(n.type == "DISPUTE" for n in notifier.for_user(admin.id))

    def test_stranger_cannot_open(self, test_db_session, test_data_factory, buyer, service):
        order = test_data_factory.create_in_progress_order(buyer, service)
        stranger = test_data_factory.create_user("Someone Else")

        with pytest.raises(ForbiddenError):
            DisputeResolutionService(test_db_session).open(stranger.id, order.id, "Not mine")

    def test_paid_order_is_not_disputable(self, test_db_session, test_data_factory, buyer, service):
        order = test_data_factory.create_paid_order(buyer, service)

        with pytest.raises(InvalidStateError):
            DisputeResolutionService(test_db_session).open(buyer.id, order.id, "Too early")
        assert test_db_session.get(Order, order.id).status == OrderStatus.PAID_ESCROW.value

    def test_reason_required(self, test_db_session, test_data_factory, buyer, service):
        order = test_data_factory.create_in_progress_order(buyer, service)
        with pytest.raises(ValidationError):
            DisputeResolutionService(test_db_session).open(buyer.id, order.id, "  ")

    def test_disputed_order_freezes_normal_flow(self, test_db_session, test_data_factory, disputed, buyer):
        order, _ = disputed
        with pytest.raises(InvalidStateError):
            test_data_factory.orders().approve(buyer.id, order.id)
        assert LedgerEntryType.ESCROW_RELEASE.value not in _entry_types(test_db_session, order.id)


class TestResolve:

    def test_release_to_seller(self, test_db_session, disputed, admin, seller, notifier):
        order, dispute = disputed

        result = DisputeResolutionService(test_db_session).resolve(
            admin.id, dispute.id, DisputeResolution.RELEASE_TO_SELLER, "Delivery matches the brief"
        )

        assert result.order_status == OrderStatus.COMPLETED.value
        assert (result.seller_net, result.platform_fee) == (90_000, 10_000)
        assert WalletService(test_db_session).get_wallet(seller.id).balance == 90_000
        resolved = DisputeResolutionService(test_db_session).get_dispute(seller.id, dispute.id)
        assert resolved.status == DisputeStatus.RESOLVED.value
        assert resolved.resolved_by_id == admin.id
        assert resolved.admin_notes == "Delivery matches the brief"
        assert any("released to the seller" in n.content for n in notifier.for_user(seller.id))

    def test_refund_to_buyer(self, test_db_session, disputed, admin, seller):
        order, dispute = disputed

        result = DisputeResolutionService(test_db_session).resolve(admin.id, dispute.id, "REFUND_TO_BUYER")

        assert result.order_status == OrderStatus.CANCELLED.value
        assert result.seller_net is None
        refunded = test_db_session.get(Order, order.id)
        assert not refunded.is_paid
        assert refunded.refunded_at is not None
        assert refunded.payment.status == PaymentStatus.REFUND.value
        assert sorted(_entry_types(test_db_session, order.id)) == [
            LedgerEntryType.ESCROW_HOLD.value, LedgerEntryType.REFUND.value
        ]
        assert WalletService(test_db_session).get_wallet(seller.id).balance == 0

    def test_resolving_twice_is_rejected(self, test_db_session, disputed, admin):
        order, dispute = disputed
        disputes = DisputeResolutionService(test_db_session)
        disputes.resolve(admin.id, dispute.id, DisputeResolution.REFUND_TO_BUYER)

        with pytest.raises(InvalidStateError):
            disputes.resolve(admin.id, dispute.id, DisputeResolution.RELEASE_TO_SELLER)
        assert LedgerEntryType.ESCROW_RELEASE.value not in _entry_types(test_db_session, order.id)

    def test_unknown_resolution(self, test_db_session, disputed, admin):
        _, dispute = disputed
        with pytest.raises(ValidationError):
            DisputeResolutionService(test_db_session).resolve(admin.id, dispute.id, "SPLIT")

    def test_unknown_dispute(self, test_db_session, admin):
        with pytest.raises(NotFoundError):
            DisputeResolutionService(test_db_session).resolve(admin.id, "missing", "REFUND_TO_BUYER")


class TestMessagesAndQueries:

    def test_parties_exchange_messages(self, test_db_session, disputed, buyer, seller, notifier):
        _, dispute = disputed
        disputes = DisputeResolutionService(test_db_session)

        disputes.add_message(seller.id, dispute.id, "Here is the source file", ["https://files.example/src.ai"])
        disputes.add_message(buyer.id, dispute.id, "Still the wrong colours")

        loaded = disputes.get_dispute(buyer.id, dispute.id)
        assert [m.sender_id for m in loaded.messages] == [seller.id, buyer.id]
        assert loaded.messages[0].attachments == ["https://files.example/src.ai"]
        assert notifier.for_user(buyer.id)[-1].type == "DISPUTE"

    def test_stranger_cannot_post_or_read(self, test_db_session, test_data_factory, disputed):
        _, dispute = disputed
        stranger = test_data_factory.create_user("Someone Else")
        disputes = DisputeResolutionService(test_db_session)

        with pytest.raises(ForbiddenError):
            disputes.add_message(stranger.id, dispute.id, "Hello")
        with pytest.raises(ForbiddenError):
            disputes.get_dispute(stranger.id, dispute.id)

    def test_no_messages_after_resolution(self, test_db_session, disputed, admin, buyer):
        _, dispute = disputed
        disputes = DisputeResolutionService(test_db_session)
        disputes.resolve(admin.id, dispute.id, DisputeResolution.RELEASE_TO_SELLER)

        with pytest.raises(InvalidStateError):
            disputes.add_message(buyer.id, dispute.id, "One more thing")

    def test_empty_message_rejected(self, test_db_session, disputed, buyer):
        _, dispute = disputed
        with pytest.raises(ValidationError):
            DisputeResolutionService(test_db_session).add_message(buyer.id, dispute.id, "")

    def test_open_queue(self, test_db_session, disputed, admin):
        _, dispute = disputed
        disputes = DisputeResolutionService(test_db_session)

        assert [d.id for d in disputes.list_open_disputes()] == [dispute.id]
        disputes.resolve(admin.id, dispute.id, DisputeResolution.RELEASE_TO_SELLER)
        assert disputes.list_open_disputes() == []
