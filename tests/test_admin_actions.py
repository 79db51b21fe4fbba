"""
Admin action surface tests: capability check first, then the core call
wrapped in the user-facing result shape.
"""

import pytest

from handlers.admin_actions import AdminActions, is_admin
from models import Withdrawal, WithdrawalStatus
from services.dispute_resolution import DisputeResolutionService
from services.wallet_service import WalletService
from services.withdrawal_service import BankDetails, WithdrawalService

REASON = "Compensation for a delayed payout last week"


@pytest.fixture
def pending_withdrawal(test_db_session, test_data_factory, seller):
    test_data_factory.fund_wallet(seller, 100_000)
    return WithdrawalService(test_db_session).create(
        seller.id, 50_000, BankDetails("BNI", "0987654321", "Sari Seller")
    )


class TestCapabilityCheck:

    def test_is_admin(self, test_db_session, admin, buyer):
        assert is_admin(test_db_session, admin.id)
        assert not is_admin(test_db_session, buyer.id)
        assert not is_admin(test_db_session, "missing")

    def test_non_admin_is_refused(self, test_db_session, seller, pending_withdrawal):
        result = AdminActions(test_db_session).approve_withdrawal(seller.id, pending_withdrawal.id)

        assert result["success"] is False
        assert result["error"] == "forbidden"
        assert test_db_session.get(Withdrawal, pending_withdrawal.id).status == WithdrawalStatus.PENDING.value


class TestWithdrawalActions:

    def test_approve_and_complete(self, test_db_session, admin, pending_withdrawal):
        actions = AdminActions(test_db_session)

        approved = actions.approve_withdrawal(admin.id, pending_withdrawal.id)
        completed = actions.complete_withdrawal(admin.id, pending_withdrawal.id, "https://proofs.example/1.png")

        assert approved == {
            "success": True,
            "data": {"withdrawal_id": pending_withdrawal.id, "status": WithdrawalStatus.PROCESSING.value},
        }
        assert completed["data"]["status"] == WithdrawalStatus.COMPLETED.value

    def test_invalid_transition_reported(self, test_db_session, admin, pending_withdrawal):
        result = AdminActions(test_db_session).fail_withdrawal(admin.id, pending_withdrawal.id, "Bank error")
        assert result["success"] is False
        assert result["error"] == "invalid_state"

    def test_reject(self, test_db_session, admin, seller, pending_withdrawal):
        result = AdminActions(test_db_session).reject_withdrawal(admin.id, pending_withdrawal.id, "Wrong account")

        assert result["data"]["status"] == WithdrawalStatus.CANCELLED.value
        assert WalletService(test_db_session).get_wallet(seller.id).balance == 100_000


class TestDisputeAndBalanceActions:

    def test_resolve_dispute(self, test_db_session, test_data_factory, admin, buyer, service):
        order = test_data_factory.create_delivered_order(buyer, service)
        dispute = DisputeResolutionService(test_db_session).open(buyer.id, order.id, "Wrong file format")

        result = AdminActions(test_db_session).resolve_dispute(admin.id, dispute.id, "RELEASE_TO_SELLER")

        assert result["success"] is True
        assert result["data"]["order_status"] == "completed"
        assert result["data"]["seller_net"] == 90_000

    def test_resolve_with_unknown_resolution(self, test_db_session, test_data_factory, admin, buyer, service):
        order = test_data_factory.create_delivered_order(buyer, service)
        dispute = DisputeResolutionService(test_db_session).open(buyer.id, order.id, "Wrong file format")

        result = AdminActions(test_db_session).resolve_dispute(admin.id, dispute.id, "SPLIT")

        assert result["error"] == "validation_error"

    def test_adjust_balance(self, test_db_session, admin, seller):
        result = AdminActions(test_db_session).adjust_balance(admin.id, seller.id, "BONUS", 20_000, REASON)

        assert result["success"] is True
        assert result["data"]["balance_after"] == 20_000

    def test_adjust_balance_by_non_admin(self, test_db_session, buyer, seller):
        result = AdminActions(test_db_session).adjust_balance(buyer.id, seller.id, "BONUS", 20_000, REASON)

        assert result["error"] == "forbidden"
        assert WalletService(test_db_session).get_or_create_wallet(seller.id).balance == 0
