"""
Admin action surface
Checks the admin capability, then hands the actor id to the escrow core
for attribution. The core never looks at roles itself.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from models import User, UserRole
from services.dispute_resolution import DisputeResolutionService
from services.wallet_service import WalletService
from services.withdrawal_service import WithdrawalService
from utils.exception_handler import ForbiddenError, safe_service_call

logger = logging.getLogger(__name__)


def is_admin(session: Session, user_id: str) -> bool:
    user = session.get(User, user_id)
    return user is not None and user.role == UserRole.ADMIN.value


def require_admin(session: Session, user_id: str) -> None:
    """Raise ForbiddenError unless ``user_id`` belongs to an admin account"""
    if not is_admin(session, user_id):
        logger.warning(f"🚨 ADMIN_DENIED: user {user_id} attempted an admin action")
        raise ForbiddenError("Admin access required")


class AdminActions:
    """
    Entry points for the admin dashboard.

    Every method returns ``{"success": True, "data": ...}`` or the
    user-facing error dict; the wrapped service call owns its unit of work.
    """

    def __init__(self, db: Session):
        self.db = db
        self.withdrawals = WithdrawalService(db)
        self.disputes = DisputeResolutionService(db)
        self.wallets = WalletService(db)

    @safe_service_call
    def approve_withdrawal(self, admin_id: str, withdrawal_id: str, notes: Optional[str] = None):
        require_admin(self.db, admin_id)
        withdrawal = self.withdrawals.approve(admin_id, withdrawal_id, notes)
        return {"withdrawal_id": withdrawal.id, "status": withdrawal.status}

    @safe_service_call
    def reject_withdrawal(self, admin_id: str, withdrawal_id: str, reason: str):
        require_admin(self.db, admin_id)
        withdrawal = self.withdrawals.reject(admin_id, withdrawal_id, reason)
        return {"withdrawal_id": withdrawal.id, "status": withdrawal.status}

    @safe_service_call
    def complete_withdrawal(
        self,
        admin_id: str,
        withdrawal_id: str,
        proof_of_transfer: Optional[str] = None,
        notes: Optional[str] = None,
    ):
        require_admin(self.db, admin_id)
        withdrawal = self.withdrawals.complete(admin_id, withdrawal_id, proof_of_transfer, notes)
        return {"withdrawal_id": withdrawal.id, "status": withdrawal.status}

    @safe_service_call
    def fail_withdrawal(self, admin_id: str, withdrawal_id: str, reason: str):
        require_admin(self.db, admin_id)
        withdrawal = self.withdrawals.fail(admin_id, withdrawal_id, reason)
        return {"withdrawal_id": withdrawal.id, "status": withdrawal.status}

    @safe_service_call
    def resolve_dispute(self, admin_id: str, dispute_id: str, resolution: str, notes: Optional[str] = None):
        require_admin(self.db, admin_id)
        result = self.disputes.resolve(admin_id, dispute_id, resolution, notes)
        return result._asdict()

    @safe_service_call
    def adjust_balance(self, admin_id: str, user_id: str, category: str, amount: int, reason: str):
        require_admin(self.db, admin_id)
        entry = self.wallets.adjust_balance(admin_id, user_id, category, amount, reason)
        return {"entry_id": entry.id, "balance_after": entry.balance_after}
