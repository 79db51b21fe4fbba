"""Atomic transaction utilities for financial operations and admin actions"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from database import SessionLocal
from models import Base, Order, Wallet, Withdrawal, Dispute, Payment
from services.notification_service import discard_pending_notifications
from utils.exception_handler import NotFoundError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    With no session a fresh one is opened, committed and closed. With a
    provided session the nesting depth is tracked on the session so only
    the outermost block commits; any exception rolls the whole unit of
    work back regardless of depth.
    """
    if session is None:
        session = SessionLocal()
        logger.debug("Created new session for atomic transaction")
        try:
            with atomic_transaction(session) as owned:
                yield owned
        finally:
            session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        session.rollback()
        # rollback() fires no event when nothing reached the database yet
        discard_pending_notifications(session)
        logger.error(f"Transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))


def _select_for_update(session: Session, model: Type[ModelT], *criteria) -> Optional[ModelT]:
    stmt = select(model).where(*criteria).with_for_update()
    # Pending changes must reach the row before populate_existing reloads it
    session.flush()
    return session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def lock_order(session: Session, order_id: str) -> Order:
    """Fetch an order with a row-level lock, NotFoundError if absent"""
    order = _select_for_update(session, Order, Order.id == order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def lock_wallet(session: Session, wallet_id: str) -> Wallet:
    wallet = _select_for_update(session, Wallet, Wallet.id == wallet_id)
    if wallet is None:
        raise NotFoundError(f"Wallet {wallet_id} not found")
    return wallet


def lock_wallet_for_user(session: Session, user_id: str) -> Optional[Wallet]:
    return _select_for_update(session, Wallet, Wallet.user_id == user_id)


def lock_withdrawal(session: Session, withdrawal_id: str) -> Withdrawal:
    withdrawal = _select_for_update(session, Withdrawal, Withdrawal.id == withdrawal_id)
    if withdrawal is None:
        raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
    return withdrawal


def lock_dispute(session: Session, dispute_id: str) -> Dispute:
    dispute = _select_for_update(session, Dispute, Dispute.id == dispute_id)
    if dispute is None:
        raise NotFoundError(f"Dispute {dispute_id} not found")
    return dispute


def lock_payment_for_order(session: Session, order_id: str) -> Optional[Payment]:
    return _select_for_update(session, Payment, Payment.order_id == order_id)
