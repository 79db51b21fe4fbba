"""
Entity State Validators
Transition maps for Order, Withdrawal and Dispute records

The validators are pure lookups; services call ``ensure_transition`` inside
their unit of work right before mutating the status column, so an illegal
transition aborts the whole operation.
"""

import logging
from typing import Dict, Optional, Set

from models import OrderStatus, WithdrawalStatus, DisputeStatus
from utils.exception_handler import InvalidStateError

logger = logging.getLogger(__name__)


class StateValidator:
    """Base validator over a ``VALID_TRANSITIONS`` map"""

    ENTITY = "entity"
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {}

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def ensure_transition(cls, current_status: Optional[str], new_status: str, entity_id: str = "") -> None:
        """Raise InvalidStateError unless current -> new is allowed"""
        if not cls.is_valid_transition(current_status, new_status):
            logger.warning(
                f"🚫 INVALID_TRANSITION: {cls.ENTITY} {entity_id} {current_status} -> {new_status}"
            )
            raise InvalidStateError(
                f"Cannot move {cls.ENTITY} from '{current_status}' to '{new_status}'",
                details={"current_status": current_status, "requested_status": new_status},
            )


class OrderStateValidator(StateValidator):
    """Order lifecycle: escrow funded before work, released on approval"""

    ENTITY = "order"
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {OrderStatus.DRAFT.value},
        OrderStatus.DRAFT.value: {
            OrderStatus.WAITING_PAYMENT.value,
            OrderStatus.CANCELLED.value,
        },
        OrderStatus.WAITING_PAYMENT.value: {
            OrderStatus.PAID_ESCROW.value,
            OrderStatus.CANCELLED.value,
        },
        OrderStatus.PAID_ESCROW.value: {
            OrderStatus.IN_PROGRESS.value,
            OrderStatus.CANCELLED.value,  # Full refund
        },
        OrderStatus.IN_PROGRESS.value: {
            OrderStatus.DELIVERED.value,
            OrderStatus.DISPUTED.value,
        },
        OrderStatus.DELIVERED.value: {
            OrderStatus.REVISION.value,
            OrderStatus.COMPLETED.value,
            OrderStatus.DISPUTED.value,
        },
        OrderStatus.REVISION.value: {
            OrderStatus.DELIVERED.value,
            OrderStatus.DISPUTED.value,
        },
        # Only dispute resolution leaves DISPUTED
        OrderStatus.DISPUTED.value: {
            OrderStatus.COMPLETED.value,  # Release to seller
            OrderStatus.CANCELLED.value,  # Refund to buyer
        },
        OrderStatus.COMPLETED.value: set(),
        OrderStatus.CANCELLED.value: set(),
    }

    DISPUTABLE_STATUSES = frozenset({
        OrderStatus.IN_PROGRESS.value,
        OrderStatus.DELIVERED.value,
        OrderStatus.REVISION.value,
    })


class WithdrawalStateValidator(StateValidator):
    """Withdrawal approval flow; the hold is returned on cancelled/failed"""

    ENTITY = "withdrawal"
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {WithdrawalStatus.PENDING.value},
        WithdrawalStatus.PENDING.value: {
            WithdrawalStatus.PROCESSING.value,
            WithdrawalStatus.CANCELLED.value,
        },
        WithdrawalStatus.PROCESSING.value: {
            WithdrawalStatus.COMPLETED.value,
            WithdrawalStatus.FAILED.value,
        },
        WithdrawalStatus.COMPLETED.value: set(),
        WithdrawalStatus.CANCELLED.value: set(),
        WithdrawalStatus.FAILED.value: set(),
    }


class DisputeStateValidator(StateValidator):
    ENTITY = "dispute"
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {DisputeStatus.OPEN.value},
        DisputeStatus.OPEN.value: {DisputeStatus.RESOLVED.value},
        DisputeStatus.RESOLVED.value: set(),
    }
