"""
Exception Handler Module
Escrow domain exceptions and the helpers that turn them into caller-facing results
"""

import logging
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Something went wrong while processing your request. Please try again later."


class MarketplaceError(Exception):
    """Base class for every failure the escrow core raises on purpose"""

    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(MarketplaceError):
    """Entity absent"""
    code = "not_found"


class ForbiddenError(MarketplaceError):
    """Actor is not a party to the entity"""
    code = "forbidden"


class InvalidStateError(MarketplaceError):
    """Transition not legal from the current status"""
    code = "invalid_state"


class ValidationError(MarketplaceError):
    """Input constraint violated"""
    code = "validation_error"


class QuotaExceededError(ValidationError):
    """A counted allowance (revisions, pending withdrawals) is used up"""
    code = "quota_exceeded"


class ResourceConflictError(MarketplaceError):
    """Idempotency guard tripped: the ledger entry already exists"""
    code = "resource_conflict"


class UpstreamFailureError(MarketplaceError):
    """Payment gateway call failed"""
    code = "upstream_failure"


class SignatureInvalidError(MarketplaceError):
    """Webhook authenticity check failed"""
    code = "signature_invalid"


def user_facing_error(exc: Exception) -> Dict[str, Any]:
    """
    Map an exception to the result shape returned to callers.

    Domain errors keep their reason string; anything else is logged with
    its traceback and reported with a generic message so no ledger
    internals leak out.
    """
    if isinstance(exc, MarketplaceError):
        return {"success": False, "error": exc.code, "message": exc.message}

    logger.error(f"❌ UNEXPECTED_ERROR: {type(exc).__name__}: {exc}", exc_info=exc)
    return {"success": False, "error": MarketplaceError.code, "message": GENERIC_FAILURE_MESSAGE}


def safe_service_call(func: Callable) -> Callable:
    """
    Decorator for outer-surface entry points.

    Wraps the return value as ``{"success": True, "data": ...}`` and
    converts raised exceptions with :func:`user_facing_error`. The wrapped
    function is responsible for its own unit of work, which has already
    been rolled back by the time the exception reaches this wrapper.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            return {"success": True, "data": func(*args, **kwargs)}
        except Exception as e:
            if isinstance(e, MarketplaceError):
                logger.info(f"{func.__name__} refused: {e.code} - {e.message}")
            return user_facing_error(e)

    return wrapper
