"""
Midtrans Webhook Handler
Reconciles Snap payment notifications into Payment records and escrow holds.

The gateway redelivers notifications until it gets a 200, so the endpoint
always answers ``{"status": "ok"}``; what actually happened is reported by
``WebhookResult.outcome`` and kept in the ``webhook_events`` table.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Generator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from config import Config
from database import SessionLocal
from models import (
    WebhookEvent, PaymentStatus, NotificationType, SUCCESSFUL_PAYMENT_STATUSES
)
from services.escrow_service import EscrowService
from services.notification_service import queue_notification, queue_admin_notification
from services.payment_gateway import PaymentGateway, MidtransGateway
from utils.atomic_transactions import atomic_transaction, lock_payment_for_order
from utils.data_sanitizer import sanitize_for_log
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    MarketplaceError, ResourceConflictError, SignatureInvalidError, ValidationError
)

logger = logging.getLogger(__name__)

PROVIDER = "midtrans"
REQUIRED_FIELDS = ("order_id", "status_code", "gross_amount", "signature_key", "transaction_status")

router = APIRouter()


class WebhookOutcome(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SIGNATURE_INVALID = "signature_invalid"
    INVALID_PAYLOAD = "invalid_payload"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    message: str = ""


def _parse_gross_amount(raw: Any) -> int:
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise ValidationError(f"Invalid gross_amount: {raw!r}") from None
    if value != value.to_integral_value():
        raise ValidationError(f"gross_amount must be a whole amount, got {raw!r}")
    return int(value)


def _event_id(payload: Dict[str, Any]) -> str:
    reference = payload.get("transaction_id") or payload["order_id"]
    return f"{reference}:{payload['transaction_status']}"


def _event_seen(session: Session, event_id: str) -> bool:
    return session.execute(
        select(WebhookEvent.id).where(WebhookEvent.provider == PROVIDER, WebhookEvent.event_id == event_id)
    ).scalar_one_or_none() is not None


def _record_event(
    session: Session,
    event_id: str,
    payload: Dict[str, Any],
    outcome: WebhookOutcome,
    error_message: Optional[str] = None,
) -> None:
    session.add(WebhookEvent(
        provider=PROVIDER,
        event_id=event_id,
        order_id=payload.get("order_id"),
        transaction_status=payload.get("transaction_status"),
        outcome=outcome.value,
        error_message=error_message,
        payload={k: v for k, v in payload.items() if k != "signature_key"},
    ))
    session.flush()


def process_midtrans_notification(
    session: Session,
    payload: Dict[str, Any],
    gateway: Optional[PaymentGateway] = None,
) -> WebhookResult:
    """
    Apply one gateway notification.

    Bad signatures and malformed payloads change nothing. Redeliveries of
    an already-seen event, or of any event for a payment that is already
    terminal, are no-ops. A verified settlement places the escrow hold in
    the same unit of work as the Payment update.
    """
    gateway = gateway or MidtransGateway()

    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        logger.warning(f"⚠️ MIDTRANS_WEBHOOK: missing fields {missing} in {sanitize_for_log(payload)}")
        return WebhookResult(WebhookOutcome.INVALID_PAYLOAD, message=f"missing fields: {', '.join(missing)}")

    order_id = str(payload["order_id"])
    try:
        gateway.authenticate(
            order_id, str(payload["status_code"]), str(payload["gross_amount"]), str(payload["signature_key"])
        )
    except SignatureInvalidError as e:
        logger.warning(f"🚨 MIDTRANS_WEBHOOK: {e.message} - rejected")
        return WebhookResult(WebhookOutcome.SIGNATURE_INVALID, order_id=order_id, message="invalid signature")

    status = gateway.normalize_status(payload.get("transaction_status"), payload.get("fraud_status"))
    event_id = _event_id(payload)

    try:
        with atomic_transaction(session):
            if _event_seen(session, event_id):
                logger.info(f"🔁 MIDTRANS_WEBHOOK: event {event_id} already processed")
                return WebhookResult(WebhookOutcome.DUPLICATE, order_id, status.value, "event already processed")

            payment = lock_payment_for_order(session, order_id)
            if payment is None:
                logger.warning(f"⚠️ MIDTRANS_WEBHOOK: no payment for order {order_id}")
                return WebhookResult(WebhookOutcome.NOT_FOUND, order_id, status.value, "payment not found")

            if payment.is_terminal:
                if payment.cancelled_locally and status.value in SUCCESSFUL_PAYMENT_STATUSES:
                    message = (
                        f"payment_cancelled_locally: {status.value} received for cancelled order {order_id}, "
                        f"refund {payload['gross_amount']} {Config.CURRENCY} manually"
                    )
                    logger.error(f"❌ MIDTRANS_WEBHOOK: {message}")
                    _record_event(session, event_id, payload, WebhookOutcome.REJECTED, message)
                    queue_admin_notification(
                        session, f"Order {order_id} was paid after it was cancelled. Refund the buyer.",
                        None, NotificationType.PAYMENT,
                    )
                    return WebhookResult(WebhookOutcome.REJECTED, order_id, status.value, message)
                logger.info(
                    f"🔁 MIDTRANS_WEBHOOK: payment for order {order_id} already {payment.status} - "
                    f"{status.value} ignored"
                )
                _record_event(session, event_id, payload, WebhookOutcome.DUPLICATE)
                return WebhookResult(WebhookOutcome.DUPLICATE, order_id, payment.status, "payment already final")

            gross_amount = _parse_gross_amount(payload["gross_amount"])
            payment.transaction_id = payload.get("transaction_id") or payment.transaction_id
            payment.payment_type = payload.get("payment_type") or payment.payment_type
            payment.status = status.value
            payment.payment_metadata = {
                **(payment.payment_metadata or {}),
                "transaction_status": payload.get("transaction_status"),
                "fraud_status": payload.get("fraud_status"),
                "transaction_time": payload.get("transaction_time"),
                "status_code": payload.get("status_code"),
            }

            if status.value in SUCCESSFUL_PAYMENT_STATUSES:
                payment.paid_amount = gross_amount
                payment.paid_at = get_naive_utc_now()
                EscrowService(session).on_payment_verified(
                    order_id,
                    gross_amount,
                    {
                        "transaction_id": payment.transaction_id,
                        "payment_type": payment.payment_type,
                        "provider": PROVIDER,
                    },
                )
            elif status in (PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED):
                queue_notification(
                    session, payment.order.buyer_id,
                    f"Payment for {payment.order.title} {status.value}. You can try paying again.",
                    None, NotificationType.PAYMENT,
                )

            _record_event(session, event_id, payload, WebhookOutcome.PROCESSED)
            logger.info(f"✅ MIDTRANS_WEBHOOK: order {order_id} payment -> {status.value}")
            return WebhookResult(WebhookOutcome.PROCESSED, order_id, status.value, "processed")

    except ResourceConflictError as e:
        logger.info(f"🔁 MIDTRANS_WEBHOOK: ledger already has this event for order {order_id}: {e.message}")
        return WebhookResult(WebhookOutcome.DUPLICATE, order_id, status.value, e.message)
    except IntegrityError:
        # Concurrent delivery of the same event won the insert race
        logger.info(f"🔁 MIDTRANS_WEBHOOK: concurrent delivery of {event_id}")
        return WebhookResult(WebhookOutcome.DUPLICATE, order_id, status.value, "concurrent delivery")
    except MarketplaceError as e:
        logger.error(f"❌ MIDTRANS_WEBHOOK: rejected event {event_id} for order {order_id}: {e.code} {e.message}")
        with atomic_transaction(session):
            if not _event_seen(session, event_id):
                _record_event(session, event_id, payload, WebhookOutcome.REJECTED, f"{e.code}: {e.message}")
        return WebhookResult(WebhookOutcome.REJECTED, order_id, status.value, e.message)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_gateway() -> PaymentGateway:
    return MidtransGateway()


@router.post("/webhook/midtrans")
async def midtrans_webhook_endpoint(
    request: Request,
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Midtrans HTTP notification endpoint; always 200 to stop provider retries"""
    try:
        payload = await request.json()
    except ValueError as json_e:
        logger.error(f"Failed to parse Midtrans webhook JSON: {json_e}")
        return JSONResponse(content={"status": "ok"}, status_code=200)

    if not isinstance(payload, dict):
        logger.error(f"Midtrans webhook payload is not an object: {type(payload).__name__}")
        return JSONResponse(content={"status": "ok"}, status_code=200)

    try:
        result = await run_in_threadpool(process_midtrans_notification, session, payload, gateway)
        logger.info(f"MIDTRANS_WEBHOOK: order={result.order_id} outcome={result.outcome.value}")
    except Exception as e:
        logger.error(f"CRITICAL: Unhandled error in Midtrans webhook: {e}", exc_info=True)

    return JSONResponse(content={"status": "ok"}, status_code=200)
