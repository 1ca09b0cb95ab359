"""Inbound Mercado Pago notifications: signature check and order update.

``verify_signature`` authenticates a notification from its ``x-signature``
and ``x-request-id`` headers. ``PaymentNotificationService`` fetches the
payment the notification refers to, moves the order forward and commits the
reserved stock exactly once, however many times the gateway delivers the
same notification.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Optional

from .domain import (
    GatewayPayment,
    OrderRepository,
    OrderStatus,
    PaymentGateway,
    ReservationRepository,
)
from .errors import NotFoundError, WebhookAuthError

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECS = 300

GATEWAY_STATUS_MAP = {
    "approved": OrderStatus.PAID,
    "accredited": OrderStatus.PAID,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PENDING,
    "in_mediation": OrderStatus.PENDING,
    "authorized": OrderStatus.PENDING,
    "rejected": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "refunded": OrderStatus.REFUNDED,
    "charged_back": OrderStatus.REFUNDED,
}


def parse_signature_header(header: str) -> dict[str, str]:
    """Parse ``ts=...,v1=...`` into a dict; malformed parts are skipped."""
    parts = {}
    for chunk in header.split(","):
        key, sep, value = chunk.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def _check(signature_header, request_id_header, data_id, secret, now) -> None:
    if not signature_header or not request_id_header:
        raise WebhookAuthError("missing signature headers")
    if not secret:
        raise WebhookAuthError("webhook secret not configured")

    parts = parse_signature_header(signature_header)
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        raise WebhookAuthError("signature header without ts/v1")
    try:
        ts_value = int(ts)
    except ValueError:
        raise WebhookAuthError("non-numeric ts")
    if abs(now - ts_value) > SIGNATURE_TOLERANCE_SECS:
        raise WebhookAuthError("timestamp outside tolerance")

    manifest = build_manifest(data_id or "", request_id_header, ts)
    try:
        key, message, given = secret.encode("utf-8"), manifest.encode("utf-8"), v1.lower().encode("utf-8")
    except UnicodeEncodeError:
        raise WebhookAuthError("signature inputs are not valid UTF-8")
    expected = hmac.new(key, message, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode("ascii"), given):
        raise WebhookAuthError("signature mismatch")


def verify_signature(
    signature_header: Optional[str],
    request_id_header: Optional[str],
    data_id: Optional[str],
    secret: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """Authenticate a gateway notification.

    The manifest ``id:<dataId>;request-id:<requestId>;ts:<ts>;`` is signed
    with HMAC-SHA256 and compared to ``v1`` in constant time, ignoring hex
    case. Timestamps more than five minutes away from ``now`` are rejected.

    Args:
        signature_header: Raw ``x-signature`` value.
        request_id_header: Raw ``x-request-id`` value.
        data_id: Notification data id (payment id).
        secret: Shared webhook secret.
        now: Current unix time in seconds; defaults to ``time.time()``.

    Returns:
        bool: True only when every check passes. Never raises.
    """
    try:
        _check(signature_header, request_id_header, data_id, secret, time.time() if now is None else now)
    except WebhookAuthError as e:
        logger.warning("webhook signature rejected", extra={"reason": str(e), "data_id": data_id})
        return False
    except Exception:
        logger.exception("webhook signature check failed", extra={"data_id": data_id})
        return False
    return True


def map_gateway_status(gateway_status: Optional[str]) -> OrderStatus:
    """Translate a gateway payment status; unknown values stay ``pending``."""
    return GATEWAY_STATUS_MAP.get((gateway_status or "").lower(), OrderStatus.PENDING)


@dataclass(frozen=True)
class NotificationOutcome:
    order_id: str
    new_status: OrderStatus
    stock_committed: bool
    payment_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "status": self.new_status.value,
            "stockCommitted": self.stock_committed,
            "paymentId": self.payment_id,
        }


class PaymentNotificationService:
    """Applies gateway payments to orders.

    Safe under duplicate and concurrent delivery: the status update runs
    under a row lock and stock is consumed only by the caller that wins the
    conditional ``stock_committed`` claim.
    """

    def __init__(self, gateway: PaymentGateway, orders: OrderRepository, reservations: ReservationRepository):
        self.gateway = gateway
        self.orders = orders
        self.reservations = reservations

    def apply_payment_notification(self, data_id: str) -> NotificationOutcome:
        """Fetch payment ``data_id`` from the gateway and apply it.

        Raises:
            PaymentGatewayError: The payment could not be fetched.
            NotFoundError: No order matches the payment's external reference.
        """
        return self.apply_payment(self.gateway.get_payment(data_id))

    def apply_payment(self, payment: GatewayPayment) -> NotificationOutcome:
        if not payment.external_reference:
            raise NotFoundError(f"Pago {payment.id} sin referencia de orden")

        mapped = map_gateway_status(payment.status)
        order = self.orders.record_payment(payment.external_reference, payment, mapped)
        oid = str(order.id)

        committed = order.stock_committed
        if order.status == OrderStatus.PAID and not committed and self.orders.claim_stock_commit(order.id):
            try:
                if order.reservation_ids:
                    self.reservations.complete(order.reservation_ids, oid)
            except Exception:
                self.orders.release_stock_commit(order.id)
                logger.exception("stock commit failed", extra={"order_id": oid, "payment_id": payment.id})
                raise
            committed = True
            logger.info("stock committed", extra={"order_id": oid, "reservation_ids": order.reservation_ids})

        logger.info(
            "payment applied",
            extra={"order_id": oid, "payment_id": payment.id, "gateway_status": payment.status, "order_status": order.status.value},
        )
        return NotificationOutcome(order_id=oid, new_status=order.status, stock_committed=committed, payment_id=payment.id)
