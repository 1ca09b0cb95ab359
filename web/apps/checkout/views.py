"""HTTP views for the checkout app.

Views are kept small: they read the request, obtain a configured service
from ``providers`` and translate its result into an HTTP response. Every
checkout response has the shape ``{"success": bool, "data"|"error": ...}``.

Idempotency: ``POST /api/checkout/`` honours an ``Idempotency-Key`` header.
The first request runs the checkout and stores its response; retries with
the same payload get the stored status and body back with
``Idempotent-Replay: true``; the same key with a different payload answers
409 ``IDEMPOTENCY_CONFLICT``.
"""

import logging
import uuid

from django.conf import settings
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .errors import CheckoutError, NotFoundError
from .idempotency import IdempotencyConflict, finalize, get_or_create_idempotent, is_in_flight
from .schemas import CardPaymentIn, OrderReadDTO, first_error_message
from .webhooks import verify_signature

logger = logging.getLogger(__name__)


def _owner_ref(request) -> str:
    """Owner of the stock holds: the user id, else the anonymous session id."""
    user = getattr(request, "user", None)
    if user is not None and user.is_authenticated:
        return f"user:{user.pk}"
    sid = request.headers.get("X-Session-Id")
    return f"session:{sid}" if sid else f"anon:{uuid.uuid4()}"


def _error(message: str, code: str, http_status: int) -> Response:
    return Response({"success": False, "error": message, "code": code}, status=http_status)


class CheckoutView(APIView):
    """Run a checkout: validate, reserve stock, persist the order, start payment.

    Returns 201 on success; 400 validation, 404 unknown product/variant, 409
    insufficient stock or idempotency conflict, 502 payment gateway, 503
    inventory unavailable, 500 persistence or internal error.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        idem_key = request.headers.get("Idempotency-Key")

        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except IdempotencyConflict:
                return _error("La clave de idempotencia ya se usó con otro pedido", "IDEMPOTENCY_CONFLICT", 409)
            if existing:
                if is_in_flight(rec):
                    return _error("El pedido ya se está procesando", "IDEMPOTENCY_IN_PROGRESS", 409)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        result = providers.get_checkout_service().process_checkout(request.data, _owner_ref(request))
        body = result.to_body()

        if rec:
            order_id = result.data["orderId"] if result.success else None
            finalize(rec, result.http_status, body, order_id=order_id)
        return Response(body, status=result.http_status)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        order = providers.get_order_repository().get_order(oid)
        if order is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        dto = OrderReadDTO.from_record(order)
        return Response(dto.model_dump(mode="json", by_alias=True), status=200)


class CardPaymentView(APIView):
    """Pay a pending Mercado Pago order with a card token from the front-end SDK."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request, oid):
        try:
            card = CardPaymentIn.model_validate(request.data)
        except PydanticValidationError as e:
            return _error(first_error_message(e), "VALIDATION_ERROR", 400)

        try:
            outcome = providers.get_card_payment_service().pay(oid, card)
        except CheckoutError as e:
            logger.warning("card payment failed", extra={"order_id": str(oid), "code": e.code, "detail": e.detail})
            return _error(e.message, e.code, e.http_status)
        return Response({"success": True, "data": outcome.as_dict()}, status=200)


class MercadoPagoWebhookView(APIView):
    """Gateway notifications.

    401 when the signature does not verify; 200 ``{received: true}`` for
    topics other than ``payment``; 400 without a data id; 200 with an
    ``error`` for unknown orders (a retry cannot help); 503 on gateway
    errors so the gateway retries.
    """

    authentication_classes = []
    permission_classes = []
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "webhooks"

    def get(self, request):
        return Response({"status": "ok"})

    def post(self, request):
        body = request.data if isinstance(request.data, dict) else {}
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        data_id = request.query_params.get("data.id") or data.get("id")
        data_id = str(data_id) if data_id is not None else None
        topic = request.query_params.get("type") or request.query_params.get("topic") or body.get("type")

        ok = verify_signature(
            request.headers.get("x-signature"),
            request.headers.get("x-request-id"),
            data_id,
            getattr(settings, "MP_WEBHOOK_SECRET", ""),
        )
        if not ok:
            return Response({"detail": "INVALID_SIGNATURE"}, status=401)

        if topic != "payment":
            return Response({"received": True})
        if not data_id:
            return Response({"error": "No payment ID"}, status=400)

        try:
            outcome = providers.get_notification_service().apply_payment_notification(data_id)
        except NotFoundError as e:
            logger.warning("webhook for unknown order", extra={"data_id": data_id, "detail": e.message})
            return Response({"received": True, "error": e.message})
        except CheckoutError as e:
            logger.error("webhook processing failed", extra={"data_id": data_id, "code": e.code, "detail": e.detail})
            return Response({"received": False, "error": e.code}, status=503)
        return Response({"received": True, **outcome.as_dict()})
