"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the checkout ports using
``httpx``:

- ``HttpInventoryClient`` talks to the inventory service and implements both
  ``ProductRepository`` and ``ReservationRepository``.
- ``HttpMercadoPagoClient`` talks to the Mercado Pago REST API and implements
  ``PaymentGateway``.

Both propagate ``X-Request-ID`` from the ContextVar set by the gateway
middleware, run every call through ``resilience.send_with_retry`` and
translate transport failures into domain errors (``InventoryServiceError`` and
``PaymentGatewayError``). Gateway error bodies are logged, never returned.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    AvailabilityReport,
    CartLine,
    CreatePaymentRequest,
    CreatePreferenceRequest,
    GatewayPayment,
    Payer,
    PreferenceResponse,
    ProductRecord,
    UnavailableItem,
    VariantRecord,
)
from .errors import InventoryServiceError, NotFoundError, PaymentGatewayError, ReservationConflict
from .resilience import CircuitOpenError, gateway_breaker, inventory_breaker, send_with_retry

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger(__name__)


def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _json(resp: httpx.Response, path: str, error=InventoryServiceError):
    try:
        return resp.json()
    except ValueError as e:
        logger.error("non-JSON response", extra={"path": path, "status": resp.status_code})
        raise error(detail=f"{path} -> {resp.status_code}: invalid JSON") from e


def _line_payload(line: CartLine) -> dict:
    return {"product_id": line.product_id, "variant_id": line.variant_id, "quantity": line.quantity}


def _unavailable(items: list[dict]) -> list[UnavailableItem]:
    return [
        UnavailableItem(
            product_id=i.get("product_id"),
            variant_id=i.get("variant_id"),
            available=int(i["available"]),
            requested=int(i["requested"]),
        )
        for i in items
    ]


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient:
    """HTTP client for the inventory service with retry and circuit breaker."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _call(self, method: str, path: str, payload: Optional[dict] = None, params: Optional[dict] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                return send_with_retry(
                    inventory_breaker,
                    lambda h: client.request(method, url, json=payload, params=params, headers=h),
                    _request_headers(),
                )
        except (CircuitOpenError, httpx.HTTPError) as e:
            logger.error("inventory call failed", extra={"path": path, "error": str(e)})
            raise InventoryServiceError(detail=str(e)) from e

    @staticmethod
    def _raise_not_found(resp: httpx.Response):
        body = _json(resp, str(resp.request.url.path))
        if not isinstance(body, dict):
            body = {}
        if body.get("kind") == "variant":
            raise NotFoundError(f"Variante no encontrada: {body.get('id')}")
        raise NotFoundError(f"Producto no encontrado: {body.get('id')}")

    @staticmethod
    def _unexpected(resp: httpx.Response, path: str):
        logger.error("unexpected inventory response", extra={"path": path, "status": resp.status_code})
        return InventoryServiceError(detail=f"{path} -> {resp.status_code}")

    def _lookup(self, product_ids: list[str], variant_ids: list[str]) -> dict:
        resp = self._call("POST", "/products/lookup", {"product_ids": product_ids, "variant_ids": variant_ids})
        if resp.status_code != 200:
            raise self._unexpected(resp, "/products/lookup")
        return _json(resp, "/products/lookup")

    def get_products(self, product_ids: list[str]) -> dict[str, ProductRecord]:
        if not product_ids:
            return {}
        data = self._lookup(list(product_ids), [])
        return {
            p["id"]: ProductRecord(
                id=p["id"],
                name=p["name"],
                price=Decimal(str(p["price"])),
                stock=int(p["stock"]),
                track_inventory=bool(p.get("track_inventory", True)),
            )
            for p in data.get("products", [])
        }

    def get_variants(self, variant_ids: list[str]) -> dict[str, VariantRecord]:
        if not variant_ids:
            return {}
        data = self._lookup([], list(variant_ids))
        return {
            v["id"]: VariantRecord(
                id=v["id"],
                product_id=v["product_id"],
                name=v["name"],
                price_override=(Decimal(str(v["price_override"])) if v.get("price_override") is not None else None),
                stock=int(v["stock"]),
            )
            for v in data.get("variants", [])
        }

    def available_to_sell(self, product_id: str, variant_id: Optional[str] = None) -> int:
        params = {"product_id": product_id}
        if variant_id:
            params["variant_id"] = variant_id
        resp = self._call("GET", "/availability", params=params)
        if resp.status_code == 404:
            self._raise_not_found(resp)
        if resp.status_code != 200:
            raise self._unexpected(resp, "/availability")
        return int(_json(resp, "/availability")["available"])

    def check_availability(self, lines: list[CartLine]) -> AvailabilityReport:
        resp = self._call("POST", "/availability", {"items": [_line_payload(l) for l in lines]})
        if resp.status_code == 404:
            self._raise_not_found(resp)
        if resp.status_code != 200:
            raise self._unexpected(resp, "/availability")
        data = _json(resp, "/availability")
        return AvailabilityReport(
            available=bool(data["available"]),
            unavailable_items=_unavailable(data.get("unavailable_items", [])),
        )

    def reserve(self, lines: list[CartLine], owner_ref: str, ttl_minutes: int) -> list[str]:
        """Reserve stock for all lines in one call.

        Business mappings:
        - 201 → reservation ids
        - 422 with ``INSUFFICIENT_STOCK`` → ``ReservationConflict`` (not a
          circuit failure)
        - 404 → ``NotFoundError``

        Raises:
            ReservationConflict: When any line cannot be held.
            NotFoundError: When a product or variant does not exist.
            InventoryServiceError: Transport failures, 5xx or open circuit.
        """
        payload = {"items": [_line_payload(l) for l in lines], "owner_ref": owner_ref, "ttl_minutes": ttl_minutes}
        # misma clave en cada reintento: el servicio devuelve las reservas ya creadas
        payload["request_key"] = uuid.uuid4().hex
        resp = self._call("POST", "/reservations", payload)
        if resp.status_code in (200, 201):
            return list(_json(resp, "/reservations").get("reservation_ids", []))
        if resp.status_code == 422:
            detail = _json(resp, "/reservations").get("detail")
            if isinstance(detail, dict) and detail.get("detail") == "INSUFFICIENT_STOCK":
                raise ReservationConflict(_unavailable(detail.get("unavailable", [])))
        if resp.status_code == 404:
            self._raise_not_found(resp)
        raise self._unexpected(resp, "/reservations")

    def complete(self, reservation_ids: list[str], order_id: str) -> list[str]:
        resp = self._call("POST", "/reservations/complete", {"reservation_ids": reservation_ids, "order_id": order_id})
        if resp.status_code != 200:
            raise self._unexpected(resp, "/reservations/complete")
        return list(_json(resp, "/reservations/complete").get("completed", []))

    def release(self, reservation_ids: list[str]) -> int:
        resp = self._call("POST", "/reservations/release", {"reservation_ids": reservation_ids})
        if resp.status_code != 200:
            raise self._unexpected(resp, "/reservations/release")
        return int(_json(resp, "/reservations/release").get("count", 0))


# ---------------- Mercado Pago Adapter ---------------- #

def _money(value: Decimal) -> float:
    # la API espera números JSON
    return float(value)


def _payer_payload(payer: Payer) -> dict:
    out = {"email": payer.email, "name": payer.name, "surname": payer.surname}
    if payer.phone:
        out["phone"] = {"number": payer.phone}
    if payer.street_name:
        out["address"] = {
            "street_name": payer.street_name,
            "street_number": payer.street_number,
            "zip_code": payer.zip_code,
        }
    return out


def _payment_from(data: dict) -> GatewayPayment:
    if data.get("id") in (None, ""):
        raise PaymentGatewayError(detail="payment response without id")
    amount = data.get("transaction_amount")
    return GatewayPayment(
        id=str(data["id"]),
        status=str(data.get("status") or ""),
        status_detail=data.get("status_detail"),
        external_reference=data.get("external_reference"),
        payment_method_id=data.get("payment_method_id"),
        transaction_amount=(Decimal(str(amount)) if amount is not None else None),
        date_approved=data.get("date_approved"),
    )


class HttpMercadoPagoClient:
    """Mercado Pago REST client implementing the ``PaymentGateway`` port.

    Writes carry an ``X-Idempotency-Key`` derived from the order so retries
    (ours or the caller's) never create a second preference or payment.
    Every failure, a timeout included, surfaces as ``PaymentGatewayError``.
    """

    def __init__(self, base_url: str | None = None, access_token: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.MP_API_BASE_URL).rstrip("/")
        self.access_token = access_token if access_token is not None else settings.MP_ACCESS_TOKEN
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _send(self, method: str, path: str, payload: Optional[dict] = None, idempotency_key: Optional[str] = None) -> dict:
        url = f"{self.base_url}{path}"
        extra = {"Authorization": f"Bearer {self.access_token}"}
        if idempotency_key:
            extra["X-Idempotency-Key"] = idempotency_key
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = send_with_retry(
                    gateway_breaker,
                    lambda h: client.request(method, url, json=payload, headers=h),
                    _request_headers(extra),
                )
        except (CircuitOpenError, httpx.HTTPError) as e:
            logger.error("mercadopago call failed", extra={"path": path, "error": str(e)})
            raise PaymentGatewayError(detail=str(e)) from e

        if resp.status_code >= 400:
            detail = resp.text[:500]
            logger.error("mercadopago rejected call", extra={"path": path, "status": resp.status_code, "body": detail})
            raise PaymentGatewayError(detail=f"{resp.status_code}: {detail}")
        data = _json(resp, path, error=PaymentGatewayError)
        if not isinstance(data, dict):
            raise PaymentGatewayError(detail=f"{path}: unexpected response body")
        return data

    def create_preference(self, request: CreatePreferenceRequest) -> PreferenceResponse:
        payload = {
            "items": [
                {
                    "id": it.id,
                    "title": it.title,
                    "quantity": it.quantity,
                    "unit_price": _money(it.unit_price),
                    "currency_id": it.currency_id,
                }
                for it in request.items
            ],
            "payer": _payer_payload(request.payer),
            "back_urls": request.back_urls,
            "auto_return": "approved",
            "external_reference": request.external_reference,
            "statement_descriptor": request.statement_descriptor,
            "metadata": request.metadata,
        }
        if request.notification_url:
            payload["notification_url"] = request.notification_url
        data = self._send(
            "POST", "/checkout/preferences", payload, idempotency_key=f"pref-{request.external_reference}"
        )
        if not data.get("id") or not data.get("init_point"):
            raise PaymentGatewayError(detail="preference response without id/init_point")
        return PreferenceResponse(
            id=str(data["id"]),
            init_point=data["init_point"],
            sandbox_init_point=data.get("sandbox_init_point"),
        )

    def create_payment(self, request: CreatePaymentRequest) -> GatewayPayment:
        payload = {
            "transaction_amount": _money(request.transaction_amount),
            "token": request.token,
            "description": request.description,
            "installments": request.installments,
            "payment_method_id": request.payment_method_id,
            "payer": {
                "email": request.payer.email,
                "first_name": request.payer.name,
                "last_name": request.payer.surname,
            },
            "external_reference": request.external_reference,
            "statement_descriptor": request.statement_descriptor,
            "metadata": request.metadata,
        }
        if request.issuer_id:
            payload["issuer_id"] = request.issuer_id
        if request.notification_url:
            payload["notification_url"] = request.notification_url
        data = self._send(
            "POST", "/v1/payments", payload, idempotency_key=f"pay-{request.external_reference}-{request.token}"
        )
        return _payment_from(data)

    def get_payment(self, payment_id: str) -> GatewayPayment:
        return _payment_from(self._send("GET", f"/v1/payments/{payment_id}"))
