"""Unit tests for the HTTP clients to the inventory service and Mercado Pago.

``httpx.Client.request`` is monkeypatched, so these tests exercise request
building and response mapping without a network.
"""

from decimal import Decimal

import httpx
import pytest

from apps.checkout.domain import CartLine, CreatePaymentRequest, CreatePreferenceRequest, Payer, PreferenceItem
from apps.checkout.errors import InventoryServiceError, NotFoundError, PaymentGatewayError, ReservationConflict
from apps.checkout.http_adapters import HttpInventoryClient, HttpMercadoPagoClient
from gateway.middleware import REQUEST_ID_CTX


class Recorder:
    """Fake ``httpx.Client.request`` answering from a queue of (status, body) pairs.

    A ``str`` body is sent as raw text, anything else as JSON.
    """

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = []

    # instancia en la clase: no se enlaza, no recibe el client
    def __call__(self, method, url, json=None, params=None, headers=None, **kw):
        self.calls.append({"method": method, "url": url, "json": json, "params": params, "headers": dict(headers or {})})
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        status, body = answer
        if isinstance(body, str):
            return httpx.Response(status, text=body, request=httpx.Request(method, url))
        return httpx.Response(status, json=body, request=httpx.Request(method, url))


@pytest.fixture
def fast_retries(settings):
    settings.HTTP_RETRY_MAX = 1
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0


def patch_request(monkeypatch, *answers) -> Recorder:
    rec = Recorder(*answers)
    monkeypatch.setattr(httpx.Client, "request", rec, raising=True)
    return rec


# ---- inventario ----

def test_lookup_maps_products_and_variants(monkeypatch):
    rec = patch_request(
        monkeypatch,
        (200, {"products": [{"id": "P1", "name": "Taza", "price": "350.00", "stock": 5, "track_inventory": True}], "variants": []}),
    )
    products = HttpInventoryClient(base_url="http://inventory:9001/").get_products(["P1"])

    assert products["P1"].price == Decimal("350.00")
    assert products["P1"].stock == 5
    assert rec.calls[0]["url"] == "http://inventory:9001/products/lookup"
    assert rec.calls[0]["json"] == {"product_ids": ["P1"], "variant_ids": []}


def test_empty_lookups_skip_the_network(monkeypatch):
    rec = patch_request(monkeypatch, (500, {}))
    client = HttpInventoryClient(base_url="http://x")
    assert client.get_products([]) == {} and client.get_variants([]) == {}
    assert rec.calls == []


def test_reserve_returns_ids_and_sends_request_id(monkeypatch):
    rec = patch_request(monkeypatch, (201, {"reservation_ids": ["r1", "r2"]}))
    token = REQUEST_ID_CTX.set("req-123")
    try:
        ids = HttpInventoryClient(base_url="http://x").reserve([CartLine("P1", None, 2)], "session:s", 15)
    finally:
        REQUEST_ID_CTX.reset(token)

    assert ids == ["r1", "r2"]
    call = rec.calls[0]
    sent = dict(call["json"])
    assert len(sent.pop("request_key")) == 32
    assert sent == {
        "items": [{"product_id": "P1", "variant_id": None, "quantity": 2}],
        "owner_ref": "session:s",
        "ttl_minutes": 15,
    }
    assert call["headers"]["X-Request-ID"] == "req-123"
    assert call["headers"]["X-Circuit-State"] == "CLOSED"
    assert call["headers"]["X-Retry-Count"] == "0"


def test_reserve_retry_reuses_request_key(monkeypatch, fast_retries):
    # el primer intento pudo haber llegado al servicio antes del timeout
    rec = patch_request(monkeypatch, httpx.ReadTimeout("slow"), (201, {"reservation_ids": ["r1"]}))
    client = HttpInventoryClient(base_url="http://x")

    assert client.reserve([CartLine("P1", None, 1)], "s", 15) == ["r1"]
    assert len(rec.calls) == 2
    assert rec.calls[0]["json"]["request_key"] == rec.calls[1]["json"]["request_key"]

    client.reserve([CartLine("P1", None, 1)], "s", 15)
    assert rec.calls[2]["json"]["request_key"] != rec.calls[0]["json"]["request_key"]


def test_inventory_non_json_success_is_inventory_error(monkeypatch):
    patch_request(monkeypatch, (200, "<html>proxy</html>"))
    client = HttpInventoryClient(base_url="http://x")
    with pytest.raises(InventoryServiceError):
        client.reserve([CartLine("P1", None, 1)], "s", 15)
    with pytest.raises(InventoryServiceError):
        client.complete(["r1"], "order-1")
    with pytest.raises(InventoryServiceError):
        client.available_to_sell("P1")


def test_reserve_conflict_carries_shortfalls(monkeypatch):
    body = {
        "detail": {
            "reserved": False,
            "detail": "INSUFFICIENT_STOCK",
            "unavailable": [{"product_id": "P1", "variant_id": None, "available": 1, "requested": 2}],
        }
    }
    patch_request(monkeypatch, (422, body))

    with pytest.raises(ReservationConflict) as exc:
        HttpInventoryClient(base_url="http://x").reserve([CartLine("P1", None, 2)], "s", 15)
    (item,) = exc.value.unavailable_items
    assert (item.product_id, item.available, item.requested) == ("P1", 1, 2)


def test_reserve_not_found_maps_kind(monkeypatch):
    patch_request(monkeypatch, (404, {"detail": "NOT_FOUND", "kind": "variant", "id": "V9"}))
    with pytest.raises(NotFoundError) as exc:
        HttpInventoryClient(base_url="http://x").reserve([CartLine("P1", "V9", 1)], "s", 15)
    assert exc.value.message == "Variante no encontrada: V9"


def test_check_availability(monkeypatch):
    patch_request(
        monkeypatch,
        (200, {"available": False, "unavailable_items": [{"product_id": "P1", "variant_id": None, "available": 0, "requested": 1}]}),
    )
    report = HttpInventoryClient(base_url="http://x").check_availability([CartLine("P1", None, 1)])
    assert report.available is False
    assert report.unavailable_items[0].available == 0


def test_network_error_becomes_inventory_error(monkeypatch, fast_retries):
    rec = patch_request(monkeypatch, httpx.ConnectError("refused"))
    with pytest.raises(InventoryServiceError):
        HttpInventoryClient(base_url="http://x").release(["r1"])
    assert len(rec.calls) == 2


def test_complete_and_release(monkeypatch):
    rec = patch_request(monkeypatch, (200, {"completed": ["r1"]}), (200, {"count": 1}))
    client = HttpInventoryClient(base_url="http://x")
    assert client.complete(["r1"], "order-1") == ["r1"]
    assert client.release(["r1"]) == 1
    assert rec.calls[0]["url"].endswith("/reservations/complete")
    assert rec.calls[1]["url"].endswith("/reservations/release")


# ---- Mercado Pago ----

def preference_request():
    return CreatePreferenceRequest(
        items=[PreferenceItem(id="P1", title="Taza", quantity=2, unit_price=Decimal("350"), currency_id="UYU")],
        payer=Payer(email="ana@example.com", name="Ana", surname="Pérez"),
        back_urls={"success": "https://shop.test/checkout/success?order_id=o1"},
        external_reference="o1",
        notification_url="https://shop.test/api/webhooks/mercadopago/",
        statement_descriptor="TIENDA",
        metadata={"order_id": "o1"},
    )


def test_create_preference(monkeypatch):
    rec = patch_request(monkeypatch, (201, {"id": "pref-1", "init_point": "https://mp.test/init"}))
    client = HttpMercadoPagoClient(base_url="https://api.mp.test", access_token="TEST-TOKEN")

    pref = client.create_preference(preference_request())

    assert (pref.id, pref.init_point) == ("pref-1", "https://mp.test/init")
    call = rec.calls[0]
    assert call["url"] == "https://api.mp.test/checkout/preferences"
    assert call["headers"]["Authorization"] == "Bearer TEST-TOKEN"
    assert call["headers"]["X-Idempotency-Key"] == "pref-o1"
    assert call["json"]["items"][0]["unit_price"] == 350.0
    assert call["json"]["notification_url"] == "https://shop.test/api/webhooks/mercadopago/"


def test_create_preference_without_init_point_fails(monkeypatch):
    patch_request(monkeypatch, (201, {"id": "pref-1"}))
    with pytest.raises(PaymentGatewayError):
        HttpMercadoPagoClient(base_url="https://api.mp.test", access_token="t").create_preference(preference_request())


def test_gateway_4xx_is_not_retried(monkeypatch, fast_retries):
    rec = patch_request(monkeypatch, (400, {"message": "invalid token"}))
    with pytest.raises(PaymentGatewayError) as exc:
        HttpMercadoPagoClient(base_url="https://api.mp.test", access_token="t").get_payment("1")
    assert len(rec.calls) == 1
    # el cuerpo del gateway no llega al comprador
    assert "invalid token" not in exc.value.message


def test_gateway_timeout_is_payment_error(monkeypatch, fast_retries):
    patch_request(monkeypatch, httpx.ReadTimeout("slow"))
    with pytest.raises(PaymentGatewayError):
        HttpMercadoPagoClient(base_url="https://api.mp.test", access_token="t").get_payment("1")


def test_gateway_non_json_success_is_payment_error(monkeypatch):
    patch_request(monkeypatch, (200, "<html>mantenimiento</html>"))
    with pytest.raises(PaymentGatewayError):
        HttpMercadoPagoClient(base_url="https://api.mp.test", access_token="t").get_payment("1")


def test_payment_without_id_is_payment_error(monkeypatch):
    patch_request(monkeypatch, (200, {"status": "approved", "external_reference": "o1"}))
    with pytest.raises(PaymentGatewayError):
        HttpMercadoPagoClient(base_url="https://api.mp.test", access_token="t").get_payment("1")


def test_get_and_create_payment(monkeypatch):
    rec = patch_request(
        monkeypatch,
        (200, {"id": 123, "status": "approved", "external_reference": "o1", "transaction_amount": 850.0}),
    )
    client = HttpMercadoPagoClient(base_url="https://api.mp.test", access_token="t")

    p = client.get_payment("123")
    assert (p.id, p.status, p.external_reference) == ("123", "approved", "o1")
    assert p.transaction_amount == Decimal("850.0")

    p = client.create_payment(
        CreatePaymentRequest(
            transaction_amount=Decimal("850"),
            token="tok",
            description="Orden ORD-1",
            installments=1,
            payment_method_id="visa",
            payer=Payer(email="ana@example.com", name="Ana"),
            external_reference="o1",
            statement_descriptor="TIENDA",
            metadata={},
        )
    )
    assert rec.calls[1]["method"] == "POST"
    assert rec.calls[1]["headers"]["X-Idempotency-Key"] == "pay-o1-tok"
    assert rec.calls[1]["json"]["transaction_amount"] == 850.0


def test_available_to_sell_sends_variant_param(monkeypatch):
    rec = patch_request(monkeypatch, (200, {"available": 4}))
    assert HttpInventoryClient(base_url="http://x").available_to_sell("P1", "V1") == 4
    assert rec.calls[0]["method"] == "GET"
    assert rec.calls[0]["params"] == {"product_id": "P1", "variant_id": "V1"}
