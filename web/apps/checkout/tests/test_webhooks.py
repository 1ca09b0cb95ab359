import hashlib
import hmac

import pytest

from apps.checkout.adapters import GatewayStub, InMemoryInventory
from apps.checkout.domain import CartLine, OrderDraft, OrderStatus, PaymentMethod, resolve_transition
from apps.checkout.errors import InventoryServiceError, NotFoundError, PaymentGatewayError
from apps.checkout.webhooks import (
    PaymentNotificationService,
    build_manifest,
    map_gateway_status,
    parse_signature_header,
    verify_signature,
)

from .fakes import FakeOrderRepository, seed_catalog

SECRET = "s3cr3t"
NOW = 1_700_000_000


def sign(data_id, request_id, ts, secret=SECRET):
    manifest = build_manifest(data_id, request_id, str(ts))
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


# ---- firma ----

def test_manifest_format():
    assert build_manifest("123", "req-1", "1700000000") == "id:123;request-id:req-1;ts:1700000000;"


def test_parse_signature_header_skips_malformed_parts():
    assert parse_signature_header("ts=1, v1=abc,garbage") == {"ts": "1", "v1": "abc"}


def test_valid_signature_accepted_case_insensitive():
    v1 = sign("123", "req-1", NOW)
    assert verify_signature(f"ts={NOW},v1={v1}", "req-1", "123", SECRET, now=NOW)
    assert verify_signature(f"ts={NOW},v1={v1.upper()}", "req-1", "123", SECRET, now=NOW)


@pytest.mark.parametrize("skew,ok", [(300, True), (-300, True), (301, False), (-301, False)])
def test_timestamp_tolerance(skew, ok):
    ts = NOW + skew
    header = f"ts={ts},v1={sign('123', 'req-1', ts)}"
    assert verify_signature(header, "req-1", "123", SECRET, now=NOW) is ok


@pytest.mark.parametrize(
    "header,request_id,data_id,secret",
    [
        (None, "req-1", "123", SECRET),
        ("ts=1700000000,v1=x", None, "123", SECRET),
        ("v1=abc", "req-1", "123", SECRET),
        ("ts=abc,v1=abc", "req-1", "123", SECRET),
        ("ts=1700000000,v1=ñandú", "req-1", "123", SECRET),
        (f"ts={NOW},v1={sign('123', 'req-1', NOW)}", "req-1", "124", SECRET),
        (f"ts={NOW},v1={sign('123', 'req-1', NOW)}", "req-2", "123", SECRET),
        (f"ts={NOW},v1={sign('123', 'req-1', NOW)}", "req-1", "123", "other"),
        (f"ts={NOW},v1={sign('123', 'req-1', NOW)}", "req-1", "123", ""),
    ],
)
def test_rejected_signatures_return_false(header, request_id, data_id, secret):
    assert verify_signature(header, request_id, data_id, secret, now=NOW) is False


@pytest.mark.parametrize(
    "header,request_id,data_id,secret",
    [
        (f"ts={NOW},v1=abc", "req-1", "\ud800", SECRET),
        (f"ts={NOW},v1=abc", "req-\udfff", "123", SECRET),
        (f"ts={NOW},v1=\ud800", "req-1", "123", SECRET),
        (f"ts={NOW},v1=abc", "req-1", "123", "s\ud800"),
    ],
)
def test_unencodable_signature_inputs_are_rejected(header, request_id, data_id, secret):
    # surrogates sueltos no se pueden codificar en UTF-8
    assert verify_signature(header, request_id, data_id, secret, now=NOW) is False


def test_unexpected_failure_in_check_returns_false(monkeypatch):
    def boom(*args):
        raise RuntimeError("boom")

    monkeypatch.setattr("apps.checkout.webhooks.build_manifest", boom)
    v1 = sign("123", "req-1", NOW)
    assert verify_signature(f"ts={NOW},v1={v1}", "req-1", "123", SECRET, now=NOW) is False


# ---- estados ----

@pytest.mark.parametrize(
    "gateway_status,expected",
    [
        ("approved", OrderStatus.PAID),
        ("accredited", OrderStatus.PAID),
        ("in_process", OrderStatus.PENDING),
        ("rejected", OrderStatus.CANCELLED),
        ("cancelled", OrderStatus.CANCELLED),
        ("refunded", OrderStatus.REFUNDED),
        ("charged_back", OrderStatus.REFUNDED),
        ("something_new", OrderStatus.PENDING),
        (None, OrderStatus.PENDING),
    ],
)
def test_map_gateway_status(gateway_status, expected):
    assert map_gateway_status(gateway_status) == expected


@pytest.mark.parametrize(
    "current,incoming,expected",
    [
        (OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PAID),
        (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, OrderStatus.PAID),
        (OrderStatus.CANCELLED, OrderStatus.PAID, OrderStatus.PAID),
        (OrderStatus.PAID, OrderStatus.PENDING, OrderStatus.PAID),
        (OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.PAID),
        (OrderStatus.SHIPPED, OrderStatus.PAID, OrderStatus.SHIPPED),
        (OrderStatus.REFUNDED, OrderStatus.PAID, OrderStatus.REFUNDED),
        (OrderStatus.PENDING, OrderStatus.CANCELLED, OrderStatus.CANCELLED),
        (OrderStatus.PAID, OrderStatus.REFUNDED, OrderStatus.REFUNDED),
        (OrderStatus.CANCELLED, OrderStatus.PENDING, OrderStatus.CANCELLED),
    ],
)
def test_resolve_transition_only_moves_forward(current, incoming, expected):
    assert resolve_transition(current, incoming) == expected


# ---- aplicación de notificaciones ----

@pytest.fixture
def inv():
    return seed_catalog(InMemoryInventory())


@pytest.fixture
def orders():
    return FakeOrderRepository()


@pytest.fixture
def gateway():
    return GatewayStub()


@pytest.fixture
def notifier(gateway, orders, inv):
    return PaymentNotificationService(gateway, orders, inv)


def place_order(inv, orders, qty=2):
    ids = inv.reserve([CartLine("P-MUG", None, qty)], "session:s1", 15)
    draft = OrderDraft(
        status=OrderStatus.PENDING,
        payment_method=PaymentMethod.MERCADOPAGO,
        customer_email="ana@example.com",
        customer_name="Ana Pérez",
        customer_phone="099123456",
        shipping_address={},
        subtotal=700,
        shipping_cost=0,
        discount_amount=0,
        total=700,
        reservation_ids=ids,
    )
    return orders.create_order(draft, [])


def test_approved_payment_marks_paid_and_commits_stock_once(notifier, gateway, orders, inv):
    order = place_order(inv, orders)
    gateway.add_payment("991", "approved", str(order.id))

    first = notifier.apply_payment_notification("991")
    second = notifier.apply_payment_notification("991")

    assert first.new_status == OrderStatus.PAID and first.stock_committed
    assert second.new_status == OrderStatus.PAID and second.stock_committed
    assert inv.products["P-MUG"].stock == 3
    assert orders.get_order(order.id).gateway_payment_id == "991"
    # una sola transición en el historial
    assert [h[2] for h in orders.history] == [OrderStatus.PAID]
    assert first.as_dict() == {"orderId": str(order.id), "status": "paid", "stockCommitted": True, "paymentId": "991"}


def test_pending_after_paid_is_ignored(notifier, gateway, orders, inv):
    order = place_order(inv, orders)
    gateway.add_payment("1", "approved", str(order.id))
    notifier.apply_payment_notification("1")
    gateway.add_payment("1", "in_process", str(order.id))

    out = notifier.apply_payment_notification("1")
    assert out.new_status == OrderStatus.PAID
    assert inv.products["P-MUG"].stock == 3


def test_rejected_payment_cancels_without_touching_stock(notifier, gateway, orders, inv):
    order = place_order(inv, orders)
    gateway.add_payment("2", "rejected", str(order.id))

    out = notifier.apply_payment_notification("2")
    assert out.new_status == OrderStatus.CANCELLED
    assert out.stock_committed is False
    assert inv.products["P-MUG"].stock == 5


def test_commit_failure_releases_claim_and_propagates(notifier, gateway, orders, inv, monkeypatch):
    order = place_order(inv, orders)
    gateway.add_payment("3", "approved", str(order.id))

    def down(ids, order_id):
        raise InventoryServiceError(detail="circuit open")

    monkeypatch.setattr(inv, "complete", down)
    with pytest.raises(InventoryServiceError):
        notifier.apply_payment_notification("3")
    assert orders.get_order(order.id).stock_committed is False
    assert orders.get_order(order.id).status == OrderStatus.PAID

    # la re-entrega del gateway completa el commit
    monkeypatch.undo()
    out = notifier.apply_payment_notification("3")
    assert out.stock_committed is True
    assert inv.products["P-MUG"].stock == 3


def test_unknown_order_and_missing_reference(notifier, gateway):
    gateway.add_payment("4", "approved", "00000000-0000-0000-0000-000000000000")
    with pytest.raises(NotFoundError):
        notifier.apply_payment_notification("4")

    gateway.add_payment("5", "approved", None)
    with pytest.raises(NotFoundError):
        notifier.apply_payment_notification("5")


def test_gateway_lookup_failure_propagates(notifier):
    with pytest.raises(PaymentGatewayError):
        notifier.apply_payment_notification("does-not-exist")
