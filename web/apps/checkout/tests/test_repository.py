import uuid
from decimal import Decimal
from unittest import mock

import pytest
from django.db import DatabaseError

from apps.checkout.domain import (
    CouponApplication,
    GatewayPayment,
    OrderDraft,
    OrderLine,
    OrderStatus,
    PaymentMethod,
)
from apps.checkout.errors import NotFoundError, OrderItemsPersistenceError, PersistenceError
from apps.checkout.models import Coupon, CouponUsage, OrderItemModel, OrderModel, ShippingRate
from apps.checkout.repository import DjangoCouponRepository, DjangoOrderRepository, DjangoShippingRepository


def draft(**kw):
    values = dict(
        status=OrderStatus.PENDING,
        payment_method=PaymentMethod.MERCADOPAGO,
        customer_email="ana@example.com",
        customer_name="Ana Pérez",
        customer_phone="099123456",
        shipping_address={"street": "Av. Italia", "state": "Montevideo"},
        subtotal=Decimal("700"),
        shipping_cost=Decimal("150"),
        discount_amount=Decimal("0"),
        total=Decimal("850"),
        reservation_ids=["r-1"],
    )
    values.update(kw)
    return OrderDraft(**values)


LINES = [
    OrderLine("P-MUG", None, "Taza", None, 2, Decimal("350"), Decimal("700")),
]


def payment(status, pid="pay-1"):
    return GatewayPayment(id=pid, status=status, status_detail="accredited", payment_method_id="visa")


@pytest.fixture
def repo():
    return DjangoOrderRepository()


@pytest.mark.django_db
def test_create_and_read_back(repo):
    rec = repo.create_order(draft(), LINES)

    assert rec.order_number.startswith("ORD-")
    assert rec.items == LINES
    loaded = repo.get_order(rec.id)
    assert loaded.order_number == rec.order_number
    assert loaded.status == OrderStatus.PENDING
    assert loaded.reservation_ids == ["r-1"]
    assert loaded.items[0].product_name == "Taza"
    assert loaded.total == Decimal("850")


@pytest.mark.django_db
def test_get_order_tolerates_bad_ids(repo):
    assert repo.get_order("not-a-uuid") is None
    assert repo.get_order(uuid.uuid4()) is None


@pytest.mark.django_db
def test_order_insert_failure_is_persistence_error(repo):
    with mock.patch.object(OrderModel, "save", side_effect=DatabaseError("boom")):
        with pytest.raises(PersistenceError) as exc:
            repo.create_order(draft(), LINES)
    assert exc.value.message == "Error al crear la orden"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_item_insert_failure_reports_orphan_order(repo):
    with mock.patch.object(OrderItemModel.objects, "bulk_create", side_effect=DatabaseError("boom")):
        with pytest.raises(OrderItemsPersistenceError) as exc:
            repo.create_order(draft(), LINES)

    assert OrderModel.objects.filter(id=exc.value.order_id).exists()
    repo.delete_order(exc.value.order_id)
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_set_status_appends_history(repo):
    rec = repo.create_order(draft(), LINES)
    repo.set_status(rec.id, OrderStatus.CANCELLED, source="checkout", note="PAYMENT_GATEWAY_ERROR: timeout")
    repo.set_status(rec.id, OrderStatus.CANCELLED, source="checkout")

    obj = OrderModel.objects.get(id=rec.id)
    assert obj.status == "cancelled"
    assert list(obj.history.values_list("from_status", "to_status")) == [(None, "pending"), ("pending", "cancelled")]

    with pytest.raises(NotFoundError):
        repo.set_status(uuid.uuid4(), OrderStatus.CANCELLED, source="checkout")


@pytest.mark.django_db
def test_record_payment_moves_forward_only(repo):
    rec = repo.create_order(draft(), LINES)

    paid = repo.record_payment(rec.id, payment("approved"), OrderStatus.PAID)
    assert paid.status == OrderStatus.PAID
    obj = OrderModel.objects.get(id=rec.id)
    assert obj.paid_at is not None
    assert obj.gateway_status_detail == "accredited"
    assert obj.gateway_payment_method == "visa"

    late = repo.record_payment(rec.id, payment("in_process"), OrderStatus.PENDING)
    assert late.status == OrderStatus.PAID
    assert OrderModel.objects.get(id=rec.id).gateway_status == "in_process"
    assert obj.history.filter(source="webhook").count() == 1


@pytest.mark.django_db
def test_stock_commit_claim_is_won_once(repo):
    rec = repo.create_order(draft(), LINES)

    assert repo.claim_stock_commit(rec.id) is True
    assert repo.claim_stock_commit(rec.id) is False
    repo.release_stock_commit(rec.id)
    assert repo.claim_stock_commit(rec.id) is True


@pytest.mark.django_db
def test_attach_preference(repo):
    rec = repo.create_order(draft(), LINES)
    repo.attach_preference(rec.id, "pref-123")
    assert repo.get_order(rec.id).gateway_preference_id == "pref-123"


@pytest.mark.django_db
def test_coupon_usage_increments_counter(repo):
    rec = repo.create_order(draft(), LINES)
    Coupon.objects.create(id="C-1", code="HOLA")
    coupons = DjangoCouponRepository()

    coupons.record_usage(CouponApplication("C-1", "HOLA", Decimal("50")), "ana@example.com", rec.id)
    coupons.record_usage(CouponApplication("C-1", "HOLA", Decimal("50")), "ana@example.com", rec.id)
    coupons.record_usage(CouponApplication("C-404", "NOPE", Decimal("50")), "ana@example.com", rec.id)

    assert Coupon.objects.get(pk="C-1").usage_count == 2
    assert CouponUsage.objects.count() == 2


@pytest.mark.django_db
def test_shipping_quote():
    ShippingRate.objects.create(
        department="Montevideo", cost=Decimal("150"), free_shipping_threshold=Decimal("3000"),
        estimated_days_min=1, estimated_days_max=2,
    )
    ShippingRate.objects.create(department="Salto", cost=Decimal("300"), is_active=False)
    shipping = DjangoShippingRepository()

    q = shipping.quote("montevideo ", Decimal("1000"))
    assert (q.cost, q.is_free_shipping, q.estimated_days_max) == (Decimal("150"), False, 2)
    q = shipping.quote("Montevideo", Decimal("3000"))
    assert (q.cost, q.is_free_shipping) == (Decimal("0"), True)
    assert shipping.quote("Salto", Decimal("10")) is None
    assert shipping.quote("Rivera", Decimal("10")) is None
