"""Repository layer for the order ledger, coupons and shipping rates.

The repositories implement the ports declared in ``domain`` on top of the
Django ORM and return domain dataclasses, so the orchestrator and the webhook
updater are not coupled to ORM types. Status changes always go through a row
lock and append an ``OrderStatusChange`` history row.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from .domain import (
    CouponApplication,
    GatewayPayment,
    OrderDraft,
    OrderLine,
    OrderRecord,
    OrderStatus,
    PaymentMethod,
    ShippingQuote,
    resolve_transition,
)
from .errors import NotFoundError, OrderItemsPersistenceError, PersistenceError
from .models import Coupon, CouponUsage, OrderItemModel, OrderModel, OrderStatusChange, ShippingRate

logger = logging.getLogger(__name__)


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _line(item: OrderItemModel) -> OrderLine:
    return OrderLine(
        product_id=item.product_id,
        variant_id=item.variant_id,
        product_name=item.product_name,
        variant_name=item.variant_name,
        quantity=item.quantity,
        unit_price=item.unit_price,
        total_price=item.total_price,
    )


def _record(obj: OrderModel, items: Optional[list[OrderLine]] = None) -> OrderRecord:
    if items is None:
        items = [_line(i) for i in obj.items.all()]
    return OrderRecord(
        id=obj.id,
        order_number=obj.order_number,
        status=OrderStatus(obj.status),
        payment_method=PaymentMethod(obj.payment_method),
        customer_email=obj.customer_email,
        customer_name=obj.customer_name,
        customer_phone=obj.customer_phone,
        shipping_address=obj.shipping_address,
        subtotal=obj.subtotal,
        shipping_cost=obj.shipping_cost,
        discount_amount=obj.discount_amount,
        total=obj.total,
        reservation_ids=list(obj.reservation_ids or []),
        stock_committed=obj.stock_committed,
        gateway_preference_id=obj.gateway_preference_id,
        gateway_payment_id=obj.gateway_payment_id,
        gateway_status=obj.gateway_status,
        items=items,
        created_at=obj.created_at,
    )


class DjangoOrderRepository:
    """Order ledger persisted with the Django ORM."""

    def create_order(self, draft: OrderDraft, items: list[OrderLine]) -> OrderRecord:
        """Persist the order row, then its item snapshots.

        The two writes are separate so an item failure can be reported with
        the id of the orphan order, which the caller deletes.

        Args:
            draft: Order header values.
            items: Item snapshots, already priced.

        Returns:
            OrderRecord: The stored order including its number.

        Raises:
            PersistenceError: If the order row cannot be written (a duplicate
                order number included).
            OrderItemsPersistenceError: If the item rows cannot be written.
        """
        try:
            with transaction.atomic():
                obj = OrderModel(
                    status=draft.status.value,
                    payment_method=draft.payment_method.value,
                    customer_email=draft.customer_email,
                    customer_name=draft.customer_name,
                    customer_phone=draft.customer_phone,
                    shipping_address=draft.shipping_address,
                    notes=draft.notes,
                    payment_proof_url=draft.payment_proof_url,
                    subtotal=draft.subtotal,
                    shipping_cost=draft.shipping_cost,
                    discount_amount=draft.discount_amount,
                    total=draft.total,
                    coupon_id=draft.coupon_id,
                    coupon_code=draft.coupon_code,
                    reservation_ids=list(draft.reservation_ids),
                )
                obj.save()
                OrderStatusChange.objects.create(order=obj, from_status=None, to_status=obj.status, source="checkout")
        except DatabaseError as e:
            logger.error("order insert failed", extra={"error": str(e)})
            raise PersistenceError(detail=str(e)) from e

        try:
            with transaction.atomic():
                OrderItemModel.objects.bulk_create(
                    [
                        OrderItemModel(
                            order=obj,
                            product_id=it.product_id,
                            variant_id=it.variant_id,
                            product_name=it.product_name,
                            variant_name=it.variant_name,
                            quantity=it.quantity,
                            unit_price=it.unit_price,
                            total_price=it.total_price,
                        )
                        for it in items
                    ]
                )
        except DatabaseError as e:
            logger.error("order items insert failed", extra={"order_id": str(obj.id), "error": str(e)})
            raise OrderItemsPersistenceError(obj.id, detail=str(e)) from e

        return _record(obj, list(items))

    def delete_order(self, order_id) -> None:
        OrderModel.objects.filter(id=_as_uuid(order_id)).delete()

    def get_order(self, order_id) -> Optional[OrderRecord]:
        oid = _as_uuid(order_id)
        if oid is None:
            return None
        obj = OrderModel.objects.prefetch_related("items").filter(id=oid).first()
        return _record(obj) if obj else None

    @staticmethod
    def _locked(order_id) -> OrderModel:
        oid = _as_uuid(order_id)
        obj = OrderModel.objects.select_for_update().filter(id=oid).first() if oid else None
        if obj is None:
            raise NotFoundError(f"Orden no encontrada: {order_id}")
        return obj

    @staticmethod
    def _move(obj: OrderModel, status: OrderStatus, source: str, note: Optional[str]) -> bool:
        if obj.status == status.value:
            return False
        OrderStatusChange.objects.create(
            order=obj, from_status=obj.status, to_status=status.value, source=source, note=note
        )
        obj.status = status.value
        return True

    @transaction.atomic
    def set_status(self, order_id, status: OrderStatus, source: str, note: str | None = None) -> None:
        obj = self._locked(order_id)
        if self._move(obj, status, source, note):
            obj.save(update_fields=["status", "updated_at"])

    def attach_preference(self, order_id, preference_id: str) -> None:
        OrderModel.objects.filter(id=_as_uuid(order_id)).update(
            gateway_preference_id=preference_id, updated_at=timezone.now()
        )

    @transaction.atomic
    def record_payment(self, order_id, payment: GatewayPayment, status: OrderStatus) -> OrderRecord:
        """Store the gateway payment on the order under a row lock.

        The status only moves forward (see ``resolve_transition``); gateway
        fields are refreshed either way.
        """
        obj = self._locked(order_id)
        target = resolve_transition(OrderStatus(obj.status), status)
        self._move(obj, target, "webhook", f"gateway payment {payment.id}: {payment.status}")
        obj.gateway_payment_id = payment.id
        obj.gateway_status = payment.status
        obj.gateway_status_detail = payment.status_detail
        obj.gateway_payment_method = payment.payment_method_id
        if target == OrderStatus.PAID and obj.paid_at is None:
            obj.paid_at = timezone.now()
        obj.save()
        return _record(obj)

    def claim_stock_commit(self, order_id) -> bool:
        updated = OrderModel.objects.filter(id=_as_uuid(order_id), stock_committed=False).update(
            stock_committed=True, updated_at=timezone.now()
        )
        return updated == 1

    def release_stock_commit(self, order_id) -> None:
        OrderModel.objects.filter(id=_as_uuid(order_id)).update(stock_committed=False, updated_at=timezone.now())


class DjangoCouponRepository:
    def record_usage(self, coupon: CouponApplication, email: str, order_id) -> None:
        """Add a usage row and bump ``usage_count`` atomically."""
        with transaction.atomic():
            updated = Coupon.objects.filter(pk=coupon.id).update(usage_count=F("usage_count") + 1)
            if not updated:
                logger.warning("coupon not found, usage not recorded", extra={"coupon_id": coupon.id})
                return
            CouponUsage.objects.create(
                coupon_id=coupon.id,
                order_id=_as_uuid(order_id),
                customer_email=email,
                discount_amount=coupon.discount_amount,
            )


class DjangoShippingRepository:
    def quote(self, department: str, subtotal: Decimal) -> Optional[ShippingQuote]:
        rate = ShippingRate.objects.filter(department__iexact=department.strip(), is_active=True).first()
        if rate is None:
            return None
        free = rate.free_shipping_threshold is not None and subtotal >= rate.free_shipping_threshold
        return ShippingQuote(
            cost=Decimal("0") if free else rate.cost,
            is_free_shipping=free,
            department=rate.department,
            estimated_days_min=rate.estimated_days_min,
            estimated_days_max=rate.estimated_days_max,
        )
