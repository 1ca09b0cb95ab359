import uuid
from django.db import models, transaction
from django.utils import timezone


MONEY = dict(max_digits=12, decimal_places=2)


class OrderModel(models.Model):
    # UUID PK expuesto en API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Contador incremental interno, base del número de orden
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)
    order_number = models.CharField(max_length=32, unique=True, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        PENDING_PAYMENT = "pending_payment"
        PAID = "paid"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"

    class Method(models.TextChoices):
        MERCADOPAGO = "mercadopago"
        BANK_TRANSFER = "bank_transfer"
        CASH_ON_DELIVERY = "cash_on_delivery"

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING)
    payment_method = models.CharField(max_length=32, choices=Method.choices)

    customer_email = models.EmailField()
    customer_name = models.CharField(max_length=100)
    customer_phone = models.CharField(max_length=20)
    shipping_address = models.JSONField(default=dict)
    notes = models.TextField(null=True, blank=True)
    payment_proof_url = models.URLField(max_length=500, null=True, blank=True)

    subtotal = models.DecimalField(**MONEY)
    shipping_cost = models.DecimalField(**MONEY, default=0)
    discount_amount = models.DecimalField(**MONEY, default=0)
    total = models.DecimalField(**MONEY)

    coupon_id = models.CharField(max_length=64, null=True, blank=True)
    coupon_code = models.CharField(max_length=64, null=True, blank=True)

    gateway_preference_id = models.CharField(max_length=128, null=True, blank=True)
    gateway_payment_id = models.CharField(max_length=64, null=True, blank=True)
    gateway_status = models.CharField(max_length=32, null=True, blank=True)
    gateway_status_detail = models.CharField(max_length=128, null=True, blank=True)
    gateway_payment_method = models.CharField(max_length=64, null=True, blank=True)

    reservation_ids = models.JSONField(default=list)
    stock_committed = models.BooleanField(default=False)

    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # internal_id y order_number se asignan solo en la creación
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .exclude(internal_id=None)
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if last is None else last.internal_id + 1
                self.order_number = f"ORD-{timezone.now():%Y%m%d}-{self.internal_id:06d}"
                super().save(*args, **kwargs)
            return
        super().save(*args, **kwargs)


class OrderItemModel(models.Model):
    """Immutable snapshot of a purchased line."""

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product_id = models.CharField(max_length=64)
    variant_id = models.CharField(max_length=64, null=True, blank=True)
    product_name = models.CharField(max_length=255)
    variant_name = models.CharField(max_length=255, null=True, blank=True)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(**MONEY)
    total_price = models.DecimalField(**MONEY)

    class Meta:
        db_table = "order_items"
        ordering = ["id"]


class OrderStatusChange(models.Model):
    """Append-only history of order status transitions."""

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="history")
    from_status = models.CharField(max_length=32, null=True, blank=True)
    to_status = models.CharField(max_length=32)
    source = models.CharField(max_length=32)
    note = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_status_changes"
        ordering = ["id"]


class Coupon(models.Model):
    id = models.CharField(primary_key=True, max_length=64)
    code = models.CharField(max_length=64, unique=True)
    is_active = models.BooleanField(default=True)
    usage_count = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "coupons"


class CouponUsage(models.Model):
    coupon = models.ForeignKey(Coupon, on_delete=models.CASCADE, related_name="usages")
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="coupon_usages")
    customer_email = models.EmailField()
    discount_amount = models.DecimalField(**MONEY)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "coupon_usages"


class ShippingRate(models.Model):
    """Shipping cost per department (``address.state``)."""

    department = models.CharField(max_length=64, unique=True)
    cost = models.DecimalField(**MONEY)
    free_shipping_threshold = models.DecimalField(**MONEY, null=True, blank=True)
    estimated_days_min = models.PositiveSmallIntegerField(null=True, blank=True)
    estimated_days_max = models.PositiveSmallIntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "shipping_rates"


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=128, unique=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
