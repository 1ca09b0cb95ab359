"""Domain models, ports and value objects for checkout.

This module contains the dataclasses used as DTOs across the checkout
pipeline, the typed request/response structs exchanged with the payment
gateway, and the protocol definitions (ports) the orchestrator depends on:
catalog lookup, stock reservations, the order ledger, coupons, shipping rates
and the payment gateway. Concrete implementations live in ``repository``
(Django ORM), ``http_adapters`` (HTTP clients) and ``adapters`` (in-process
fakes).
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol


# ---- Enums ----
class OrderStatus(str, Enum):
    """Order lifecycle statuses."""

    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    MERCADOPAGO = "mercadopago"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"


class CheckoutStage(str, Enum):
    """Stages a checkout attempt passes through.

    ``COMPENSATING`` is entered from ``RESERVING``, ``ORDER_PERSISTING`` or
    ``PAYMENT_INITIATING`` when a step fails after side effects were made.
    """

    VALIDATING = "validating"
    STOCK_CHECKING = "stock_checking"
    RESERVING = "reserving"
    ORDER_PERSISTING = "order_persisting"
    PAYMENT_INITIATING = "payment_initiating"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    FAILED = "failed"


# ---- Catalog / inventory DTOs ----
@dataclass(frozen=True)
class CartLine:
    """A requested quantity of a product, optionally of one of its variants."""

    product_id: str
    variant_id: Optional[str]
    quantity: int


@dataclass(frozen=True)
class ProductRecord:
    id: str
    name: str
    price: Decimal
    stock: int
    track_inventory: bool = True


@dataclass(frozen=True)
class VariantRecord:
    id: str
    product_id: str
    name: str
    price_override: Optional[Decimal]
    stock: int


@dataclass(frozen=True)
class UnavailableItem:
    product_id: Optional[str]
    variant_id: Optional[str]
    available: int
    requested: int


@dataclass
class AvailabilityReport:
    available: bool
    unavailable_items: list[UnavailableItem] = field(default_factory=list)


# ---- Order ledger DTOs ----
@dataclass(frozen=True)
class OrderLine:
    """Immutable price/name snapshot of a purchased line.

    Attributes:
        product_id: Product purchased.
        variant_id: Variant purchased, if any.
        product_name: Product name at purchase time.
        variant_name: Variant name at purchase time.
        quantity: Units purchased.
        unit_price: Effective unit price at purchase time (variant override
            or product price).
        total_price: ``unit_price * quantity``.

    The dataclass is frozen because items are never recomputed from the
    current catalog once the order exists.
    """

    product_id: str
    variant_id: Optional[str]
    product_name: str
    variant_name: Optional[str]
    quantity: int
    unit_price: Decimal
    total_price: Decimal


@dataclass
class OrderDraft:
    """Everything needed to write a new order row."""

    status: OrderStatus
    payment_method: PaymentMethod
    customer_email: str
    customer_name: str
    customer_phone: str
    shipping_address: dict
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal
    notes: Optional[str] = None
    payment_proof_url: Optional[str] = None
    coupon_id: Optional[str] = None
    coupon_code: Optional[str] = None
    reservation_ids: list[str] = field(default_factory=list)


@dataclass
class OrderRecord:
    """Order as read back from the ledger."""

    id: Any
    order_number: str
    status: OrderStatus
    payment_method: PaymentMethod
    customer_email: str
    customer_name: str
    customer_phone: str
    shipping_address: dict
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal
    reservation_ids: list[str] = field(default_factory=list)
    stock_committed: bool = False
    gateway_preference_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_status: Optional[str] = None
    items: list[OrderLine] = field(default_factory=list)
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ShippingQuote:
    cost: Decimal
    is_free_shipping: bool
    department: str
    estimated_days_min: Optional[int] = None
    estimated_days_max: Optional[int] = None


@dataclass(frozen=True)
class CouponApplication:
    id: str
    code: str
    discount_amount: Decimal


# ---- Gateway request/response structs ----
@dataclass(frozen=True)
class PreferenceItem:
    id: str
    title: str
    quantity: int
    unit_price: Decimal
    currency_id: str


@dataclass(frozen=True)
class Payer:
    email: str
    name: str
    surname: str = ""
    phone: str = ""
    street_name: str = ""
    street_number: str = ""
    zip_code: str = ""


@dataclass(frozen=True)
class CreatePreferenceRequest:
    """Checkout preference (redirect-based payment intent)."""

    items: list[PreferenceItem]
    payer: Payer
    back_urls: dict[str, str]
    external_reference: str
    notification_url: Optional[str]
    statement_descriptor: str
    metadata: dict[str, str]


@dataclass(frozen=True)
class PreferenceResponse:
    id: str
    init_point: str
    sandbox_init_point: Optional[str] = None


@dataclass(frozen=True)
class CreatePaymentRequest:
    """Direct card payment with a token tokenized by the front-end SDK."""

    transaction_amount: Decimal
    token: str
    description: str
    installments: int
    payment_method_id: str
    payer: Payer
    external_reference: str
    statement_descriptor: str
    metadata: dict[str, str]
    issuer_id: Optional[str] = None
    notification_url: Optional[str] = None


@dataclass(frozen=True)
class GatewayPayment:
    """Payment as reported by the gateway."""

    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    payment_method_id: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    date_approved: Optional[str] = None


# ---- Ports (DIP) ----
class ProductRepository(Protocol):
    """Port describing read access to authoritative catalog records."""

    def get_products(self, product_ids: list[str]) -> dict[str, ProductRecord]:
        """Fetch products by id; unknown ids are absent from the result."""
        raise NotImplementedError()

    def get_variants(self, variant_ids: list[str]) -> dict[str, VariantRecord]:
        """Fetch variants by id; unknown ids are absent from the result."""
        raise NotImplementedError()


class ReservationRepository(Protocol):
    """Port describing the availability resolver and reservation manager.

    Implementers must make ``reserve`` atomic: either every line is held or
    none is, and two concurrent callers can never both take the last unit.
    """

    def available_to_sell(self, product_id: str, variant_id: Optional[str] = None) -> int:
        raise NotImplementedError()

    def check_availability(self, lines: list[CartLine]) -> AvailabilityReport:
        raise NotImplementedError()

    def reserve(self, lines: list[CartLine], owner_ref: str, ttl_minutes: int) -> list[str]:
        """Reserve all lines.

        Returns:
            Reservation ids.

        Raises:
            ReservationConflict: If any line cannot be satisfied; nothing is
                held in that case.
            InventoryServiceError: If the backing service is unreachable.
        """
        raise NotImplementedError()

    def complete(self, reservation_ids: list[str], order_id: str) -> list[str]:
        """Consume holds and decrement stock; returns ids completed now."""
        raise NotImplementedError()

    def release(self, reservation_ids: list[str]) -> int:
        raise NotImplementedError()


class OrderRepository(Protocol):
    """Port describing the order ledger."""

    def create_order(self, draft: OrderDraft, items: list[OrderLine]) -> OrderRecord:
        """Write the order row and its item rows.

        Raises:
            PersistenceError: If the order row cannot be written.
            OrderItemsPersistenceError: If item rows fail after the order
                row was written; the caller compensates with ``delete_order``.
        """
        raise NotImplementedError()

    def delete_order(self, order_id) -> None:
        raise NotImplementedError()

    def get_order(self, order_id) -> Optional[OrderRecord]:
        raise NotImplementedError()

    def set_status(self, order_id, status: OrderStatus, source: str, note: str | None = None) -> None:
        raise NotImplementedError()

    def attach_preference(self, order_id, preference_id: str) -> None:
        raise NotImplementedError()

    def record_payment(self, order_id, payment: GatewayPayment, status: OrderStatus) -> OrderRecord:
        """Store gateway payment fields and move the order to ``status``.

        Raises:
            NotFoundError: If the order does not exist.
        """
        raise NotImplementedError()

    def claim_stock_commit(self, order_id) -> bool:
        """Flip ``stock_committed`` from False to True; True only for the winner."""
        raise NotImplementedError()

    def release_stock_commit(self, order_id) -> None:
        raise NotImplementedError()


class CouponRepository(Protocol):
    def record_usage(self, coupon: CouponApplication, email: str, order_id) -> None:
        raise NotImplementedError()


class ShippingRepository(Protocol):
    def quote(self, department: str, subtotal: Decimal) -> Optional[ShippingQuote]:
        raise NotImplementedError()


class PaymentGateway(Protocol):
    """Port describing the external payment gateway."""

    def create_preference(self, request: CreatePreferenceRequest) -> PreferenceResponse:
        raise NotImplementedError()

    def create_payment(self, request: CreatePaymentRequest) -> GatewayPayment:
        raise NotImplementedError()

    def get_payment(self, payment_id: str) -> GatewayPayment:
        raise NotImplementedError()


# ---- Status transitions ----
PENDING_STATES = frozenset({OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT})
FULFILMENT_STATES = frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


def resolve_transition(current: OrderStatus, incoming: OrderStatus) -> OrderStatus:
    """Return the status an order should move to when a payment update arrives.

    Updates only move forward: a late ``pending`` never downgrades a paid
    order, a rejected attempt never cancels a paid one, and ``paid`` never
    rewinds fulfilment or a refund. A cancelled order may still become paid,
    since the gateway lets the buyer retry after a rejected attempt.

    Args:
        current: Status stored on the order.
        incoming: Status mapped from the gateway payment.

    Returns:
        OrderStatus: The resulting status (``current`` when the update is stale).
    """
    if incoming == current:
        return current
    if incoming == OrderStatus.PAID:
        if current in PENDING_STATES or current == OrderStatus.CANCELLED:
            return OrderStatus.PAID
        return current
    if incoming == OrderStatus.CANCELLED:
        return OrderStatus.CANCELLED if current in PENDING_STATES else current
    if incoming == OrderStatus.REFUNDED:
        return OrderStatus.REFUNDED
    # pending / pending_payment: nunca retrocede
    return current
