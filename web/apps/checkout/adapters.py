"""In-process adapters for the checkout ports.

These implementations make no network calls. ``InMemoryInventory`` mirrors
the inventory service semantics (sellable stock, all-or-nothing holds with a
TTL, completion and release) behind a lock, and ``GatewayStub`` answers like
the payment gateway. They back local development with
``USE_HTTP_ADAPTERS=False`` and the test-suite.
"""

import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from .domain import (
    AvailabilityReport,
    CartLine,
    CreatePaymentRequest,
    CreatePreferenceRequest,
    GatewayPayment,
    PreferenceResponse,
    ProductRecord,
    UnavailableItem,
    VariantRecord,
)
from .errors import NotFoundError, PaymentGatewayError, ReservationConflict

UNLIMITED_STOCK = 2**31 - 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Hold:
    id: str
    product_id: str
    variant_id: Optional[str]
    quantity: int
    owner_ref: str
    expires_at: datetime
    status: str = "active"
    order_id: Optional[str] = None


class InMemoryInventory:
    """Catalog stock plus reservations kept in dictionaries.

    Implements ``ProductRepository`` and ``ReservationRepository``. ``reserve``
    runs under a single lock, so concurrent callers can never both take the
    last unit.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        self.products: dict[str, ProductRecord] = {}
        self.variants: dict[str, VariantRecord] = {}
        self.holds: dict[str, _Hold] = {}

    # ---- seeding ----
    def add_product(self, id: str, name: str, price, stock: int, track_inventory: bool = True) -> ProductRecord:
        p = ProductRecord(id=id, name=name, price=Decimal(str(price)), stock=stock, track_inventory=track_inventory)
        self.products[id] = p
        return p

    def add_variant(self, id: str, product_id: str, name: str, stock: int, price_override=None) -> VariantRecord:
        v = VariantRecord(
            id=id,
            product_id=product_id,
            name=name,
            price_override=(Decimal(str(price_override)) if price_override is not None else None),
            stock=stock,
        )
        self.variants[id] = v
        return v

    # ---- ProductRepository ----
    def get_products(self, product_ids):
        return {i: self.products[i] for i in product_ids if i in self.products}

    def get_variants(self, variant_ids):
        return {i: self.variants[i] for i in variant_ids if i in self.variants}

    # ---- ReservationRepository ----
    def _tracked_stock(self, product_id: str, variant_id: Optional[str]) -> Optional[int]:
        """Stock counter for the line target, or None when not tracked."""
        product = self.products.get(product_id)
        if variant_id:
            variant = self.variants.get(variant_id)
            if variant is None:
                raise NotFoundError(f"Variante no encontrada: {variant_id}")
            product = product or self.products.get(variant.product_id)
            if product is not None and not product.track_inventory:
                return None
            return variant.stock
        if product is None:
            raise NotFoundError(f"Producto no encontrado: {product_id}")
        return product.stock if product.track_inventory else None

    def _held(self, product_id: str, variant_id: Optional[str], now: datetime) -> int:
        return sum(
            h.quantity
            for h in self.holds.values()
            if h.status == "active"
            and h.expires_at > now
            and (h.variant_id == variant_id if variant_id else (h.product_id == product_id and h.variant_id is None))
        )

    def available_to_sell(self, product_id: str, variant_id: Optional[str] = None) -> int:
        stock = self._tracked_stock(product_id, variant_id)
        if stock is None:
            return UNLIMITED_STOCK
        return max(0, stock - self._held(product_id, variant_id, self.clock()))

    def _shortfalls(self, lines: list[CartLine]) -> list[UnavailableItem]:
        requested: dict[tuple, int] = defaultdict(int)
        for line in lines:
            requested[(line.product_id, line.variant_id)] += line.quantity
        out = []
        for (product_id, variant_id), qty in requested.items():
            available = self.available_to_sell(product_id, variant_id)
            if qty > available:
                out.append(UnavailableItem(product_id, variant_id, available, qty))
        return out

    def check_availability(self, lines: list[CartLine]) -> AvailabilityReport:
        shortfalls = self._shortfalls(lines)
        return AvailabilityReport(available=not shortfalls, unavailable_items=shortfalls)

    def reserve(self, lines: list[CartLine], owner_ref: str, ttl_minutes: int) -> list[str]:
        with self._lock:
            shortfalls = self._shortfalls(lines)
            if shortfalls:
                raise ReservationConflict(shortfalls)
            expires_at = self.clock() + timedelta(minutes=ttl_minutes)
            ids = []
            for line in lines:
                if self._tracked_stock(line.product_id, line.variant_id) is None:
                    continue
                hold = _Hold(str(uuid.uuid4()), line.product_id, line.variant_id, line.quantity, owner_ref, expires_at)
                self.holds[hold.id] = hold
                ids.append(hold.id)
            return ids

    def complete(self, reservation_ids: list[str], order_id: str) -> list[str]:
        completed = []
        with self._lock:
            for rid in reservation_ids:
                hold = self.holds.get(rid)
                if hold is None or hold.status != "active":
                    continue
                hold.status = "completed"
                hold.order_id = order_id
                if hold.variant_id:
                    v = self.variants[hold.variant_id]
                    self.variants[v.id] = replace(v, stock=max(0, v.stock - hold.quantity))
                else:
                    p = self.products[hold.product_id]
                    self.products[p.id] = replace(p, stock=max(0, p.stock - hold.quantity))
                completed.append(rid)
        return completed

    def release(self, reservation_ids: list[str]) -> int:
        count = 0
        with self._lock:
            for rid in reservation_ids:
                hold = self.holds.get(rid)
                if hold is not None and hold.status == "active":
                    hold.status = "cancelled"
                    count += 1
        return count


class GatewayStub:
    """Payment gateway answering from memory.

    ``fail`` makes every call raise ``PaymentGatewayError``. Payments created
    or registered with ``add_payment`` are returned by ``get_payment``.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.fail = False
        self.payments: dict[str, GatewayPayment] = {}
        self.preferences: list[CreatePreferenceRequest] = []
        self.card_status = "approved"

    def _check(self):
        if self.fail:
            raise PaymentGatewayError(detail="gateway stub configured to fail")

    def add_payment(self, payment_id: str, status: str, external_reference: Optional[str]) -> GatewayPayment:
        p = GatewayPayment(id=payment_id, status=status, external_reference=external_reference)
        self.payments[payment_id] = p
        return p

    def create_preference(self, request: CreatePreferenceRequest) -> PreferenceResponse:
        self._check()
        self.preferences.append(request)
        pref_id = f"pref-{uuid.uuid4().hex[:12]}"
        return PreferenceResponse(
            id=pref_id,
            init_point=f"https://www.mercadopago.test/checkout?pref_id={pref_id}",
        )

    def create_payment(self, request: CreatePaymentRequest) -> GatewayPayment:
        self._check()
        p = GatewayPayment(
            id=str(uuid.uuid4().int % 10**10),
            status=self.card_status,
            external_reference=request.external_reference,
            payment_method_id=request.payment_method_id,
            transaction_amount=request.transaction_amount,
        )
        self.payments[p.id] = p
        return p

    def get_payment(self, payment_id: str) -> GatewayPayment:
        self._check()
        payment = self.payments.get(str(payment_id))
        if payment is None:
            raise PaymentGatewayError(detail=f"payment {payment_id} not found")
        return payment


IN_MEMORY_INVENTORY = InMemoryInventory()
GATEWAY_STUB = GatewayStub()
