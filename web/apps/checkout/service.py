"""Checkout orchestrator.

``CheckoutService.process_checkout`` turns a cart and customer details into
a persisted order with reserved stock and a started payment. It runs as a
saga: reservations and the order row register compensations, and any
failure after them releases the holds and cancels the order before the
error is reported. No exception leaves ``process_checkout``.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from .domain import (
    CartLine,
    CheckoutStage,
    CouponApplication,
    CouponRepository,
    OrderDraft,
    OrderLine,
    OrderRecord,
    OrderRepository,
    OrderStatus,
    PaymentMethod,
    ProductRecord,
    ProductRepository,
    ReservationRepository,
    ShippingRepository,
    UnavailableItem,
    VariantRecord,
)
from .errors import (
    CheckoutError,
    NotFoundError,
    OrderItemsPersistenceError,
    ReservationConflict,
    StockUnavailableError,
    ValidationError,
)
from .payments import PaymentStrategy
from .saga import Saga
from .schemas import CheckoutRequest, first_error_message

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 15
ZERO = Decimal("0")


@dataclass
class CheckoutResult:
    success: bool
    http_status: int
    data: Optional[dict] = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_body(self) -> dict:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error, "code": self.code}


@dataclass
class _Quote:
    """Priced cart ready to persist."""

    lines: list[CartLine]
    items: list[OrderLine]
    names: dict[tuple, str]
    subtotal: Decimal
    shipping_cost: Decimal
    discount: Decimal
    coupon: Optional[CouponApplication] = None
    reservation_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.shipping_cost - self.discount


class CheckoutService:
    """Orchestrates validation, reservation, order persistence and payment.

    Args:
        catalog: Product/variant lookup.
        reservations: Availability and reservation backend.
        orders: Order ledger.
        coupons: Coupon usage recorder.
        shipping: Shipping rate lookup.
        strategies: Payment strategy per method (see ``payments.build_strategies``).
        ttl_minutes: Reservation lifetime.
    """

    def __init__(
        self,
        catalog: ProductRepository,
        reservations: ReservationRepository,
        orders: OrderRepository,
        coupons: CouponRepository,
        shipping: ShippingRepository,
        strategies: dict[PaymentMethod, PaymentStrategy],
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
    ):
        self.catalog = catalog
        self.reservations = reservations
        self.orders = orders
        self.coupons = coupons
        self.shipping = shipping
        self.strategies = strategies
        self.ttl_minutes = ttl_minutes

    # ---- public API ----
    def process_checkout(self, payload: dict, owner_ref: str) -> CheckoutResult:
        """Run the whole checkout for one request.

        Args:
            payload: Raw request body (see ``schemas.CheckoutRequest``).
            owner_ref: User id or anonymous session id owning the holds.

        Returns:
            CheckoutResult: ``success`` with ``orderId``, ``orderNumber``,
            ``paymentMethod`` and the strategy's redirect data, or the
            shopper-facing error with its HTTP status.
        """
        saga = Saga("checkout")
        try:
            data = self._run(payload, owner_ref, saga)
        except CheckoutError as e:
            failed = saga.compensate(f"{e.code}: {e.detail or e.message}")
            logger.warning(
                "checkout failed",
                extra={"code": e.code, "detail": e.detail, "owner_ref": owner_ref, "compensation_failures": failed},
            )
            return CheckoutResult(False, e.http_status, error=e.message, code=e.code)
        except Exception as e:
            logger.exception("checkout crashed", extra={"owner_ref": owner_ref})
            saga.compensate(f"INTERNAL_ERROR: {e!r}")
            return CheckoutResult(False, 500, error=CheckoutError.default_message, code="INTERNAL_ERROR")
        return CheckoutResult(True, 201, data=data)

    # ---- steps ----
    def _run(self, payload: dict, owner_ref: str, saga: Saga) -> dict:
        req = self._validate(payload)

        saga.advance(CheckoutStage.STOCK_CHECKING)
        quote = self._price(req)
        self._check_availability(quote)

        saga.advance(CheckoutStage.RESERVING)
        quote.reservation_ids = self._reserve(quote, owner_ref)
        if quote.reservation_ids:
            ids = list(quote.reservation_ids)
            saga.add_compensation("release_reservations", lambda reason: self.reservations.release(ids))

        saga.advance(CheckoutStage.ORDER_PERSISTING)
        method = PaymentMethod(req.customer.payment_method)
        strategy = self.strategies[method]
        order = self._persist(req, quote, strategy)
        saga.add_compensation(
            "cancel_order",
            lambda reason: self.orders.set_status(order.id, OrderStatus.CANCELLED, source="checkout", note=reason),
        )
        if quote.coupon:
            self._record_coupon(quote.coupon, req.customer.email, order)

        saga.advance(CheckoutStage.PAYMENT_INITIATING)
        extra = strategy.initiate(order)
        saga.complete()

        if strategy.commits_stock_on_checkout:
            self._commit_stock(order)

        logger.info(
            "checkout completed",
            extra={"order_id": str(order.id), "order_number": order.order_number, "payment_method": method.value},
        )
        return {"orderId": str(order.id), "orderNumber": order.order_number, "paymentMethod": method.value, **extra}

    def _validate(self, payload) -> CheckoutRequest:
        try:
            return CheckoutRequest.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(first_error_message(e), detail=str(e))

    def _resolve(self, req: CheckoutRequest) -> tuple[dict[str, ProductRecord], dict[str, VariantRecord]]:
        product_ids = sorted({i.product_id for i in req.items})
        variant_ids = sorted({i.variant_id for i in req.items if i.variant_id})
        products = self.catalog.get_products(product_ids)
        variants = self.catalog.get_variants(variant_ids)
        for item in req.items:
            if item.product_id not in products:
                raise NotFoundError(f"Producto no encontrado: {item.product_id}")
            if item.variant_id:
                variant = variants.get(item.variant_id)
                # una variante de otro producto cuenta como inexistente
                if variant is None or variant.product_id != item.product_id:
                    raise NotFoundError(f"Variante no encontrada: {item.variant_id}")
        return products, variants

    def _price(self, req: CheckoutRequest) -> _Quote:
        """Snapshot prices, guard against the stock counter and compute totals."""
        products, variants = self._resolve(req)

        lines, items = [], []
        names: dict[tuple, str] = {}
        requested: dict[tuple, int] = defaultdict(int)
        for it in req.items:
            product = products[it.product_id]
            variant = variants.get(it.variant_id) if it.variant_id else None
            unit_price = variant.price_override if variant and variant.price_override is not None else product.price
            key = (it.product_id, it.variant_id)
            names[key] = f"{product.name} - {variant.name}" if variant else product.name
            requested[key] += it.quantity
            lines.append(CartLine(it.product_id, it.variant_id, it.quantity))
            items.append(
                OrderLine(
                    product_id=product.id,
                    variant_id=variant.id if variant else None,
                    product_name=product.name,
                    variant_name=variant.name if variant else None,
                    quantity=it.quantity,
                    unit_price=unit_price,
                    total_price=unit_price * it.quantity,
                )
            )

        for (product_id, variant_id), qty in requested.items():
            product = products[product_id]
            if not product.track_inventory:
                continue
            stock = variants[variant_id].stock if variant_id else product.stock
            if qty > stock:
                raise StockUnavailableError(names[(product_id, variant_id)], max(stock, 0), qty)

        subtotal = sum((i.total_price for i in items), ZERO)
        rate = self.shipping.quote(req.customer.address.state, subtotal)
        shipping_cost = rate.cost if rate else ZERO

        coupon = None
        discount = ZERO
        if req.coupon:
            discount = req.coupon.discount_amount
            coupon = CouponApplication(id=req.coupon.id, code=req.coupon.code, discount_amount=discount)
        if discount > subtotal + shipping_cost:
            raise ValidationError("El descuento no puede superar el total de la orden")

        return _Quote(lines, items, names, subtotal, shipping_cost, discount, coupon)

    def _stock_error(self, quote: _Quote, unavailable: list[UnavailableItem]) -> StockUnavailableError:
        first = unavailable[0]
        name = quote.names.get((first.product_id, first.variant_id))
        if name is None:
            # el backend puede omitir product_id en líneas de variante
            name = next((n for (p, v), n in quote.names.items() if v and v == first.variant_id), first.product_id or "")
        return StockUnavailableError(name, first.available, first.requested)

    def _check_availability(self, quote: _Quote):
        report = self.reservations.check_availability(quote.lines)
        if not report.available:
            raise self._stock_error(quote, report.unavailable_items)

    def _reserve(self, quote: _Quote, owner_ref: str) -> list[str]:
        try:
            ids = self.reservations.reserve(quote.lines, owner_ref, self.ttl_minutes)
        except ReservationConflict as e:
            raise self._stock_error(quote, e.unavailable_items)
        logger.info("stock reserved", extra={"owner_ref": owner_ref, "reservation_ids": ids})
        return ids

    def _persist(self, req: CheckoutRequest, quote: _Quote, strategy: PaymentStrategy) -> OrderRecord:
        c = req.customer
        draft = OrderDraft(
            status=strategy.initial_status,
            payment_method=strategy.method,
            customer_email=c.email,
            customer_name=c.name,
            customer_phone=c.phone,
            shipping_address=c.address.model_dump(),
            subtotal=quote.subtotal,
            shipping_cost=quote.shipping_cost,
            discount_amount=quote.discount,
            total=quote.total,
            notes=c.notes,
            payment_proof_url=c.payment_proof_url,
            coupon_id=quote.coupon.id if quote.coupon else None,
            coupon_code=quote.coupon.code if quote.coupon else None,
            reservation_ids=quote.reservation_ids,
        )
        try:
            return self.orders.create_order(draft, quote.items)
        except OrderItemsPersistenceError as e:
            try:
                self.orders.delete_order(e.order_id)
            except Exception:
                logger.exception("orphan order cleanup failed", extra={"order_id": str(e.order_id)})
            raise

    def _record_coupon(self, coupon: CouponApplication, email: str, order: OrderRecord):
        try:
            self.coupons.record_usage(coupon, email, order.id)
        except Exception:
            logger.warning("coupon usage not recorded", exc_info=True, extra={"coupon_id": coupon.id, "order_id": str(order.id)})

    def _commit_stock(self, order: OrderRecord):
        """Consume the holds of an offline-paid order; a failure leaves them to expire.

        Runs after the order is persisted, so nothing raised here may fail
        the checkout.
        """
        if not order.reservation_ids:
            return
        oid = str(order.id)
        try:
            if not self.orders.claim_stock_commit(order.id):
                return
        except Exception:
            logger.warning("stock commit claim failed", exc_info=True, extra={"order_id": oid})
            return
        try:
            self.reservations.complete(order.reservation_ids, oid)
        except Exception:
            logger.warning("stock commit deferred", exc_info=True, extra={"order_id": oid})
            try:
                self.orders.release_stock_commit(order.id)
            except Exception:
                logger.error("stock commit claim not released", exc_info=True, extra={"order_id": oid})
