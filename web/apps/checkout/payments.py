"""Payment strategies, one per checkout payment method.

A strategy decides the order's initial status, whether the stock holds are
consumed right at checkout, and what the shopper is sent to next. Only
``mercadopago`` talks to the gateway; the offline methods just build a
redirect URL.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings

from .domain import (
    CreatePaymentRequest,
    CreatePreferenceRequest,
    OrderLine,
    OrderRecord,
    OrderRepository,
    OrderStatus,
    Payer,
    PaymentGateway,
    PaymentMethod,
    PENDING_STATES,
    PreferenceItem,
)
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TITLE_MAX = 256


@dataclass(frozen=True)
class GatewaySettings:
    """Values taken from Django settings when the strategies are built."""

    app_base_url: str
    notification_url: str
    currency_id: str
    statement_descriptor: str

    @classmethod
    def from_settings(cls) -> "GatewaySettings":
        base = getattr(settings, "APP_BASE_URL", "http://localhost:3000").rstrip("/")
        return cls(
            app_base_url=base,
            notification_url=getattr(settings, "MP_NOTIFICATION_URL", "") or f"{base}/api/webhooks/mercadopago/",
            currency_id=getattr(settings, "MP_CURRENCY_ID", "UYU"),
            statement_descriptor=getattr(settings, "MP_STATEMENT_DESCRIPTOR", "TIENDA ONLINE"),
        )


def split_name(full_name: str) -> tuple[str, str]:
    first, _, rest = full_name.strip().partition(" ")
    return first, rest.strip()


def payer_for(order: OrderRecord) -> Payer:
    first, last = split_name(order.customer_name)
    addr = order.shipping_address or {}
    return Payer(
        email=order.customer_email,
        name=first,
        surname=last,
        phone=order.customer_phone,
        street_name=addr.get("street", ""),
        street_number=str(addr.get("number", "")),
        zip_code=addr.get("postal_code", ""),
    )


def item_title(line: OrderLine) -> str:
    title = f"{line.product_name} - {line.variant_name}" if line.variant_name else line.product_name
    return title[:TITLE_MAX]


class PaymentStrategy:
    method: PaymentMethod
    initial_status: OrderStatus = OrderStatus.PENDING
    # consume las reservas en el checkout
    commits_stock_on_checkout: bool = False

    def initiate(self, order: OrderRecord) -> dict:
        """Start payment for a persisted order and return extra response data."""
        raise NotImplementedError()


class MercadoPagoStrategy(PaymentStrategy):
    """Redirect-based payment through a Mercado Pago checkout preference."""

    method = PaymentMethod.MERCADOPAGO

    def __init__(self, gateway: PaymentGateway, orders: OrderRepository, config: Optional[GatewaySettings] = None):
        self.gateway = gateway
        self.orders = orders
        self.config = config or GatewaySettings.from_settings()

    def build_preference(self, order: OrderRecord) -> CreatePreferenceRequest:
        """Map an order to a preference request.

        Items carry the snapshot name, quantity and unit price; shipping, when
        charged, is added as a synthetic line.
        """
        cfg = self.config
        items = [
            PreferenceItem(
                id=line.variant_id or line.product_id,
                title=item_title(line),
                quantity=line.quantity,
                unit_price=line.unit_price,
                currency_id=cfg.currency_id,
            )
            for line in order.items
        ]
        if order.shipping_cost > 0:
            items.append(
                PreferenceItem(id="shipping", title="Envío", quantity=1, unit_price=order.shipping_cost, currency_id=cfg.currency_id)
            )
        oid = str(order.id)
        return CreatePreferenceRequest(
            items=items,
            payer=payer_for(order),
            back_urls={
                outcome: f"{cfg.app_base_url}/checkout/{outcome}?order_id={oid}"
                for outcome in ("success", "failure", "pending")
            },
            external_reference=oid,
            notification_url=cfg.notification_url,
            statement_descriptor=cfg.statement_descriptor,
            metadata={"order_id": oid, "order_number": order.order_number},
        )

    def initiate(self, order: OrderRecord) -> dict:
        pref = self.gateway.create_preference(self.build_preference(order))
        self.orders.attach_preference(order.id, pref.id)
        logger.info("preference created", extra={"order_id": str(order.id), "preference_id": pref.id})
        return {"preferenceId": pref.id, "initPoint": pref.init_point}


class BankTransferStrategy(PaymentStrategy):
    method = PaymentMethod.BANK_TRANSFER
    initial_status = OrderStatus.PENDING_PAYMENT
    commits_stock_on_checkout = True

    def initiate(self, order: OrderRecord) -> dict:
        return {"redirectUrl": f"/orders/{order.id}/payment-instructions"}


class CashOnDeliveryStrategy(PaymentStrategy):
    method = PaymentMethod.CASH_ON_DELIVERY
    commits_stock_on_checkout = True

    def initiate(self, order: OrderRecord) -> dict:
        return {"redirectUrl": f"/orders/{order.id}/confirmation"}


def build_strategies(
    gateway: PaymentGateway, orders: OrderRepository, config: Optional[GatewaySettings] = None
) -> dict[PaymentMethod, PaymentStrategy]:
    return {
        PaymentMethod.MERCADOPAGO: MercadoPagoStrategy(gateway, orders, config),
        PaymentMethod.BANK_TRANSFER: BankTransferStrategy(),
        PaymentMethod.CASH_ON_DELIVERY: CashOnDeliveryStrategy(),
    }


class CardPaymentService:
    """Direct card payment for an existing Mercado Pago order.

    The card is tokenized by the front-end SDK; the resulting gateway payment
    is applied through the same updater the webhook uses, so a later webhook
    for the same payment is a no-op.
    """

    def __init__(self, gateway: PaymentGateway, orders: OrderRepository, notifier, config: Optional[GatewaySettings] = None):
        self.gateway = gateway
        self.orders = orders
        self.notifier = notifier
        self.config = config or GatewaySettings.from_settings()

    def pay(self, order_id, card):
        """Charge the order total with the given card token.

        Args:
            order_id: Order to pay.
            card: ``schemas.CardPaymentIn``.

        Returns:
            NotificationOutcome: Result of applying the payment.

        Raises:
            NotFoundError: Unknown order.
            ValidationError: Order not payable by card (wrong method or status).
            PaymentGatewayError: Gateway failure.
        """
        order = self.orders.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Orden no encontrada: {order_id}")
        if order.payment_method != PaymentMethod.MERCADOPAGO or order.status not in PENDING_STATES:
            raise ValidationError("La orden no admite pagos con tarjeta")

        payer = payer_for(order)
        if card.payer_email:
            payer = Payer(email=card.payer_email, name=payer.name, surname=payer.surname)
        payment = self.gateway.create_payment(
            CreatePaymentRequest(
                transaction_amount=order.total,
                token=card.token,
                description=f"Orden {order.order_number}",
                installments=card.installments,
                payment_method_id=card.payment_method_id,
                payer=payer,
                external_reference=str(order.id),
                statement_descriptor=self.config.statement_descriptor,
                metadata={"order_id": str(order.id), "order_number": order.order_number},
                issuer_id=card.issuer_id,
                notification_url=self.config.notification_url,
            )
        )
        logger.info(
            "card payment created", extra={"order_id": str(order.id), "payment_id": payment.id, "gateway_status": payment.status}
        )
        return self.notifier.apply_payment(payment)
