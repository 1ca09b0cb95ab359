"""Service provider helpers wiring the checkout services with their ports.

With ``settings.USE_HTTP_ADAPTERS`` the services talk to the inventory
service and to Mercado Pago over HTTP; otherwise they use the in-process
``IN_MEMORY_INVENTORY`` and ``GATEWAY_STUB`` from ``adapters`` (tests and
local development). Views call these factories through the module so tests
can monkeypatch them.
"""

from django.conf import settings

from .adapters import GATEWAY_STUB, IN_MEMORY_INVENTORY
from .http_adapters import HttpInventoryClient, HttpMercadoPagoClient
from .payments import CardPaymentService, build_strategies
from .repository import DjangoCouponRepository, DjangoOrderRepository, DjangoShippingRepository
from .service import CheckoutService
from .webhooks import PaymentNotificationService


def _use_http() -> bool:
    return getattr(settings, "USE_HTTP_ADAPTERS", True)


def get_inventory():
    """Catalog lookup plus reservation backend (one object implements both ports)."""
    if _use_http():
        return HttpInventoryClient()
    return IN_MEMORY_INVENTORY


def get_gateway():
    if _use_http():
        return HttpMercadoPagoClient()
    return GATEWAY_STUB


def get_order_repository() -> DjangoOrderRepository:
    return DjangoOrderRepository()


def get_checkout_service() -> CheckoutService:
    inventory = get_inventory()
    orders = get_order_repository()
    return CheckoutService(
        catalog=inventory,
        reservations=inventory,
        orders=orders,
        coupons=DjangoCouponRepository(),
        shipping=DjangoShippingRepository(),
        strategies=build_strategies(get_gateway(), orders),
        ttl_minutes=getattr(settings, "RESERVATION_TTL_MINUTES", 15),
    )


def get_notification_service() -> PaymentNotificationService:
    return PaymentNotificationService(get_gateway(), get_order_repository(), get_inventory())


def get_card_payment_service() -> CardPaymentService:
    return CardPaymentService(get_gateway(), get_order_repository(), get_notification_service())
