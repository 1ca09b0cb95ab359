import pytest
from django.core.cache import cache

from apps.checkout.adapters import GATEWAY_STUB, IN_MEMORY_INVENTORY
from apps.checkout.resilience import BREAKERS


@pytest.fixture(autouse=True)
def use_fakes_for_tests(settings):
    # sin red: inventario en memoria y gateway stub
    settings.USE_HTTP_ADAPTERS = False
    settings.MP_WEBHOOK_SECRET = "test-webhook-secret"
    IN_MEMORY_INVENTORY.reset()
    GATEWAY_STUB.reset()
    for cb in BREAKERS.values():
        cb.reset()
    # los throttles de DRF guardan contadores en la cache
    cache.clear()
    yield
