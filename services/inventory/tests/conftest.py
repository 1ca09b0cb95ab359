# Base SQLite en memoria para los tests del servicio de inventario
import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from datetime import timedelta
from decimal import Decimal

import pytest

import repo


@pytest.fixture(autouse=True)
def fresh_schema():
    repo.Base.metadata.drop_all(repo.engine)
    repo.Base.metadata.create_all(repo.engine)
    yield


class Clock:
    """Mutable clock so tests can move past reservation expiry."""

    def __init__(self):
        self.now = repo.utcnow()

    def __call__(self):
        return self.now

    def advance(self, minutes: int):
        self.now = self.now + timedelta(minutes=minutes)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def inv(clock):
    r = repo.InventoryRepo(clock=clock)
    r.upsert_product("P-MUG", "Taza", Decimal("350.00"), stock=5)
    r.upsert_product("P-TEE", "Remera", Decimal("900.00"), stock=0)
    r.upsert_variant("V-TEE-M", "P-TEE", "M", stock=3, price_override=Decimal("950.00"))
    r.upsert_variant("V-TEE-L", "P-TEE", "L", stock=1)
    r.upsert_product("P-EBOOK", "E-book", Decimal("100.00"), stock=0, track_inventory=False)
    return r
