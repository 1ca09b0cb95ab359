"""SQLAlchemy repository for stock records and time-boxed reservations.

This module provides database persistence for sellable stock using SQLAlchemy
and PostgreSQL. It resolves how many units of a product or variant can still
be sold (stock counter minus active, non-expired reservations) and manages the
reservation lifecycle: atomic reserve, complete (consume stock) and release.

The schema consists of the catalog stock tables ('products' and
'product_variants', owned by the catalog and only read here, apart from the
stock counter decremented on completion) and 'stock_reservations'. Database
connection parameters are configured via the DB_* env vars or DATABASE_URL.
"""

import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    create_engine,
    func,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

DEFAULT_TTL_MINUTES = 15
# Reported for products that do not track inventory
UNLIMITED_STOCK = 2**31 - 1
# Namespace for reservation ids derived from a caller's request key
RESERVATION_KEY_NS = uuid.UUID("6f1c2d4e-8a3b-5c7d-9e0f-1a2b3c4d5e6f")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # single shared connection so in-memory databases survive across sessions
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))


class Base(DeclarativeBase):
    pass


class Product(Base):
    """Catalog product as seen by inventory.

    Attributes:
        id: Product identifier shared with the catalog.
        name: Display name, used in stock error messages.
        price: Unit price.
        stock: Physical units on hand.
        track_inventory: When False the product is never reserved and
            reports unlimited availability.
    """
    __tablename__ = "products"
    id = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(255), nullable=False)
    price = mapped_column(Numeric(12, 2), nullable=False)
    stock = mapped_column(Integer, nullable=False, default=0)
    track_inventory = mapped_column(Boolean, nullable=False, default=True)


class ProductVariant(Base):
    """Variant of a product; may override the parent price."""
    __tablename__ = "product_variants"
    id = mapped_column(String(64), primary_key=True)
    product_id = mapped_column(String(64), ForeignKey("products.id"), nullable=False)
    name = mapped_column(String(255), nullable=False)
    price_override = mapped_column(Numeric(12, 2), nullable=True)
    stock = mapped_column(Integer, nullable=False, default=0)


class StockReservation(Base):
    """A time-boxed hold on inventory.

    Exactly one of ``product_id`` / ``variant_id`` is set. ``status`` moves
    from ``active`` to ``completed``, ``cancelled`` or ``expired`` and never
    back.
    """
    __tablename__ = "stock_reservations"
    id = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id = mapped_column(String(64), nullable=True, index=True)
    variant_id = mapped_column(String(64), nullable=True, index=True)
    quantity = mapped_column(Integer, nullable=False)
    owner_ref = mapped_column(String(128), nullable=False)
    status = mapped_column(String(16), nullable=False, default="active", index=True)
    order_id = mapped_column(String(64), nullable=True)
    expires_at = mapped_column(DateTime, nullable=False)
    completed_at = mapped_column(DateTime, nullable=True)
    cancelled_at = mapped_column(DateTime, nullable=True)
    created_at = mapped_column(DateTime, nullable=False)


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Context manager that yields a SQLAlchemy session.

    The session is automatically closed when exiting the context.

    Yields:
        Session: Active SQLAlchemy session connected to the database.
    """
    with Session(engine) as s:
        yield s


def utcnow() -> datetime:
    # naive UTC: columns are timezone-less on every backend
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---- Errors ----
class ProductNotFound(Exception):
    """Raised when a product or variant id does not exist."""

    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id


class InsufficientStock(Exception):
    """Raised by ``reserve`` when any line cannot be satisfied."""

    def __init__(self, unavailable: list["Shortfall"]):
        super().__init__("INSUFFICIENT_STOCK")
        self.unavailable = unavailable


# ---- DTOs ----
@dataclass(frozen=True)
class Line:
    """A quantity requested against a product or one of its variants."""

    product_id: Optional[str]
    variant_id: Optional[str]
    quantity: int

    @property
    def key(self) -> tuple[str, str]:
        if self.variant_id:
            return ("variant", self.variant_id)
        return ("product", self.product_id or "")


@dataclass(frozen=True)
class Shortfall:
    product_id: Optional[str]
    variant_id: Optional[str]
    available: int
    requested: int


@dataclass
class CompletionResult:
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _aggregate(lines: Iterable[Line]) -> dict[tuple[str, str], Line]:
    """Sum quantities of lines that target the same product/variant."""
    out: dict[tuple[str, str], Line] = {}
    for line in lines:
        prev = out.get(line.key)
        if prev is None:
            out[line.key] = line
        else:
            out[line.key] = Line(prev.product_id, prev.variant_id, prev.quantity + line.quantity)
    return out


class InventoryRepo:
    """Repository class for availability and reservation operations.

    ``reserve`` is the only operation that must be atomic across concurrent
    callers: it locks the catalog rows it reserves against, re-resolves
    availability inside the same transaction and inserts every reservation
    before committing, so two checkouts racing for the last unit cannot both
    succeed.
    """

    def __init__(self, clock=utcnow):
        self._now = clock

    # ---- Availability resolver ----
    def _held(self, s: Session, key: tuple[str, str], now: datetime) -> int:
        kind, item_id = key
        stmt = select(func.coalesce(func.sum(StockReservation.quantity), 0)).where(
            StockReservation.status == "active",
            StockReservation.expires_at > now,
        )
        if kind == "variant":
            stmt = stmt.where(StockReservation.variant_id == item_id)
        else:
            stmt = stmt.where(
                StockReservation.product_id == item_id,
                StockReservation.variant_id.is_(None),
            )
        return int(s.execute(stmt).scalar_one())

    def _target(self, s: Session, key: tuple[str, str], lock: bool = False):
        """Load the stock row a key points at plus its tracking flag."""
        kind, item_id = key
        model = ProductVariant if kind == "variant" else Product
        stmt = select(model).where(model.id == item_id)
        if lock:
            stmt = stmt.with_for_update()
        row = s.execute(stmt).scalars().first()
        if row is None:
            raise ProductNotFound(kind, item_id)
        if kind == "variant":
            parent = s.get(Product, row.product_id)
            tracked = parent.track_inventory if parent is not None else True
        else:
            tracked = row.track_inventory
        return row, tracked

    def _available(self, s: Session, key: tuple[str, str], now: datetime, lock: bool = False) -> int:
        row, tracked = self._target(s, key, lock=lock)
        if not tracked:
            return UNLIMITED_STOCK
        return max(row.stock - self._held(s, key, now), 0)

    def available_to_sell(self, product_id: Optional[str] = None, variant_id: Optional[str] = None) -> int:
        """Units of a product/variant that can still be reserved.

        Args:
            product_id: Product id; ignored when ``variant_id`` is given.
            variant_id: Variant id.

        Returns:
            int: Stock counter minus active, non-expired reservations
                (never negative); ``UNLIMITED_STOCK`` for untracked products.

        Raises:
            ValueError: If neither id is given.
            ProductNotFound: If the id does not exist.
        """
        if not product_id and not variant_id:
            raise ValueError("product_id or variant_id is required")
        key = Line(product_id, variant_id, 0).key
        with get_session() as s:
            return self._available(s, key, self._now())

    # ---- Catalog lookup ----
    def lookup(self, product_ids: list[str], variant_ids: list[str]) -> tuple[list[Product], list[ProductVariant]]:
        """Fetch catalog rows for the given ids (missing ids are omitted)."""
        with get_session() as s:
            products = list(s.execute(select(Product).where(Product.id.in_(product_ids))).scalars()) if product_ids else []
            variants = list(s.execute(select(ProductVariant).where(ProductVariant.id.in_(variant_ids))).scalars()) if variant_ids else []
            s.expunge_all()
            return products, variants

    # ---- Reservation manager ----
    def check_availability(self, lines: list[Line]) -> list[Shortfall]:
        """Non-mutating pre-check.

        Returns:
            list[Shortfall]: One entry per product/variant whose summed
                requested quantity exceeds availability; empty when all fit.
        """
        now = self._now()
        shortfalls = []
        with get_session() as s:
            for key, line in _aggregate(lines).items():
                available = self._available(s, key, now)
                if available < line.quantity:
                    shortfalls.append(Shortfall(line.product_id, line.variant_id, available, line.quantity))
        return shortfalls

    def reserve(self, lines: list[Line], owner_ref: str, ttl_minutes: int = DEFAULT_TTL_MINUTES,
                request_key: Optional[str] = None) -> list[str]:
        """Atomically reserve every line or none.

        Uses SELECT FOR UPDATE on the product/variant rows (in a stable id
        order to avoid deadlocks) so concurrent reservations for the same
        item serialize, then re-resolves availability and writes all rows in
        one transaction.

        When ``request_key`` is given the reservation ids are derived from it,
        so repeating a request whose first attempt already committed returns
        the existing ids instead of holding the stock twice.

        Args:
            lines: Requested quantities.
            owner_ref: User id or anonymous session id holding the stock.
            ttl_minutes: Minutes until the holds lapse.
            request_key: Caller-chosen key identifying this reserve request.

        Returns:
            list[str]: Reservation ids, one per tracked line in input order.

        Raises:
            InsufficientStock: If any line cannot be satisfied (nothing is
                written in that case).
            ProductNotFound: If a line references an unknown id.
        """
        if not owner_ref:
            raise ValueError("owner_ref is required")
        if any(line.quantity <= 0 for line in lines):
            raise ValueError("quantity must be positive")

        now = self._now()
        expires_at = now + timedelta(minutes=ttl_minutes)
        aggregated = _aggregate(lines)
        if request_key:
            line_ids = [str(uuid.uuid5(RESERVATION_KEY_NS, f"{request_key}:{i}")) for i in range(len(lines))]
        else:
            line_ids = [str(uuid.uuid4()) for _ in lines]

        with get_session() as s:
            if request_key:
                existing = set(
                    s.execute(select(StockReservation.id).where(StockReservation.id.in_(line_ids))).scalars()
                )
                if existing:
                    return [rid for rid in line_ids if rid in existing]

            tracked_keys = set()
            shortfalls = []
            for key in sorted(aggregated):
                row, tracked = self._target(s, key, lock=True)
                if not tracked:
                    continue
                tracked_keys.add(key)
                available = max(row.stock - self._held(s, key, now), 0)
                line = aggregated[key]
                if available < line.quantity:
                    shortfalls.append(Shortfall(line.product_id, line.variant_id, available, line.quantity))
            if shortfalls:
                s.rollback()
                raise InsufficientStock(shortfalls)

            ids = []
            for line, rid in zip(lines, line_ids):
                if line.key not in tracked_keys:
                    continue
                kind, item_id = line.key
                res = StockReservation(
                    id=rid,
                    product_id=item_id if kind == "product" else None,
                    variant_id=item_id if kind == "variant" else None,
                    quantity=line.quantity,
                    owner_ref=owner_ref,
                    status="active",
                    expires_at=expires_at,
                    created_at=now,
                )
                s.add(res)
                ids.append(res.id)
            s.commit()
            return ids

    def complete(self, reservation_ids: list[str], order_id: str) -> CompletionResult:
        """Consume reservations and decrement real stock.

        Active holds are consumed even when their TTL has lapsed (the order
        was confirmed while they were held). Completed holds are skipped so
        repeating the call never decrements twice; cancelled holds and holds
        already swept to ``expired`` are skipped as well, since their units
        were handed back to other shoppers.

        Catalog rows are locked in the same sorted key order ``reserve`` uses.

        Args:
            reservation_ids: Holds to consume.
            order_id: Order that consumed them.

        Returns:
            CompletionResult: Ids completed by this call and ids skipped.
        """
        result = CompletionResult()
        if not reservation_ids:
            return result
        now = self._now()
        with get_session() as s:
            rows = (
                s.execute(
                    select(StockReservation)
                    .where(StockReservation.id.in_(reservation_ids))
                    .order_by(StockReservation.id)
                    .with_for_update()
                )
                .scalars()
                .all()
            )
            consumable = []
            for r in rows:
                if r.status != "active":
                    result.skipped.append(r.id)
                else:
                    consumable.append(r)

            def key_of(r: StockReservation) -> tuple[str, str]:
                return ("variant", r.variant_id) if r.variant_id else ("product", r.product_id)

            targets = {}
            for key in sorted({key_of(r) for r in consumable}):
                model = ProductVariant if key[0] == "variant" else Product
                targets[key] = s.execute(select(model).where(model.id == key[1]).with_for_update()).scalars().first()

            for r in consumable:
                target = targets[key_of(r)]
                if target is not None:
                    target.stock = max(target.stock - r.quantity, 0)
                r.status = "completed"
                r.order_id = order_id
                r.completed_at = now
                result.completed.append(r.id)
            s.commit()
        return result

    def release(self, reservation_ids: list[str], reason: str = "cancelled") -> int:
        """Cancel active reservations without touching stock.

        Args:
            reservation_ids: Holds to release.
            reason: Terminal status to record, ``cancelled`` or ``expired``.

        Returns:
            int: Number of holds released by this call.
        """
        if reason not in ("cancelled", "expired"):
            raise ValueError("reason must be 'cancelled' or 'expired'")
        if not reservation_ids:
            return 0
        now = self._now()
        with get_session() as s:
            rows = (
                s.execute(
                    select(StockReservation)
                    .where(StockReservation.id.in_(reservation_ids), StockReservation.status == "active")
                    .with_for_update()
                )
                .scalars()
                .all()
            )
            for r in rows:
                r.status = reason
                r.cancelled_at = now
            s.commit()
            return len(rows)

    def expire_stale(self) -> int:
        """Mark lapsed active reservations as expired; returns how many."""
        now = self._now()
        with get_session() as s:
            rows = (
                s.execute(
                    select(StockReservation)
                    .where(StockReservation.status == "active", StockReservation.expires_at <= now)
                    .with_for_update()
                )
                .scalars()
                .all()
            )
            for r in rows:
                r.status = "expired"
                r.cancelled_at = now
            s.commit()
            return len(rows)

    def get_reservation(self, reservation_id: str) -> Optional[StockReservation]:
        with get_session() as s:
            obj = s.get(StockReservation, reservation_id)
            if obj is not None:
                s.expunge(obj)
            return obj

    # ---- Seeding (catalog sync and tests) ----
    def upsert_product(self, product_id: str, name: str, price: Decimal, stock: int, track_inventory: bool = True) -> None:
        """Create or overwrite a product stock record."""
        with get_session() as s:
            obj = s.get(Product, product_id) or Product(id=product_id)
            obj.name = name
            obj.price = price
            obj.stock = stock
            obj.track_inventory = track_inventory
            s.merge(obj)
            s.commit()

    def upsert_variant(self, variant_id: str, product_id: str, name: str, stock: int,
                       price_override: Optional[Decimal] = None) -> None:
        """Create or overwrite a variant stock record."""
        with get_session() as s:
            obj = s.get(ProductVariant, variant_id) or ProductVariant(id=variant_id)
            obj.product_id = product_id
            obj.name = name
            obj.stock = stock
            obj.price_override = price_override
            s.merge(obj)
            s.commit()
