"""Inventory service API built with FastAPI.

This module exposes endpoints to resolve sellable stock and to manage
time-boxed stock reservations (reserve, complete, release, expire). Validation
is performed with Pydantic models, while persistence and reservation logic is
delegated to the SQLAlchemy-backed repository in ``repo.InventoryRepo``.
"""

import uuid, logging
import time
from decimal import Decimal
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import (
    DEFAULT_TTL_MINUTES,
    InsufficientStock,
    InventoryRepo,
    Line,
    ProductNotFound,
    engine,
    init_db,
)

app = FastAPI(title="Inventory Service")

# logger JSON
logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # espera activa breve hasta que la DB acepte conexiones
    deadline = time.time() + 30  # 30s
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


def get_repo() -> InventoryRepo:
    return InventoryRepo()


class LineIn(BaseModel):
    """A quantity requested against a product or variant.

    Attributes:
        product_id: Product id (required unless ``variant_id`` is given).
        variant_id: Optional variant id; when present the hold is taken
            against the variant stock.
        quantity: Positive integer quantity.
    """
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: int = Field(gt=0)

    @model_validator(mode="after")
    def _one_target(self):
        if not self.product_id and not self.variant_id:
            raise ValueError("product_id or variant_id is required")
        return self

    def to_line(self) -> Line:
        return Line(self.product_id, self.variant_id, self.quantity)


class ShortfallOut(BaseModel):
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    available: int
    requested: int


class AvailabilityRequest(BaseModel):
    items: List[LineIn] = Field(min_length=1)


class AvailabilityResponse(BaseModel):
    """Result of the non-mutating availability check.

    Attributes:
        available: True when every line fits the sellable stock.
        unavailable_items: Lines that do not fit, with counts.
    """
    available: bool
    unavailable_items: List[ShortfallOut] = []


class ReserveRequest(BaseModel):
    """Request body for the reserve endpoint.

    Attributes:
        items: Lines to reserve, all or nothing.
        owner_ref: User id or anonymous session id owning the holds.
        ttl_minutes: Minutes until the holds lapse.
        request_key: Optional client key; a repeated request with the same
            key returns the holds created by the first one.
    """
    items: List[LineIn] = Field(min_length=1)
    owner_ref: str = Field(min_length=1, max_length=128)
    ttl_minutes: int = Field(default=DEFAULT_TTL_MINUTES, gt=0, le=24 * 60)
    request_key: Optional[str] = Field(default=None, min_length=1, max_length=64)


class ReserveResponse(BaseModel):
    reserved: bool
    reservation_ids: List[str] = []


class CompleteRequest(BaseModel):
    reservation_ids: List[str]
    order_id: str = Field(min_length=1)


class CompleteResponse(BaseModel):
    completed: List[str]
    skipped: List[str]


class ReleaseRequest(BaseModel):
    reservation_ids: List[str]
    reason: str = Field(default="cancelled", pattern=r"^(cancelled|expired)$")


class CountResponse(BaseModel):
    count: int


class LookupRequest(BaseModel):
    product_ids: List[str] = []
    variant_ids: List[str] = []


class ProductOut(BaseModel):
    id: str
    name: str
    price: Decimal
    stock: int
    track_inventory: bool


class VariantOut(BaseModel):
    id: str
    product_id: str
    name: str
    price_override: Optional[Decimal] = None
    stock: int


class LookupResponse(BaseModel):
    products: List[ProductOut]
    variants: List[VariantOut]


def _shortfalls_out(shortfalls) -> list[dict]:
    return [ShortfallOut(**s.__dict__).model_dump() for s in shortfalls]


@app.exception_handler(ProductNotFound)
async def _not_found(request: Request, exc: ProductNotFound):
    return JSONResponse(status_code=404, content={"detail": "NOT_FOUND", "kind": exc.kind, "id": exc.item_id})


@app.get("/health")
def health():
    """Liveness/health check endpoint.

    Returns:
        dict: A small JSON payload indicating service health.
    """
    return {"ok": True}


@app.get("/availability")
def available_to_sell(product_id: Optional[str] = None, variant_id: Optional[str] = None):
    """Sellable units for a product or variant (stock minus active holds)."""
    if not product_id and not variant_id:
        raise HTTPException(status_code=400, detail="product_id or variant_id is required")
    available = get_repo().available_to_sell(product_id=product_id, variant_id=variant_id)
    return {"product_id": product_id, "variant_id": variant_id, "available": available}


@app.post("/availability", response_model=AvailabilityResponse)
def check_availability(req: AvailabilityRequest):
    """Non-mutating pre-check used to fail fast with precise counts."""
    shortfalls = get_repo().check_availability([it.to_line() for it in req.items])
    return AvailabilityResponse(available=not shortfalls, unavailable_items=_shortfalls_out(shortfalls))


@app.post("/products/lookup", response_model=LookupResponse)
def lookup(req: LookupRequest):
    """Return catalog stock records for the given ids; unknown ids are omitted."""
    products, variants = get_repo().lookup(req.product_ids, req.variant_ids)
    return LookupResponse(
        products=[
            ProductOut(id=p.id, name=p.name, price=p.price, stock=p.stock, track_inventory=p.track_inventory)
            for p in products
        ],
        variants=[
            VariantOut(id=v.id, product_id=v.product_id, name=v.name, price_override=v.price_override, stock=v.stock)
            for v in variants
        ],
    )


@app.post("/reservations", response_model=ReserveResponse, status_code=201)
def reserve(req: ReserveRequest):
    """Reserve stock for a batch of lines.

    Validates input via Pydantic models, delegates reservation to
    ``InventoryRepo`` which performs a transactional, locked check to
    prevent overselling.

    Args:
        req: The reservation request containing lines to reserve.

    Returns:
        ReserveResponse: ``reserved=True`` and the reservation ids on success.

    Raises:
        HTTPException: With status 422 when any line has insufficient stock.
    """
    try:
        ids = get_repo().reserve(
            [it.to_line() for it in req.items], req.owner_ref, req.ttl_minutes, request_key=req.request_key
        )
    except InsufficientStock as e:
        # Insufficient stock -> 422 with the per-line counts
        raise HTTPException(
            status_code=422,
            detail={"reserved": False, "detail": "INSUFFICIENT_STOCK", "unavailable": _shortfalls_out(e.unavailable)},
        )
    logger.info("stock reserved", extra={"owner_ref": req.owner_ref, "reservation_ids": ids})
    return ReserveResponse(reserved=True, reservation_ids=ids)


@app.post("/reservations/complete", response_model=CompleteResponse)
def complete(req: CompleteRequest):
    """Consume holds for a confirmed order, decrementing real stock."""
    result = get_repo().complete(req.reservation_ids, req.order_id)
    if result.skipped:
        logger.warning("reservations skipped on completion", extra={"order_id": req.order_id, "skipped": result.skipped})
    return CompleteResponse(completed=result.completed, skipped=result.skipped)


@app.post("/reservations/release", response_model=CountResponse)
def release(req: ReleaseRequest):
    """Cancel holds without touching stock."""
    return CountResponse(count=get_repo().release(req.reservation_ids, req.reason))


@app.post("/reservations/expire", response_model=CountResponse)
def expire():
    """Sweep lapsed active holds into the expired state."""
    count = get_repo().expire_stale()
    if count:
        logger.info("expired reservations swept", extra={"count": count})
    return CountResponse(count=count)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    # guardamos en state para logs locales
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        # log estructurado mínimo
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    # devolvemos el header
    response.headers["X-Request-ID"] = rid
    return response
