"""Pydantic schemas for checkout.

Request schemas accept the camelCase keys the storefront sends (snake_case
is accepted too) and report business-readable Spanish messages through
``PydanticCustomError``. ``first_error_message`` turns a
``pydantic.ValidationError`` into the single message returned to the shopper.
"""

import re
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from .domain import OrderRecord, PaymentMethod


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_ERROR_PREFIX = "checkout_"


def _fail(kind: str, message: str):
    raise PydanticCustomError(_ERROR_PREFIX + kind, message)


def first_error_message(exc: ValidationError) -> str:
    """Return the shopper-facing message of the first validation error.

    Our own errors carry a Spanish message; pydantic's built-in ones (missing
    field, wrong type) are reported by field path.
    """
    err = exc.errors()[0]
    if err["type"].startswith(_ERROR_PREFIX):
        return err["msg"]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"Campo inválido: {loc}" if loc else "Datos de checkout inválidos"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class AddressIn(_CamelModel):
    """Shipping address snapshot.

    Attributes:
        street, number, city, state, postal_code, country: Required, non-empty.
            ``state`` is the department used to look up the shipping rate.
        apartment: Optional unit/apartment.
    """

    street: str
    number: str
    city: str
    state: str
    postal_code: str
    country: str
    apartment: Optional[str] = None

    @field_validator("street", "number", "city", "state", "postal_code", "country")
    @classmethod
    def required(cls, v: str, info):
        if not v:
            _fail("address", f"La dirección está incompleta: falta {info.field_name}")
        return v


class CustomerIn(_CamelModel):
    email: str
    name: str
    phone: str
    address: AddressIn
    payment_method: str
    notes: Optional[str] = None
    payment_proof_url: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if not EMAIL_RE.match(v):
            _fail("email", "Email inválido")
        return v.lower()

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not 2 <= len(v) <= 100:
            _fail("name", "El nombre debe tener entre 2 y 100 caracteres")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not 8 <= len(v) <= 20:
            _fail("phone", "El teléfono debe tener entre 8 y 20 caracteres")
        return v

    @field_validator("payment_method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if v not in {m.value for m in PaymentMethod}:
            _fail("payment_method", "Método de pago inválido")
        return v

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) > 500:
            _fail("notes", "Las notas no pueden superar los 500 caracteres")
        return v or None


class CartItemIn(_CamelModel):
    product_id: str = Field(min_length=1)
    variant_id: Optional[str] = None
    quantity: Any

    @field_validator("quantity", mode="before")
    @classmethod
    def positive_int(cls, v):
        # bool es subclase de int
        if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
            _fail("quantity", "La cantidad debe ser un número entero positivo")
        return v

    @field_validator("variant_id")
    @classmethod
    def blank_variant(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class CouponIn(_CamelModel):
    id: str
    code: str
    discount_amount: Decimal

    @field_validator("discount_amount")
    @classmethod
    def non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            _fail("discount", "El descuento no puede ser negativo")
        return v


class CheckoutRequest(_CamelModel):
    """Body of ``POST /api/checkout/``."""

    items: list[CartItemIn] = Field(default_factory=list, validate_default=True)
    customer: CustomerIn
    coupon: Optional[CouponIn] = None

    @field_validator("items", mode="before")
    @classmethod
    def not_empty(cls, v):
        if not v:
            _fail("empty_cart", "El carrito está vacío")
        return v


class CardPaymentIn(_CamelModel):
    """Body of ``POST /api/orders/<id>/card-payment/``; the token comes from the front-end SDK."""

    token: str = Field(min_length=1)
    payment_method_id: str = Field(min_length=1)
    installments: int = Field(default=1, ge=1, le=48)
    issuer_id: Optional[str] = None
    payer_email: Optional[str] = None


class OrderItemOut(_CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderReadDTO(_CamelModel):
    id: UUID
    order_number: str
    status: str
    payment_method: str
    customer_name: str
    customer_email: str
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal
    gateway_preference_id: Optional[str] = None
    gateway_status: Optional[str] = None
    items: list[OrderItemOut]

    @classmethod
    def from_record(cls, o: OrderRecord) -> "OrderReadDTO":
        return cls(
            id=o.id,
            order_number=o.order_number,
            status=o.status.value,
            payment_method=o.payment_method.value,
            customer_name=o.customer_name,
            customer_email=o.customer_email,
            subtotal=o.subtotal,
            shipping_cost=o.shipping_cost,
            discount_amount=o.discount_amount,
            total=o.total,
            gateway_preference_id=o.gateway_preference_id,
            gateway_status=o.gateway_status,
            items=[OrderItemOut(**i.__dict__) for i in o.items],
        )
