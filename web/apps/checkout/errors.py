"""Error taxonomy for the checkout pipeline.

Every error carries a short ``code`` (logged and used for HTTP mapping), the
HTTP status the views answer with, and a ``message`` that is safe to show to
the shopper. Internal details (gateway payloads, driver errors) travel in
``detail`` and are only logged.
"""


class CheckoutError(Exception):
    code = "CHECKOUT_ERROR"
    http_status = 500
    default_message = "Error interno del servidor"

    def __init__(self, message: str | None = None, detail: str | None = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(CheckoutError):
    """Bad input shape or broken business rule, detected before any mutation."""

    code = "VALIDATION_ERROR"
    http_status = 400
    default_message = "Datos de checkout inválidos"


class NotFoundError(CheckoutError):
    """Unknown product, variant or order."""

    code = "NOT_FOUND"
    http_status = 404
    default_message = "Recurso no encontrado"


class StockUnavailableError(CheckoutError):
    """Requested quantity exceeds what can be sold."""

    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Stock insuficiente para {product_name}. Disponible: {available}, Solicitado: {requested}"
        )


class PersistenceError(CheckoutError):
    """A storage write failed."""

    code = "PERSISTENCE_ERROR"
    default_message = "Error al crear la orden"


class OrderItemsPersistenceError(PersistenceError):
    """Item rows failed after the order row was written.

    ``order_id`` points at the orphan order the caller must delete.
    """

    default_message = "Error al crear los items de la orden"

    def __init__(self, order_id, detail: str | None = None):
        self.order_id = order_id
        super().__init__(detail=detail)


class PaymentGatewayError(CheckoutError):
    """The payment gateway call failed, timed out or answered with an error."""

    code = "PAYMENT_GATEWAY_ERROR"
    http_status = 502
    default_message = "Error al procesar el pago con Mercado Pago. Por favor, intenta nuevamente."


class InventoryServiceError(CheckoutError):
    """The inventory service is unreachable or its circuit is open."""

    code = "UPSTREAM_UNAVAILABLE"
    http_status = 503
    default_message = "Error al reservar stock. Por favor intenta nuevamente."


class WebhookAuthError(Exception):
    """A webhook failed authentication.

    Only raised inside the verifier; callers always see a boolean.
    """


class ReservationConflict(Exception):
    """Raised by reservation backends when a hold cannot be taken.

    Carries every line that fell short so the orchestrator can name the
    product in the shopper-facing message.
    """

    def __init__(self, unavailable_items):
        self.unavailable_items = list(unavailable_items)
        super().__init__("INSUFFICIENT_STOCK")
