"""FastAPI REST API for checkout, payment webhooks and payment status."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from . import __version__
from .checkout import CheckoutInitiator
from .config import Settings
from .db import create_db_engine, create_session_factory, init_db
from .errors import (
    NotFoundError,
    OrderNotFoundError,
    OrderPersistenceError,
    PaymentNotFoundError,
    SignatureError,
    StorefrontError,
    UnauthorizedError,
    UpstreamError,
    ValidationError,
)
from .log import configure_logging
from .mercadopago import MercadoPagoClient
from .models import Order
from .order_repository import OrderRepository
from .payment_status import PaymentStatusProber
from .preference import PreferenceCreator
from .webhooks import MercadoPagoNotificationConsumer, PaymentEventConsumer

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class CheckoutRequest(BaseModel):
    """Cart submission. Items are validated by the checkout itself."""

    model_config = ConfigDict(extra="allow")

    items: Optional[Any] = None
    total: Optional[float] = None
    nombre: Optional[str] = None
    email: Optional[str] = None
    direccion: Optional[str] = None
    telefono: Optional[str] = None
    usuario_id: Optional[str] = None


class PreferenceRequest(BaseModel):
    """Preference request for a pending order. Lines and payer are validated downstream."""

    model_config = ConfigDict(extra="allow")

    pedido_id: Optional[str] = None
    items: Optional[Any] = None
    payer: Optional[Any] = None
    back_urls: Optional[Any] = None
    usuario_id: Optional[str] = None


class PreferenceResponse(BaseModel):
    id: str
    preference_id: str
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None
    external_reference: str


class CheckoutResponse(BaseModel):
    success: bool = True
    pedido_id: str
    message: str
    created: bool = True


class WebhookResponse(BaseModel):
    received: bool = True


class PayerSchema(BaseModel):
    email: Optional[str] = None
    identification: Optional[dict[str, Any]] = None


class PaymentStatusSchema(BaseModel):
    id: str
    status: Optional[str] = None
    status_detail: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    transaction_amount: Optional[float] = None
    currency_id: Optional[str] = None
    date_created: Optional[str] = None
    date_approved: Optional[str] = None
    external_reference: Optional[str] = None
    payer: Optional[PayerSchema] = None


class LineItemSchema(BaseModel):
    producto_id: str
    cantidad: int
    precio: float
    variante_id: Optional[str] = None
    nombre: Optional[str] = None


class OrderSchema(BaseModel):
    id: str
    usuario_id: str
    items: list[LineItemSchema]
    subtotal: float
    igv: float
    total: float
    estado: str
    nombre_cliente: Optional[str] = None
    email_cliente: Optional[str] = None
    telefono_cliente: Optional[str] = None
    direccion_envio: Optional[str] = None
    metodo_pago: str
    provider_session_id: Optional[str] = None
    fecha_pago: Optional[str] = None
    created_at: str
    updated_at: str


class OrderListResponse(BaseModel):
    pedidos: list[OrderSchema]
    count: int


class ErrorResponse(BaseModel):
    detail: str
    error_type: str
    upstream_detail: Optional[Any] = Field(
        default=None, description="Provider error body (non-production only)"
    )


# --- Helper Functions ---


def order_to_schema(order: Order) -> OrderSchema:
    """Convert dataclass Order to Pydantic schema."""
    data = order.to_dict()
    data.pop("idempotency_key", None)
    return OrderSchema(**data)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_repository(request: Request) -> OrderRepository:
    """A fresh repository over the app's session factory."""
    return OrderRepository(request.app.state.session_factory)


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    SignatureError: 400,
    UnauthorizedError: 401,
    NotFoundError: 404,
    OrderNotFoundError: 404,
    PaymentNotFoundError: 404,
    OrderPersistenceError: 500,
    UpstreamError: 500,
}

# Store/provider messages are replaced with these in production.
GENERIC_MESSAGES: dict[type, str] = {
    OrderPersistenceError: "Error creating order",
    UpstreamError: "Error interno del servidor",
}


def error_response(exc: StorefrontError, settings: Settings) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    detail = str(exc)
    if settings.is_production and type(exc) in GENERIC_MESSAGES:
        detail = GENERIC_MESSAGES[type(exc)]
    content: dict[str, Any] = {"detail": detail, "error_type": type(exc).__name__}
    if isinstance(exc, UpstreamError) and not settings.is_production and exc.detail is not None:
        content["upstream_detail"] = exc.detail
    return JSONResponse(status_code=status_code, content=content)


# --- FastAPI App ---


def create_app(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    mercadopago_client: MercadoPagoClient | None = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Runtime settings (defaults to Settings.from_env()).
        session_factory: Store session factory; built from settings.database_url
            when omitted.
        mercadopago_client: Provider client; built from settings when omitted.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    if session_factory is None:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        session_factory = create_session_factory(engine)
    if mercadopago_client is None:
        mercadopago_client = MercadoPagoClient(
            access_token=settings.mercadopago_access_token,
            base_url=settings.mercadopago_api_url,
            timeout=settings.provider_timeout,
        )

    app = FastAPI(
        title="storefront API",
        description="Checkout, payment webhooks and payment status for the storefront",
        version=__version__,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.mercadopago_client = mercadopago_client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Global Exception Handlers ---

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
        """Map StorefrontError subclasses to appropriate HTTP responses."""
        return error_response(exc, get_settings(request))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Report malformed request bodies as 400 like other validation failures."""
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc.errors()), "error_type": "ValidationError"},
        )

    # --- Endpoints ---

    @app.get("/api/health")
    def health_check(request: Request):
        """Service status and store reachability."""
        try:
            with request.app.state.session_factory() as session:
                session.execute(text("SELECT 1"))
            return {"status": "ok", "database": "ok"}
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return {"status": "error", "database": "unreachable"}

    @app.post("/api/checkout", response_model=CheckoutResponse)
    def checkout(
        request: Request,
        body: CheckoutRequest,
        x_user_id: Optional[str] = Header(default=None),
        idempotency_key: Optional[str] = Header(default=None),
    ):
        """Create a pending order from the cart."""
        initiator = CheckoutInitiator(get_repository(request), get_settings(request).tax_rate)
        result = initiator.submit(
            body.model_dump(),
            header_user_id=x_user_id,
            idempotency_key=idempotency_key,
        )
        return CheckoutResponse(
            pedido_id=result.pedido_id,
            message="Order created successfully" if result.created else "Order already exists",
            created=result.created,
        )

    @app.get("/api/orders", response_model=OrderListResponse)
    def list_orders(request: Request, x_user_id: Optional[str] = Header(default=None)):
        """List the caller's orders, newest first."""
        if not x_user_id or not x_user_id.strip():
            raise UnauthorizedError()
        orders = get_repository(request).list_for_user(x_user_id.strip())
        return OrderListResponse(
            pedidos=[order_to_schema(o) for o in orders],
            count=len(orders),
        )

    @app.post("/api/webhook", response_model=WebhookResponse)
    async def stripe_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(default=None),
    ):
        """Signed checkout / payment-intent events."""
        settings = get_settings(request)
        raw_body = await request.body()
        consumer = PaymentEventConsumer(
            get_repository(request),
            secret=settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance,
        )
        return await _run_consumer(consumer.consume, raw_body, stripe_signature)

    @app.post("/api/mercadopago/webhook", response_model=WebhookResponse)
    async def mercadopago_webhook(
        request: Request,
        x_signature: Optional[str] = Header(default=None),
        x_request_id: Optional[str] = Header(default=None),
    ):
        """MercadoPago payment notifications."""
        settings = get_settings(request)
        raw_body = await request.body()
        consumer = MercadoPagoNotificationConsumer(
            get_repository(request),
            request.app.state.mercadopago_client,
            secret=settings.mercadopago_webhook_secret,
        )
        return await _run_consumer(consumer.consume, raw_body, x_signature, x_request_id)

    @app.post("/api/mercadopago/create-preference", response_model=PreferenceResponse)
    def create_preference(
        request: Request,
        body: PreferenceRequest,
        x_user_id: Optional[str] = Header(default=None),
    ):
        """Open a MercadoPago checkout for a pending order."""
        creator = PreferenceCreator(
            get_repository(request),
            request.app.state.mercadopago_client,
            get_settings(request),
        )
        result = creator.create(body.model_dump(), header_user_id=x_user_id)
        return PreferenceResponse(**result.to_dict())

    @app.get(
        "/api/mercadopago/payment-status/{payment_id}",
        response_model=PaymentStatusSchema,
    )
    def payment_status(request: Request, payment_id: str):
        """Current provider status of a payment, for client polling."""
        prober = PaymentStatusProber(request.app.state.mercadopago_client)
        return PaymentStatusSchema(**prober.probe(payment_id).to_dict())

    return app


async def _run_consumer(consume, *args) -> Any:
    """Run a blocking consumer off the event loop; unexpected faults become 500s."""
    try:
        await run_in_threadpool(consume, *args)
    except StorefrontError:
        raise
    except Exception:
        logger.exception("Error processing webhook")
        return JSONResponse(
            status_code=500,
            content={"detail": "Webhook processing failed", "error_type": "InternalError"},
        )
    return WebhookResponse()
