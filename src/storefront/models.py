"""Data models for storefront."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid

from .errors import ValidationError

DEFAULT_TAX_RATE = 0.18
PAYMENT_METHOD_MERCADOPAGO = "mercadopago"


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _generate_id() -> str:
    """Generate a new order ID."""
    return str(uuid.uuid4())


class OrderStatus(str, Enum):
    """Order lifecycle states, stored with their persisted (Spanish) values."""

    PENDING = "pendiente"
    PROCESSING = "procesando"
    COMPLETED = "completado"
    CANCELLED = "cancelado"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def compute_totals(total: float, tax_rate: float = DEFAULT_TAX_RATE) -> tuple[float, float]:
    """
    Split a tax-inclusive total into (subtotal, igv).

    subtotal = total / (1 + rate), both rounded to 2 decimals. The total itself
    is left untouched.
    """
    subtotal = round(total / (1 + tax_rate), 2)
    igv = round(total - subtotal, 2)
    return subtotal, igv


def items_total(items: list["LineItem"], tax_rate: float = DEFAULT_TAX_RATE) -> float:
    """Tax-inclusive total derived from line items."""
    net = sum(item.precio * item.cantidad for item in items)
    return round(net * (1 + tax_rate), 2)


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


@dataclass
class LineItem:
    """A single cart line as recorded on an order."""

    producto_id: str
    cantidad: int
    precio: float
    variante_id: str | None = None
    nombre: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "producto_id": self.producto_id,
            "cantidad": self.cantidad,
            "precio": self.precio,
        }
        if self.variante_id is not None:
            result["variante_id"] = self.variante_id
        if self.nombre is not None:
            result["nombre"] = self.nombre
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        """
        Parse a cart line.

        Accepts both the storefront's Spanish keys and the English keys used by
        the cart widget (id/quantity/price).

        Raises:
            ValidationError: If the product reference or quantity is unusable.
        """
        if not isinstance(data, dict):
            raise ValidationError("Each item must be an object", field="items")

        product_id = _first_present(data, "producto_id", "product_id", "id")
        if product_id is None or str(product_id).strip() == "":
            raise ValidationError("Item is missing a product reference", field="items")

        raw_qty = _first_present(data, "cantidad", "quantity")
        raw_price = _first_present(data, "precio", "price", "unit_price")
        try:
            quantity = int(raw_qty if raw_qty is not None else 1)
            price = float(raw_price if raw_price is not None else 0)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Item {product_id} has a non-numeric quantity or price", field="items"
            )
        if quantity < 1:
            raise ValidationError(f"Item {product_id} has quantity < 1", field="items")

        variant = _first_present(data, "variante_id", "variant_id")
        name = _first_present(data, "nombre", "title", "name")
        return cls(
            producto_id=str(product_id),
            cantidad=quantity,
            precio=price,
            variante_id=str(variant) if variant is not None else None,
            nombre=name,
        )


@dataclass
class Order:
    """A customer purchase record (pedido)."""

    id: str
    usuario_id: str
    items: list[LineItem]
    subtotal: float
    igv: float
    total: float
    estado: OrderStatus = OrderStatus.PENDING
    nombre_cliente: str | None = None
    email_cliente: str | None = None
    telefono_cliente: str | None = None
    direccion_envio: str | None = None
    metodo_pago: str = PAYMENT_METHOD_MERCADOPAGO
    provider_session_id: str | None = None
    fecha_pago: str | None = None
    idempotency_key: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "usuario_id": self.usuario_id,
            "items": [i.to_dict() for i in self.items],
            "subtotal": self.subtotal,
            "igv": self.igv,
            "total": self.total,
            "estado": self.estado.value,
            "nombre_cliente": self.nombre_cliente,
            "email_cliente": self.email_cliente,
            "telefono_cliente": self.telefono_cliente,
            "direccion_envio": self.direccion_envio,
            "metodo_pago": self.metodo_pago,
            "provider_session_id": self.provider_session_id,
            "fecha_pago": self.fecha_pago,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.idempotency_key is not None:
            result["idempotency_key"] = self.idempotency_key
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            usuario_id=data["usuario_id"],
            items=[LineItem.from_dict(i) for i in data.get("items", [])],
            subtotal=data["subtotal"],
            igv=data["igv"],
            total=data["total"],
            estado=OrderStatus(data.get("estado", OrderStatus.PENDING.value)),
            nombre_cliente=data.get("nombre_cliente"),
            email_cliente=data.get("email_cliente"),
            telefono_cliente=data.get("telefono_cliente"),
            direccion_envio=data.get("direccion_envio"),
            metodo_pago=data.get("metodo_pago", PAYMENT_METHOD_MERCADOPAGO),
            provider_session_id=data.get("provider_session_id"),
            fecha_pago=data.get("fecha_pago"),
            idempotency_key=data.get("idempotency_key"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(
        cls,
        usuario_id: str,
        items: list[LineItem],
        total: float,
        nombre_cliente: str | None = None,
        email_cliente: str | None = None,
        telefono_cliente: str | None = None,
        direccion_envio: str | None = None,
        idempotency_key: str | None = None,
        tax_rate: float = DEFAULT_TAX_RATE,
    ) -> "Order":
        """Create a new pending order with generated ID, timestamps and tax split."""
        subtotal, igv = compute_totals(total, tax_rate)
        now = _utc_now()
        return cls(
            id=_generate_id(),
            usuario_id=usuario_id,
            items=items,
            subtotal=subtotal,
            igv=igv,
            total=total,
            estado=OrderStatus.PENDING,
            nombre_cliente=nombre_cliente,
            email_cliente=email_cliente,
            telefono_cliente=telefono_cliente,
            direccion_envio=direccion_envio,
            metodo_pago=PAYMENT_METHOD_MERCADOPAGO,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )


# Models for payment-provider integration


@dataclass(frozen=True)
class PaymentCorrelation:
    """Links a provider event back to an order.

    Providers carry either our order id (pedido_id / external_reference) or the
    provider session id recorded on the order; lookups prefer the order id.
    """

    order_id: str | None = None
    session_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.order_id and not self.session_id

    def __str__(self) -> str:
        if self.order_id:
            return f"pedido_id={self.order_id}"
        if self.session_id:
            return f"session_id={self.session_id}"
        return "<none>"

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> "PaymentCorrelation":
        metadata = metadata or {}
        return cls(
            order_id=metadata.get("pedido_id") or None,
            session_id=metadata.get("session_id") or None,
        )

    @classmethod
    def from_external_reference(cls, reference: str | None) -> "PaymentCorrelation":
        """Parse a MercadoPago external_reference of the form '<order_id>[|<payload>]'."""
        if not reference:
            return cls()
        ref_id = reference.split("|", 1)[0].strip()
        return cls(order_id=ref_id or None)


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


PROVIDER_EVENT_KINDS: dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
}


@dataclass
class PaymentEvent:
    """A verified webhook event, reduced to what order reconciliation needs."""

    id: str
    kind: EventKind
    raw_type: str
    object_id: str | None  # provider session / payment intent id
    correlation: PaymentCorrelation

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentEvent":
        """
        Build from a Stripe-shaped event body.

        Raises:
            ValidationError: If the id or type is missing.
        """
        if not isinstance(data, dict):
            raise ValidationError("Event body must be a JSON object")
        event_id = data.get("id")
        raw_type = data.get("type")
        if not event_id or not raw_type:
            raise ValidationError("Event is missing 'id' or 'type'")

        envelope = data.get("data") or {}
        if not isinstance(envelope, dict):
            raise ValidationError("Event 'data' must be an object")
        obj = envelope.get("object") or {}
        if not isinstance(obj, dict):
            raise ValidationError("Event 'data.object' must be an object")
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("Event metadata must be an object")
        kind = PROVIDER_EVENT_KINDS.get(raw_type, EventKind.UNKNOWN)
        if kind == EventKind.CHECKOUT_COMPLETED:
            # The session object itself is the provider session id.
            correlation = PaymentCorrelation(order_id=metadata.get("pedido_id") or None)
        else:
            correlation = PaymentCorrelation.from_metadata(metadata)
        return cls(
            id=str(event_id),
            kind=kind,
            raw_type=raw_type,
            object_id=obj.get("id"),
            correlation=correlation,
        )


@dataclass
class PaymentStatus:
    """Normalized projection of a provider payment."""

    id: str
    status: str | None
    status_detail: str | None
    payment_method_id: str | None
    payment_type_id: str | None
    transaction_amount: float | None
    currency_id: str | None
    date_created: str | None
    date_approved: str | None
    external_reference: str | None
    payer: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "status_detail": self.status_detail,
            "payment_method_id": self.payment_method_id,
            "payment_type_id": self.payment_type_id,
            "transaction_amount": self.transaction_amount,
            "currency_id": self.currency_id,
            "date_created": self.date_created,
            "date_approved": self.date_approved,
            "external_reference": self.external_reference,
            "payer": self.payer,
        }

    @classmethod
    def from_provider(cls, data: dict[str, Any]) -> "PaymentStatus":
        payer = None
        raw_payer = data.get("payer")
        if raw_payer:
            payer = {
                "email": raw_payer.get("email"),
                "identification": raw_payer.get("identification"),
            }
        return cls(
            id=str(data.get("id")),
            status=data.get("status"),
            status_detail=data.get("status_detail"),
            payment_method_id=data.get("payment_method_id"),
            payment_type_id=data.get("payment_type_id"),
            transaction_amount=data.get("transaction_amount"),
            currency_id=data.get("currency_id"),
            date_created=data.get("date_created"),
            date_approved=data.get("date_approved"),
            external_reference=data.get("external_reference"),
            payer=payer,
        )


# Models for operation results


@dataclass
class CheckoutResult:
    """Outcome of a checkout submission."""

    pedido_id: str
    created: bool = True  # False when an idempotency key matched an existing order


@dataclass
class PreferenceResult:
    """A MercadoPago checkout preference opened for a pending order."""

    id: str
    external_reference: str
    init_point: str | None = None
    sandbox_init_point: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "preference_id": self.id,
            "init_point": self.init_point,
            "sandbox_init_point": self.sandbox_init_point,
            "external_reference": self.external_reference,
        }


@dataclass
class StockDecrement:
    """Outcome of a single conditional stock decrement."""

    product_id: str
    quantity: int
    applied: bool


@dataclass
class FulfillmentResult:
    """Outcome of applying a paid-order transition."""

    order_id: str | None
    transitioned: bool
    decrements: list[StockDecrement] = field(default_factory=list)

    @property
    def skipped(self) -> list[str]:
        """Product ids whose stock was insufficient and left untouched."""
        return [d.product_id for d in self.decrements if not d.applied]


@dataclass
class ConsumeResult:
    """Outcome of consuming one provider event."""

    event_id: str
    kind: EventKind
    applied: bool
    duplicate: bool = False
    skipped: list[str] = field(default_factory=list)
