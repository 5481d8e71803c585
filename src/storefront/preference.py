"""MercadoPago checkout preferences for pending orders."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .checkout import resolve_user_id
from .config import Settings
from .errors import OrderNotFoundError, ValidationError
from .mercadopago import MercadoPagoClient
from .models import LineItem, OrderStatus, PreferenceResult
from .order_repository import OrderRepository

logger = logging.getLogger(__name__)

CURRENCY_ID = "PEN"
PHONE_AREA_CODE = "51"
PREFERENCE_TTL = timedelta(minutes=30)
MAX_INSTALLMENTS = 12


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds")


def preference_items(raw_items: Any) -> list[dict[str, Any]]:
    """Map cart lines to MercadoPago preference items."""
    if not raw_items or not isinstance(raw_items, list):
        raise ValidationError("Items are required", field="items")

    items = []
    for raw in raw_items:
        line = LineItem.from_dict(raw)
        item: dict[str, Any] = {
            "id": line.producto_id,
            "title": str(line.nombre or "Producto"),
            "quantity": line.cantidad,
            "unit_price": line.precio,
            "currency_id": CURRENCY_ID,
        }
        if raw.get("picture_url"):
            item["picture_url"] = raw["picture_url"]
        items.append(item)
    return items


def preference_payer(raw_payer: Any) -> dict[str, Any]:
    if not isinstance(raw_payer, dict) or not raw_payer.get("email"):
        raise ValidationError("Payer email is required", field="payer")

    payer: dict[str, Any] = {
        "name": raw_payer.get("name") or "Cliente",
        "email": raw_payer["email"],
    }
    if raw_payer.get("phone"):
        payer["phone"] = {"area_code": PHONE_AREA_CODE, "number": str(raw_payer["phone"])}
    return payer


class PreferenceCreator:
    """Opens a MercadoPago checkout for an order created by checkout.

    The order id travels as the preference's external_reference, which is how
    payment notifications find their way back to the order.
    """

    def __init__(
        self,
        repository: OrderRepository,
        client: MercadoPagoClient,
        settings: Settings,
    ):
        self.repository = repository
        self.client = client
        self.settings = settings

    def build(
        self,
        order_id: str,
        items: list[dict[str, Any]],
        payer: dict[str, Any],
        back_urls: dict[str, str] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Assemble the preference body sent to MercadoPago."""
        frontend = self.settings.frontend_url.rstrip("/")
        back_urls = back_urls or {}
        start = now or datetime.now(timezone.utc)
        return {
            "items": items,
            "payer": payer,
            "back_urls": {
                outcome: back_urls.get(outcome) or f"{frontend}/checkout/{outcome}"
                for outcome in ("success", "failure", "pending")
            },
            "auto_return": "approved",
            "notification_url": self.settings.notification_url,
            "statement_descriptor": self.settings.statement_descriptor,
            "external_reference": order_id,
            "expires": True,
            "expiration_date_from": _iso(start),
            "expiration_date_to": _iso(start + PREFERENCE_TTL),
            "payment_methods": {
                "excluded_payment_types": [],
                "excluded_payment_methods": [],
                "installments": MAX_INSTALLMENTS,
            },
        }

    def create(
        self,
        payload: dict[str, Any],
        header_user_id: str | None = None,
    ) -> PreferenceResult:
        """
        Create a preference for one of the caller's pending orders.

        Args:
            payload: {pedido_id, items, payer, back_urls?, usuario_id?}.
            header_user_id: Identity from the x-user-id header, if any.

        Raises:
            ValidationError: If identity, order id, items or payer are missing,
                or the order is no longer pending.
            OrderNotFoundError: If the order doesn't exist or belongs to
                another user.
            UpstreamError: If MercadoPago rejects or fails the request.
        """
        user_id = resolve_user_id(header_user_id, payload.get("usuario_id"))
        if not user_id:
            raise ValidationError("User ID is required", field="usuario_id")

        order_id = str(payload.get("pedido_id") or "").strip()
        if not order_id:
            raise ValidationError("pedido_id is required", field="pedido_id")

        items = preference_items(payload.get("items"))
        payer = preference_payer(payload.get("payer"))
        back_urls = payload.get("back_urls")
        if back_urls is not None and not isinstance(back_urls, dict):
            raise ValidationError("back_urls must be an object", field="back_urls")

        order = self.repository.get(order_id)
        if order.usuario_id != user_id:
            logger.warning("User %s asked for a preference on order %s", user_id, order_id)
            raise OrderNotFoundError(order_id)
        if order.estado != OrderStatus.PENDING:
            raise ValidationError(
                f"Order {order_id} is {order.estado.value}, not pending", field="pedido_id"
            )

        preference = self.build(order.id, items, payer, back_urls)
        created = self.client.create_preference(preference, idempotency_key=order.id)
        logger.info("Preference %s created for order %s", created["id"], order.id)
        return PreferenceResult(
            id=str(created["id"]),
            external_reference=order.id,
            init_point=created.get("init_point"),
            sandbox_init_point=created.get("sandbox_init_point"),
        )
