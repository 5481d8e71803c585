"""Checkout: validate a cart submission and create a pending order."""

import logging
import math
from typing import Any

from .errors import OrderPersistenceError, ValidationError
from .models import (
    DEFAULT_TAX_RATE,
    CheckoutResult,
    LineItem,
    Order,
    items_total,
)
from .order_repository import OrderRepository

logger = logging.getLogger(__name__)

# Tolerance before a cart total that disagrees with its items gets logged.
TOTAL_MISMATCH_TOLERANCE = 0.01


def resolve_user_id(header_user_id: str | None, body_user_id: Any) -> str | None:
    """Header identity wins over the body field; blank values count as missing."""
    for candidate in (header_user_id, body_user_id):
        if candidate is None:
            continue
        value = str(candidate).strip()
        if value:
            return value
    return None


def _parse_total(raw: Any) -> float:
    if isinstance(raw, bool) or raw is None:
        raise ValidationError("Total is required", field="total")
    try:
        total = float(raw)
    except (TypeError, ValueError):
        raise ValidationError("Total must be a number", field="total")
    if not math.isfinite(total):
        raise ValidationError("Total must be a finite number", field="total")
    if total < 0:
        raise ValidationError("Total must not be negative", field="total")
    return total


class CheckoutInitiator:
    """Creates pending orders from storefront cart submissions."""

    def __init__(self, repository: OrderRepository, tax_rate: float = DEFAULT_TAX_RATE):
        self.repository = repository
        self.tax_rate = tax_rate

    def submit(
        self,
        payload: dict[str, Any],
        header_user_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CheckoutResult:
        """
        Validate a cart and persist it as a pending order.

        Args:
            payload: Cart body {items, total, nombre, email, direccion, telefono, usuario_id}.
            header_user_id: Identity from the x-user-id header, if any.
            idempotency_key: Optional token; a repeat with the same token returns
                the order created the first time.

        Returns:
            CheckoutResult with the order id.

        Raises:
            ValidationError: If identity, items or total are missing or invalid.
            OrderPersistenceError: If the store fails the insert.
        """
        user_id = resolve_user_id(header_user_id, payload.get("usuario_id"))
        if not user_id:
            logger.warning("Checkout rejected: no user ID provided")
            raise ValidationError("User ID is required", field="usuario_id")

        raw_items = payload.get("items")
        if not raw_items or not isinstance(raw_items, list):
            logger.warning("Checkout rejected for user %s: no items provided", user_id)
            raise ValidationError("Items are required", field="items")

        items = [LineItem.from_dict(i) for i in raw_items]
        total = _parse_total(payload.get("total"))

        derived = items_total(items, self.tax_rate)
        if abs(derived - total) > TOTAL_MISMATCH_TOLERANCE:
            logger.warning(
                "Cart total %.2f for user %s differs from items total %.2f; keeping cart total",
                total,
                user_id,
                derived,
            )

        key = idempotency_key.strip() if idempotency_key else None
        if key:
            existing = self.repository.find_by_idempotency_key(key, user_id)
            if existing is not None:
                logger.info("Checkout replay for key %s returns order %s", key, existing.id)
                return CheckoutResult(pedido_id=existing.id, created=False)

        order = Order.create(
            usuario_id=user_id,
            items=items,
            total=total,
            nombre_cliente=payload.get("nombre"),
            email_cliente=payload.get("email"),
            telefono_cliente=payload.get("telefono"),
            direccion_envio=payload.get("direccion"),
            idempotency_key=key or None,
            tax_rate=self.tax_rate,
        )
        try:
            self.repository.create(order)
        except OrderPersistenceError:
            # A concurrent request with the same key may have won the insert.
            if key:
                existing = self.repository.find_by_idempotency_key(key, user_id)
                if existing is not None:
                    return CheckoutResult(pedido_id=existing.id, created=False)
            logger.error("Error creating order for user %s", user_id)
            raise
        return CheckoutResult(pedido_id=order.id)
