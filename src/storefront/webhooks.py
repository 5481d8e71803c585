"""Payment event consumers: signed provider webhooks drive order status and stock."""

import json
import logging
from typing import Any

from .errors import SignatureError, ValidationError
from .mercadopago import MercadoPagoClient
from .models import (
    ConsumeResult,
    EventKind,
    FulfillmentResult,
    OrderStatus,
    PaymentCorrelation,
    PaymentEvent,
    _utc_now,
)
from .order_repository import OrderRepository
from .signature import verify_mercadopago_signature, verify_signature

logger = logging.getLogger(__name__)

# A paid order may already be 'procesando' if payment_intent.succeeded won the race.
PAYABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.PROCESSING}


def _parse_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except ValueError as e:
        raise ValidationError(f"Body is not valid JSON: {e}")


def _to_consume_result(
    event_id: str, kind: EventKind, result: FulfillmentResult | None
) -> ConsumeResult:
    if result is None:
        return ConsumeResult(event_id=event_id, kind=kind, applied=False, duplicate=True)
    return ConsumeResult(
        event_id=event_id,
        kind=kind,
        applied=result.transitioned,
        skipped=result.skipped,
    )


class PaymentEventConsumer:
    """Consumes Stripe-style checkout and payment-intent events."""

    def __init__(self, repository: OrderRepository, secret: str, tolerance: int = 300):
        self.repository = repository
        self.secret = secret
        self.tolerance = tolerance

    def consume(
        self,
        raw_body: bytes,
        signature_header: str | None,
        now: float | None = None,
    ) -> ConsumeResult:
        """
        Verify and apply one event.

        Insufficient stock for an item is not an error; the item is skipped and
        listed in the result.

        Raises:
            SignatureError: If the signature does not verify. Nothing is applied.
            ValidationError: If the body is not a well-formed event.
            OrderPersistenceError: If the store fails while applying the event.
        """
        try:
            verify_signature(
                raw_body, signature_header or "", self.secret, self.tolerance, now=now
            )
        except SignatureError as e:
            logger.warning("Webhook signature verification failed: %s", e.reason)
            raise

        event = PaymentEvent.from_dict(_parse_json(raw_body))
        logger.info("Webhook %s received: %s (%s)", event.id, event.raw_type, event.correlation)

        if event.kind == EventKind.CHECKOUT_COMPLETED:
            result = self.repository.apply_payment_event(
                event.id,
                event.kind.value,
                event.correlation,
                OrderStatus.PROCESSING,
                extra={
                    "provider_session_id": event.object_id,
                    "fecha_pago": _utc_now(),
                },
                expected=PAYABLE_STATUSES,
                unpaid_only=True,
                decrement_stock=True,
            )
        elif event.kind == EventKind.PAYMENT_SUCCEEDED:
            result = self.repository.apply_payment_event(
                event.id,
                event.kind.value,
                event.correlation,
                OrderStatus.PROCESSING,
            )
        elif event.kind == EventKind.PAYMENT_FAILED:
            result = self.repository.apply_payment_event(
                event.id,
                event.kind.value,
                event.correlation,
                OrderStatus.CANCELLED,
            )
        else:
            logger.info("Unhandled event type: %s", event.raw_type)
            return ConsumeResult(event_id=event.id, kind=event.kind, applied=False)

        consumed = _to_consume_result(event.id, event.kind, result)
        if consumed.skipped:
            logger.warning(
                "Order %s paid with insufficient stock for: %s",
                result.order_id if result else None,
                ", ".join(consumed.skipped),
            )
        return consumed


# MercadoPago payment status -> order status
MERCADOPAGO_STATUS_MAP: dict[str, OrderStatus] = {
    "approved": OrderStatus.PROCESSING,
    "rejected": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
}


class MercadoPagoNotificationConsumer:
    """Consumes MercadoPago payment notifications.

    Notifications only carry a payment id; the payment itself is fetched from
    MercadoPago and correlated to an order through external_reference.
    """

    def __init__(
        self,
        repository: OrderRepository,
        client: MercadoPagoClient,
        secret: str = "",
    ):
        self.repository = repository
        self.client = client
        self.secret = secret

    def consume(
        self,
        raw_body: bytes,
        signature_header: str | None = None,
        request_id: str | None = None,
    ) -> ConsumeResult:
        """
        Verify (when a secret is configured), fetch and apply a notification.

        Raises:
            SignatureError: If a secret is configured and the signature fails.
            ValidationError: If the body is malformed.
            UpstreamError / PaymentNotFoundError: If the payment can't be fetched.
        """
        body = _parse_json(raw_body)
        if not isinstance(body, dict):
            raise ValidationError("Notification body must be a JSON object")

        notification_type = body.get("type") or body.get("topic")
        payment_id = str((body.get("data") or {}).get("id") or "")

        if self.secret:
            try:
                verify_mercadopago_signature(
                    signature_header or "", request_id or "", payment_id, self.secret
                )
            except SignatureError as e:
                logger.warning("MercadoPago signature verification failed: %s", e.reason)
                raise

        if notification_type != "payment":
            logger.info("Ignoring MercadoPago notification type: %s", notification_type)
            return ConsumeResult(
                event_id=payment_id or "", kind=EventKind.UNKNOWN, applied=False
            )
        if not payment_id:
            raise ValidationError("Notification is missing data.id")

        payment = self.client.get_payment(payment_id)
        status = payment.get("status") or "unknown"
        correlation = PaymentCorrelation.from_external_reference(payment.get("external_reference"))
        event_id = f"mp:{payment_id}:{status}"
        logger.info("MercadoPago payment %s status=%s (%s)", payment_id, status, correlation)

        target = MERCADOPAGO_STATUS_MAP.get(status)
        if target is None:
            return ConsumeResult(event_id=event_id, kind=EventKind.UNKNOWN, applied=False)

        if target == OrderStatus.PROCESSING:
            kind = EventKind.CHECKOUT_COMPLETED
            result = self.repository.apply_payment_event(
                event_id,
                kind.value,
                correlation,
                OrderStatus.PROCESSING,
                extra={
                    "provider_session_id": str(payment.get("id", payment_id)),
                    "fecha_pago": payment.get("date_approved") or _utc_now(),
                },
                expected=PAYABLE_STATUSES,
                unpaid_only=True,
                decrement_stock=True,
            )
        else:
            kind = EventKind.PAYMENT_FAILED
            result = self.repository.apply_payment_event(
                event_id, kind.value, correlation, OrderStatus.CANCELLED
            )
        return _to_consume_result(event_id, kind, result)
