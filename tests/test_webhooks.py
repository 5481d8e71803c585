"""Tests for payment event consumers."""

import json

import httpx
import pytest

from storefront.errors import SignatureError, ValidationError
from storefront.mercadopago import MercadoPagoClient
from storefront.models import EventKind, OrderStatus
from storefront.signature import sign_mercadopago
from storefront.webhooks import MercadoPagoNotificationConsumer, PaymentEventConsumer

from .conftest import WEBHOOK_SECRET, get_stock, make_order, signed, stripe_event


@pytest.fixture
def consumer(repository):
    return PaymentEventConsumer(repository, secret=WEBHOOK_SECRET)


def checkout_completed(order_id, event_id="evt_1", session_id="cs_test_1"):
    return stripe_event(
        "checkout.session.completed",
        event_id=event_id,
        object_id=session_id,
        metadata={"pedido_id": order_id},
    )


class TestSignature:
    def test_invalid_signature_changes_nothing(self, products, repository, consumer):
        order = make_order(repository, [("p1", 2)])
        body = checkout_completed(order.id)

        with pytest.raises(SignatureError):
            consumer.consume(body, signed(body, secret="wrong"))

        assert repository.get(order.id).estado == OrderStatus.PENDING
        assert get_stock(products, "p1") == 5

    def test_missing_header(self, consumer):
        with pytest.raises(SignatureError):
            consumer.consume(b"{}", None)

    def test_malformed_json_after_valid_signature(self, consumer):
        body = b"not json"
        with pytest.raises(ValidationError):
            consumer.consume(body, signed(body))

    def test_signed_event_with_bad_metadata(self, products, repository, consumer):
        order = make_order(repository, [("p1", 2)])
        body = json.dumps(
            {
                "id": "evt_bad",
                "type": "checkout.session.completed",
                "data": {"object": {"id": "cs_1", "metadata": [order.id]}},
            }
        ).encode()

        with pytest.raises(ValidationError):
            consumer.consume(body, signed(body))
        assert repository.get(order.id).estado == OrderStatus.PENDING
        assert get_stock(products, "p1") == 5


class TestCheckoutCompleted:
    def test_processing_and_stock_decremented(self, products, repository, consumer):
        order = make_order(repository, [("p1", 2), ("p2", 3)])
        body = checkout_completed(order.id, session_id="cs_abc")

        result = consumer.consume(body, signed(body))

        assert result.kind == EventKind.CHECKOUT_COMPLETED
        assert result.applied is True
        assert result.skipped == []
        loaded = repository.get(order.id)
        assert loaded.estado == OrderStatus.PROCESSING
        assert loaded.provider_session_id == "cs_abc"
        assert loaded.fecha_pago is not None
        assert get_stock(products, "p1") == 3
        assert get_stock(products, "p2") == 7

    def test_insufficient_stock_is_silent_skip(self, products, repository, consumer):
        order = make_order(repository, [("p1", 6), ("p2", 1)])
        body = checkout_completed(order.id)

        result = consumer.consume(body, signed(body))

        assert result.applied is True
        assert result.skipped == ["p1"]
        assert repository.get(order.id).estado == OrderStatus.PROCESSING
        assert get_stock(products, "p1") == 5
        assert get_stock(products, "p2") == 9

    def test_exact_stock_then_second_order_skips(self, products, repository, consumer):
        first = make_order(repository, [("p1", 5)])
        second = make_order(repository, [("p1", 5)])

        body = checkout_completed(first.id, event_id="evt_a")
        consumer.consume(body, signed(body))
        assert get_stock(products, "p1") == 0

        body = checkout_completed(second.id, event_id="evt_b")
        result = consumer.consume(body, signed(body))
        assert result.skipped == ["p1"]
        assert get_stock(products, "p1") == 0
        assert repository.get(second.id).estado == OrderStatus.PROCESSING

    def test_redelivery_decrements_once(self, products, repository, consumer):
        order = make_order(repository, [("p2", 4)])
        body = checkout_completed(order.id)

        consumer.consume(body, signed(body))
        replay = consumer.consume(body, signed(body))

        assert replay.duplicate is True
        assert replay.applied is False
        assert get_stock(products, "p2") == 6

    def test_second_distinct_event_for_paid_order(self, products, repository, consumer):
        order = make_order(repository, [("p2", 4)])
        for event_id in ("evt_1", "evt_2"):
            body = checkout_completed(order.id, event_id=event_id)
            consumer.consume(body, signed(body))

        assert get_stock(products, "p2") == 6

    def test_payment_succeeded_first_still_fulfills(self, products, repository, consumer):
        order = make_order(repository, [("p2", 4)])
        repository.set_status(
            order.id, OrderStatus.PENDING, extra={"provider_session_id": "cs_1"},
            expected={OrderStatus.PENDING},
        )
        body = stripe_event(
            "payment_intent.succeeded", event_id="evt_pi", metadata={"session_id": "cs_1"}
        )
        consumer.consume(body, signed(body))
        assert repository.get(order.id).estado == OrderStatus.PROCESSING

        body = checkout_completed(order.id, event_id="evt_cs", session_id="cs_1")
        result = consumer.consume(body, signed(body))

        assert result.applied is True
        assert get_stock(products, "p2") == 6

    def test_cancelled_order_is_not_fulfilled(self, products, repository, consumer):
        order = make_order(repository, [("p2", 4)])
        repository.set_status(order.id, OrderStatus.CANCELLED)
        body = checkout_completed(order.id)

        result = consumer.consume(body, signed(body))

        assert result.applied is False
        assert repository.get(order.id).estado == OrderStatus.CANCELLED
        assert get_stock(products, "p2") == 10

    def test_unknown_order_is_accepted(self, products, consumer):
        body = checkout_completed("no-such-order")
        result = consumer.consume(body, signed(body))
        assert result.applied is False


class TestPaymentIntentEvents:
    def _with_session(self, repository, items, session_id="cs_1"):
        order = make_order(repository, items)
        repository.set_status(
            order.id,
            OrderStatus.PENDING,
            extra={"provider_session_id": session_id},
            expected={OrderStatus.PENDING},
        )
        return order

    def test_payment_succeeded_sets_processing_without_stock(
        self, products, repository, consumer
    ):
        order = self._with_session(repository, [("p2", 4)])
        body = stripe_event(
            "payment_intent.succeeded", event_id="evt_pi", metadata={"session_id": "cs_1"}
        )

        result = consumer.consume(body, signed(body))

        assert result.kind == EventKind.PAYMENT_SUCCEEDED
        assert repository.get(order.id).estado == OrderStatus.PROCESSING
        assert get_stock(products, "p2") == 10

    def test_payment_failed_cancels_without_stock(self, products, repository, consumer):
        order = self._with_session(repository, [("p2", 4)])
        body = stripe_event(
            "payment_intent.payment_failed", event_id="evt_pf", metadata={"session_id": "cs_1"}
        )

        result = consumer.consume(body, signed(body))

        assert result.kind == EventKind.PAYMENT_FAILED
        assert result.applied is True
        assert repository.get(order.id).estado == OrderStatus.CANCELLED
        assert get_stock(products, "p2") == 10

    def test_payment_failed_after_fulfillment_keeps_stock(
        self, products, repository, consumer
    ):
        order = make_order(repository, [("p2", 4)])
        body = checkout_completed(order.id, session_id="cs_9")
        consumer.consume(body, signed(body))

        body = stripe_event(
            "payment_intent.payment_failed", event_id="evt_pf", metadata={"session_id": "cs_9"}
        )
        consumer.consume(body, signed(body))

        assert repository.get(order.id).estado == OrderStatus.CANCELLED
        assert get_stock(products, "p2") == 6

    def test_unhandled_type_is_noop(self, products, repository, consumer):
        order = make_order(repository, [("p2", 1)])
        body = stripe_event("charge.refunded", metadata={"pedido_id": order.id})

        result = consumer.consume(body, signed(body))

        assert result.kind == EventKind.UNKNOWN
        assert result.applied is False
        assert repository.get(order.id).estado == OrderStatus.PENDING


def mp_client(payments: dict[str, dict]) -> MercadoPagoClient:
    def handler(request: httpx.Request) -> httpx.Response:
        payment_id = request.url.path.rsplit("/", 1)[-1]
        if payment_id not in payments:
            return httpx.Response(404, json={"message": "Payment not found"})
        return httpx.Response(200, json=payments[payment_id])

    return MercadoPagoClient("TEST-token", transport=httpx.MockTransport(handler))


def mp_notification(payment_id: str) -> bytes:
    return json.dumps(
        {"type": "payment", "action": "payment.updated", "data": {"id": payment_id}}
    ).encode()


class TestMercadoPagoNotifications:
    def test_approved_fulfills_order(self, products, repository):
        order = make_order(repository, [("p1", 2)])
        client = mp_client(
            {"555": {"id": 555, "status": "approved", "external_reference": order.id}}
        )
        consumer = MercadoPagoNotificationConsumer(repository, client)

        result = consumer.consume(mp_notification("555"))

        assert result.applied is True
        loaded = repository.get(order.id)
        assert loaded.estado == OrderStatus.PROCESSING
        assert loaded.provider_session_id == "555"
        assert get_stock(products, "p1") == 3

    def test_repeat_notification_is_deduplicated(self, products, repository):
        order = make_order(repository, [("p1", 2)])
        client = mp_client(
            {"555": {"id": 555, "status": "approved", "external_reference": order.id}}
        )
        consumer = MercadoPagoNotificationConsumer(repository, client)

        consumer.consume(mp_notification("555"))
        second = consumer.consume(mp_notification("555"))

        assert second.duplicate is True
        assert get_stock(products, "p1") == 3

    def test_rejected_cancels(self, products, repository):
        order = make_order(repository, [("p1", 2)])
        client = mp_client(
            {"556": {"id": 556, "status": "rejected", "external_reference": order.id}}
        )
        consumer = MercadoPagoNotificationConsumer(repository, client)

        consumer.consume(mp_notification("556"))

        assert repository.get(order.id).estado == OrderStatus.CANCELLED
        assert get_stock(products, "p1") == 5

    def test_pending_payment_is_noop(self, products, repository):
        order = make_order(repository, [("p1", 2)])
        client = mp_client(
            {"557": {"id": 557, "status": "in_process", "external_reference": order.id}}
        )
        consumer = MercadoPagoNotificationConsumer(repository, client)

        result = consumer.consume(mp_notification("557"))

        assert result.applied is False
        assert repository.get(order.id).estado == OrderStatus.PENDING

    def test_non_payment_topic_ignored(self, repository):
        consumer = MercadoPagoNotificationConsumer(repository, mp_client({}))
        body = json.dumps({"type": "merchant_order", "data": {"id": "1"}}).encode()
        assert consumer.consume(body).kind == EventKind.UNKNOWN

    def test_signature_required_when_secret_set(self, repository):
        consumer = MercadoPagoNotificationConsumer(repository, mp_client({}), secret="mp_secret")
        with pytest.raises(SignatureError):
            consumer.consume(mp_notification("555"), "ts=1,v1=bad", "req-1")

    def test_valid_signature(self, products, repository):
        order = make_order(repository, [("p1", 1)])
        client = mp_client(
            {"555": {"id": 555, "status": "approved", "external_reference": order.id}}
        )
        consumer = MercadoPagoNotificationConsumer(repository, client, secret="mp_secret")
        header = sign_mercadopago("555", "req-1", "mp_secret")

        result = consumer.consume(mp_notification("555"), header, "req-1")

        assert result.applied is True
