"""Tests for OrderRepository."""

import pytest
from sqlalchemy import text

from storefront.db import WebhookEventRow
from storefront.errors import OrderNotFoundError, OrderPersistenceError
from storefront.models import LineItem, Order, OrderStatus, PaymentCorrelation

from .conftest import get_stock, make_order, seed_products


class TestCreateAndRead:
    def test_create_and_get(self, repository):
        order = make_order(repository, [("p1", 2)])

        loaded = repository.get(order.id)
        assert loaded.id == order.id
        assert loaded.estado == OrderStatus.PENDING
        assert loaded.items[0].producto_id == "p1"
        assert loaded.items[0].cantidad == 2
        assert loaded.subtotal == 200.0
        assert loaded.igv == 36.0

    def test_get_missing_raises(self, repository):
        with pytest.raises(OrderNotFoundError):
            repository.get("does-not-exist")

    def test_duplicate_id_is_persistence_error(self, repository):
        order = make_order(repository, [("p1", 1)])
        with pytest.raises(OrderPersistenceError) as exc_info:
            repository.create(order)
        assert exc_info.value.operation == "create order"

    def test_list_for_user_is_scoped_and_newest_first(self, repository):
        first = make_order(repository, [("p1", 1)], user_id="u1")
        second = make_order(repository, [("p2", 1)], user_id="u1")
        make_order(repository, [("p1", 1)], user_id="u2")

        orders = repository.list_for_user("u1")
        assert [o.id for o in orders] == [second.id, first.id]

    def test_find_by_idempotency_key_is_user_scoped(self, repository):
        order = Order.create(
            usuario_id="u1",
            items=[LineItem(producto_id="p1", cantidad=1, precio=10)],
            total=11.8,
            idempotency_key="cart-123",
        )
        repository.create(order)

        assert repository.find_by_idempotency_key("cart-123", "u1").id == order.id
        assert repository.find_by_idempotency_key("cart-123", "u2") is None


class TestCorrelation:
    def test_by_order_id(self, repository):
        order = make_order(repository, [("p1", 1)])
        found = repository.get_by_correlation(PaymentCorrelation(order_id=order.id))
        assert found.id == order.id

    def test_by_session_id(self, repository):
        order = make_order(repository, [("p1", 1)])
        repository.set_status(
            order.id, OrderStatus.PROCESSING, extra={"provider_session_id": "cs_9"}
        )
        found = repository.get_by_correlation(PaymentCorrelation(session_id="cs_9"))
        assert found.id == order.id

    def test_no_match(self, repository):
        assert repository.get_by_correlation(PaymentCorrelation(order_id="nope")) is None
        assert repository.get_by_correlation(PaymentCorrelation()) is None


class TestSetStatus:
    def test_pending_to_processing(self, repository):
        order = make_order(repository, [("p1", 1)])
        assert repository.set_status(order.id, OrderStatus.PROCESSING) is True
        assert repository.get(order.id).estado == OrderStatus.PROCESSING

    def test_extra_fields_written(self, repository):
        order = make_order(repository, [("p1", 1)])
        repository.set_status(
            order.id,
            OrderStatus.PROCESSING,
            extra={"provider_session_id": "cs_1", "fecha_pago": "2024-01-01T00:00:00Z"},
        )
        loaded = repository.get(order.id)
        assert loaded.provider_session_id == "cs_1"
        assert loaded.fecha_pago == "2024-01-01T00:00:00Z"

    def test_no_transition_out_of_cancelled(self, repository):
        order = make_order(repository, [("p1", 1)])
        assert repository.set_status(order.id, OrderStatus.CANCELLED) is True
        assert repository.set_status(order.id, OrderStatus.PROCESSING) is False
        assert repository.set_status(order.id, OrderStatus.PENDING) is False
        assert repository.get(order.id).estado == OrderStatus.CANCELLED

    def test_processing_to_cancelled(self, repository):
        order = make_order(repository, [("p1", 1)])
        repository.set_status(order.id, OrderStatus.PROCESSING)
        assert repository.set_status(order.id, OrderStatus.CANCELLED) is True

    def test_unpaid_only_guard(self, repository):
        order = make_order(repository, [("p1", 1)])
        repository.set_status(
            order.id, OrderStatus.PROCESSING, extra={"fecha_pago": "2024-01-01T00:00:00Z"}
        )
        changed = repository.set_status(
            order.id,
            OrderStatus.PROCESSING,
            expected={OrderStatus.PENDING, OrderStatus.PROCESSING},
            unpaid_only=True,
        )
        assert changed is False

    def test_unknown_order_changes_nothing(self, repository):
        assert repository.set_status("missing", OrderStatus.PROCESSING) is False


class TestDecrementStock:
    def test_applied_when_enough(self, products, repository):
        result = repository.decrement_stock("p2", 3)
        assert result.applied is True
        assert get_stock(products, "p2") == 7

    def test_exact_stock_reaches_zero_then_skips(self, products, repository):
        assert repository.decrement_stock("p1", 5).applied is True
        assert get_stock(products, "p1") == 0

        second = repository.decrement_stock("p1", 5)
        assert second.applied is False
        assert get_stock(products, "p1") == 0

    def test_insufficient_leaves_stock(self, products, repository):
        result = repository.decrement_stock("p1", 6)
        assert result.applied is False
        assert get_stock(products, "p1") == 5

    def test_unknown_product(self, products, repository):
        assert repository.decrement_stock("ghost", 1).applied is False

    def test_get_stock(self, products, repository):
        assert repository.get_stock("p2") == 10
        assert repository.get_stock("ghost") is None


class TestApplyPaymentEvent:
    def test_transition_and_stock_walk(self, products, repository):
        order = make_order(repository, [("p1", 2), ("p2", 4)])

        result = repository.apply_payment_event(
            "evt_1",
            "checkout_completed",
            PaymentCorrelation(order_id=order.id),
            OrderStatus.PROCESSING,
            decrement_stock=True,
        )

        assert result.transitioned is True
        assert result.order_id == order.id
        assert result.skipped == []
        assert get_stock(products, "p1") == 3
        assert get_stock(products, "p2") == 6

    def test_skipped_items_reported(self, products, repository):
        order = make_order(repository, [("p1", 2), ("p3", 1)])

        result = repository.apply_payment_event(
            "evt_1",
            "checkout_completed",
            PaymentCorrelation(order_id=order.id),
            OrderStatus.PROCESSING,
            decrement_stock=True,
        )

        assert result.skipped == ["p3"]
        assert get_stock(products, "p1") == 3
        assert get_stock(products, "p3") == 0

    def test_same_event_id_is_applied_once(self, products, repository):
        order = make_order(repository, [("p2", 4)])
        corr = PaymentCorrelation(order_id=order.id)

        first = repository.apply_payment_event(
            "evt_1", "checkout_completed", corr, OrderStatus.PROCESSING, decrement_stock=True
        )
        second = repository.apply_payment_event(
            "evt_1", "checkout_completed", corr, OrderStatus.PROCESSING, decrement_stock=True
        )

        assert first is not None
        assert second is None
        assert get_stock(products, "p2") == 6

    def test_no_stock_walk_without_transition(self, products, repository):
        order = make_order(repository, [("p2", 4)])
        repository.set_status(order.id, OrderStatus.CANCELLED)

        result = repository.apply_payment_event(
            "evt_1",
            "checkout_completed",
            PaymentCorrelation(order_id=order.id),
            OrderStatus.PROCESSING,
            decrement_stock=True,
        )

        assert result.transitioned is False
        assert result.decrements == []
        assert get_stock(products, "p2") == 10

    def test_unknown_order(self, repository):
        result = repository.apply_payment_event(
            "evt_1",
            "payment_failed",
            PaymentCorrelation(session_id="cs_missing"),
            OrderStatus.CANCELLED,
        )
        assert result.order_id is None
        assert result.transitioned is False

    def test_failure_rolls_back_everything(self, session_factory, repository):
        seed_products(session_factory, {"p1": 5})
        order = make_order(repository, [("p1", 2)])

        # Make the stock walk fail after the status update has been issued.
        with session_factory() as session, session.begin():
            session.execute(text("DROP TABLE productos"))

        with pytest.raises(OrderPersistenceError):
            repository.apply_payment_event(
                "evt_1",
                "checkout_completed",
                PaymentCorrelation(order_id=order.id),
                OrderStatus.PROCESSING,
                decrement_stock=True,
            )

        assert repository.get(order.id).estado == OrderStatus.PENDING
        # The event was not recorded either, so a redelivery is processed again.
        with session_factory() as session:
            assert session.get(WebhookEventRow, "evt_1") is None
