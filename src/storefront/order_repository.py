"""Order and stock persistence built on the SQLAlchemy row store."""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import OrderRow, ProductRow, WebhookEventRow
from .errors import OrderNotFoundError, OrderPersistenceError
from .models import (
    FulfillmentResult,
    Order,
    OrderStatus,
    PaymentCorrelation,
    StockDecrement,
    _utc_now,
)

logger = logging.getLogger(__name__)


class OrderRepository:
    """Sole writer of order status and of payment-driven stock decrements."""

    def __init__(self, session_factory: sessionmaker[Session]):
        """
        Initialize OrderRepository.

        Args:
            session_factory: Factory producing one Session per operation.
        """
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        """Run a block in one transaction, wrapping store faults."""
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("Store failure during %s: %s", operation, e)
            raise OrderPersistenceError(operation, str(e)) from e

    # --- Reads ---

    def get(self, order_id: str) -> Order:
        """
        Get an order by ID.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
        """
        with self._transaction("get order") as session:
            row = session.get(OrderRow, order_id)
            if row is None:
                raise OrderNotFoundError(order_id)
            return row.to_model()

    def get_by_correlation(self, correlation: PaymentCorrelation) -> Order | None:
        """Find the order a provider event refers to, or None."""
        with self._transaction("get order by correlation") as session:
            row = self._find_row(session, correlation)
            return row.to_model() if row is not None else None

    def list_for_user(self, user_id: str) -> list[Order]:
        """List a user's orders, newest first."""
        with self._transaction("list orders") as session:
            rows = session.scalars(
                select(OrderRow)
                .where(OrderRow.usuario_id == user_id)
                .order_by(OrderRow.created_at.desc())
            ).all()
            return [r.to_model() for r in rows]

    def find_by_idempotency_key(self, key: str, user_id: str) -> Order | None:
        """Find an order previously created by the same user with the same key."""
        with self._transaction("find order by idempotency key") as session:
            row = session.scalars(
                select(OrderRow).where(
                    OrderRow.idempotency_key == key,
                    OrderRow.usuario_id == user_id,
                )
            ).first()
            return row.to_model() if row is not None else None

    def get_stock(self, product_id: str) -> int | None:
        with self._transaction("get stock") as session:
            return session.scalar(select(ProductRow.stock).where(ProductRow.id == product_id))

    # --- Writes ---

    def create(self, order: Order) -> Order:
        """
        Insert a new order row.

        Raises:
            OrderPersistenceError: If the store rejects the insert.
        """
        with self._transaction("create order") as session:
            session.add(OrderRow.from_model(order))
        logger.info("Created order %s for user %s", order.id, order.usuario_id)
        return order

    def set_status(
        self,
        order_id: str,
        status: OrderStatus,
        extra: dict[str, Any] | None = None,
        expected: set[OrderStatus] | None = None,
        unpaid_only: bool = False,
        session: Session | None = None,
    ) -> bool:
        """
        Conditionally move an order to a new status.

        The write only applies when the row currently holds one of the
        `expected` statuses (default: every status allowed to transition to
        `status`). Check and write are one UPDATE statement.

        With `unpaid_only`, rows that already carry a payment timestamp are
        left alone; this is what keeps a paid order from being fulfilled twice.

        Returns:
            True if a row changed.
        """
        if expected is None:
            expected = {s for s in OrderStatus if s.can_transition_to(status)}
        if not expected:
            return False

        values: dict[str, Any] = dict(extra or {})
        values["estado"] = status.value
        values["updated_at"] = _utc_now()
        conditions = [
            OrderRow.id == order_id,
            OrderRow.estado.in_([s.value for s in expected]),
        ]
        if unpaid_only:
            conditions.append(OrderRow.fecha_pago.is_(None))
        stmt = (
            update(OrderRow)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if session is not None:
            changed = session.execute(stmt).rowcount == 1
        else:
            with self._transaction("set order status") as own:
                changed = own.execute(stmt).rowcount == 1

        if changed:
            logger.info("Order %s -> %s", order_id, status.value)
        else:
            logger.info("Order %s not moved to %s (status guard)", order_id, status.value)
        return changed

    def decrement_stock(
        self, product_id: str, quantity: int, session: Session | None = None
    ) -> StockDecrement:
        """
        Decrement stock only if enough is available, as one conditional UPDATE.

        Insufficient stock leaves the row untouched and reports applied=False.
        """
        stmt = (
            update(ProductRow)
            .where(ProductRow.id == product_id, ProductRow.stock >= quantity)
            .values(stock=ProductRow.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if session is not None:
            applied = session.execute(stmt).rowcount == 1
        else:
            with self._transaction("decrement stock") as own:
                applied = own.execute(stmt).rowcount == 1

        if not applied:
            logger.warning(
                "Insufficient stock for product %s (requested %d), left unchanged",
                product_id,
                quantity,
            )
        return StockDecrement(product_id=product_id, quantity=quantity, applied=applied)

    def apply_payment_event(
        self,
        event_id: str,
        event_kind: str,
        correlation: PaymentCorrelation,
        status: OrderStatus,
        extra: dict[str, Any] | None = None,
        expected: set[OrderStatus] | None = None,
        unpaid_only: bool = False,
        decrement_stock: bool = False,
    ) -> FulfillmentResult | None:
        """
        Apply a provider event to its order in a single transaction.

        Records the event id, moves the order to `status` through the status
        guard and, when the transition happened and `decrement_stock` is set,
        walks the order's line items with conditional decrements. Either all of
        it commits or none of it does.

        Returns:
            None if the event id was already applied, otherwise the result.
        """
        with self._transaction(f"apply {event_kind}") as session:
            if session.get(WebhookEventRow, event_id) is not None:
                logger.info("Event %s (%s) already applied, skipping", event_id, event_kind)
                return None

            row = self._find_row(session, correlation)
            session.add(
                WebhookEventRow(
                    id=event_id,
                    kind=event_kind,
                    order_id=row.id if row is not None else None,
                    received_at=_utc_now(),
                )
            )
            # Surface a concurrent duplicate before doing any work.
            session.flush()

            if row is None:
                logger.warning("No order for %s event %s (%s)", event_kind, event_id, correlation)
                return FulfillmentResult(order_id=None, transitioned=False)

            transitioned = self.set_status(
                row.id,
                status,
                extra=extra,
                expected=expected,
                unpaid_only=unpaid_only,
                session=session,
            )
            result = FulfillmentResult(order_id=row.id, transitioned=transitioned)
            if transitioned and decrement_stock:
                for item in row.to_model().items:
                    result.decrements.append(
                        self.decrement_stock(item.producto_id, item.cantidad, session=session)
                    )
            return result

    # --- Helpers ---

    @staticmethod
    def _find_row(session: Session, correlation: PaymentCorrelation) -> OrderRow | None:
        if correlation.order_id:
            row = session.get(OrderRow, correlation.order_id)
            if row is not None:
                return row
        if correlation.session_id:
            return session.scalars(
                select(OrderRow).where(OrderRow.provider_session_id == correlation.session_id)
            ).first()
        return None
