"""Pytest fixtures for storefront tests."""

import json
from typing import Any

import pytest

from storefront.config import Settings
from storefront.db import ProductRow, create_db_engine, create_session_factory, init_db
from storefront.models import LineItem, Order
from storefront.order_repository import OrderRepository
from storefront.signature import sign_payload

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return OrderRepository(session_factory)


@pytest.fixture
def products(session_factory):
    """Seed a small catalog: p1 (stock 5), p2 (stock 10), p3 (stock 0)."""
    seed_products(session_factory, {"p1": 5, "p2": 10, "p3": 0})
    return session_factory


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        stripe_webhook_secret=WEBHOOK_SECRET,
        mercadopago_access_token="TEST-token",
        environment="development",
    )


def seed_products(session_factory, stock: dict[str, int]) -> None:
    with session_factory() as session, session.begin():
        for product_id, qty in stock.items():
            session.add(ProductRow(id=product_id, nombre=product_id, precio=100.0, stock=qty))


def get_stock(session_factory, product_id: str) -> int:
    with session_factory() as session:
        return session.get(ProductRow, product_id).stock


def make_order(
    repository: OrderRepository,
    items: list[tuple[str, int]],
    total: float = 236.0,
    user_id: str = "user_1",
) -> Order:
    """Persist a pending order with (product_id, quantity) lines."""
    order = Order.create(
        usuario_id=user_id,
        items=[LineItem(producto_id=p, cantidad=q, precio=100.0) for p, q in items],
        total=total,
        nombre_cliente="Ana",
        email_cliente="ana@example.com",
    )
    return repository.create(order)


def stripe_event(
    event_type: str,
    event_id: str = "evt_1",
    object_id: str = "cs_test_1",
    metadata: dict[str, Any] | None = None,
) -> bytes:
    """Serialize a minimal Stripe-shaped event."""
    body = {
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": object_id, "metadata": metadata or {}}},
    }
    return json.dumps(body).encode()


def signed(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return sign_payload(body, secret)
