"""Database layer: SQLAlchemy tables and session factory."""

from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import LineItem, Order, OrderStatus


class Base(DeclarativeBase):
    pass


class OrderRow(Base):
    """Orders relation (pedidos)."""

    __tablename__ = "pedidos"
    # Idempotency keys are scoped per user, like the lookup.
    __table_args__ = (
        UniqueConstraint("usuario_id", "idempotency_key", name="uq_pedidos_usuario_idempotency"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    usuario_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False)
    igv: Mapped[float] = mapped_column(Float, nullable=False)
    total: Mapped[float] = mapped_column(Float, nullable=False)
    estado: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    nombre_cliente: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email_cliente: Mapped[str | None] = mapped_column(String(200), nullable=True)
    telefono_cliente: Mapped[str | None] = mapped_column(String(50), nullable=True)
    direccion_envio: Mapped[str | None] = mapped_column(Text, nullable=True)
    metodo_pago: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_session_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    fecha_pago: Mapped[str | None] = mapped_column(String(40), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(String(40), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(40), nullable=False)

    def to_model(self) -> Order:
        return Order(
            id=self.id,
            usuario_id=self.usuario_id,
            items=[LineItem.from_dict(i) for i in self.items or []],
            subtotal=self.subtotal,
            igv=self.igv,
            total=self.total,
            estado=OrderStatus(self.estado),
            nombre_cliente=self.nombre_cliente,
            email_cliente=self.email_cliente,
            telefono_cliente=self.telefono_cliente,
            direccion_envio=self.direccion_envio,
            metodo_pago=self.metodo_pago,
            provider_session_id=self.provider_session_id,
            fecha_pago=self.fecha_pago,
            idempotency_key=self.idempotency_key,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_model(cls, order: Order) -> "OrderRow":
        return cls(
            id=order.id,
            usuario_id=order.usuario_id,
            items=[i.to_dict() for i in order.items],
            subtotal=order.subtotal,
            igv=order.igv,
            total=order.total,
            estado=order.estado.value,
            nombre_cliente=order.nombre_cliente,
            email_cliente=order.email_cliente,
            telefono_cliente=order.telefono_cliente,
            direccion_envio=order.direccion_envio,
            metodo_pago=order.metodo_pago,
            provider_session_id=order.provider_session_id,
            fecha_pago=order.fecha_pago,
            idempotency_key=order.idempotency_key,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class ProductRow(Base):
    """Products relation (productos). Only stock is written by this service."""

    __tablename__ = "productos"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_productos_stock_non_negative"),)

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    nombre: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    precio: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class WebhookEventRow(Base):
    """Provider event ids that have already been applied."""

    __tablename__ = "webhook_eventos"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    received_at: Mapped[str] = mapped_column(String(40), nullable=False)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url in ("sqlite://", "sqlite:///") or (url.startswith("sqlite") and ":memory:" in url):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo)


def init_db(engine: Engine) -> None:
    """Create all tables that don't exist yet."""
    Base.metadata.create_all(engine)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)
