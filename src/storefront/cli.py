"""Command-line interface for storefront."""

import argparse
import json
import os
import sys

from . import __version__
from .config import Settings
from .db import ProductRow, create_db_engine, create_session_factory, init_db
from .errors import StorefrontError
from .log import configure_logging
from .mercadopago import MercadoPagoClient
from .order_repository import OrderRepository
from .payment_status import PaymentStatusProber


def get_repository(settings: Settings) -> OrderRepository:
    """Get an OrderRepository over the configured database."""
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    return OrderRepository(create_session_factory(engine))


def cmd_init_db(args: argparse.Namespace, settings: Settings) -> int:
    """Create database tables."""
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    print(f"Initialized database at {settings.database_url}")
    return 0


def cmd_add_product(args: argparse.Namespace, settings: Settings) -> int:
    """Insert or update a product's price and stock."""
    if args.stock < 0:
        print("Error: stock must be >= 0", file=sys.stderr)
        return 1
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    factory = create_session_factory(engine)
    with factory() as session, session.begin():
        session.merge(
            ProductRow(
                id=args.product_id,
                nombre=args.nombre or args.product_id,
                precio=args.precio,
                stock=args.stock,
            )
        )
    print(f"Saved product {args.product_id} (stock {args.stock})")
    return 0


def cmd_orders(args: argparse.Namespace, settings: Settings) -> int:
    """List a user's orders."""
    try:
        orders = get_repository(settings).list_for_user(args.user_id)

        if not orders:
            print("No orders found.")
            return 0

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
        else:
            print(f"Orders for {args.user_id} ({len(orders)}):")
            for order in orders:
                print(
                    f"  {order.id[:8]}  {order.estado.value:<11} "
                    f"total={order.total:.2f}  items={len(order.items)}  {order.created_at}"
                )
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_payment_status(args: argparse.Namespace, settings: Settings) -> int:
    """Query a payment's current status from MercadoPago."""
    try:
        client = MercadoPagoClient(
            access_token=settings.mercadopago_access_token,
            base_url=settings.mercadopago_api_url,
            timeout=settings.provider_timeout,
        )
        status = PaymentStatusProber(client).probe(args.payment_id)

        if args.json:
            print(json.dumps(status.to_dict(), indent=2))
        else:
            print(f"Payment {status.id}: {status.status} ({status.status_detail or '-'})")
            if status.transaction_amount is not None:
                print(f"Amount: {status.transaction_amount} {status.currency_id or ''}".rstrip())
            if status.external_reference:
                print(f"Order: {status.external_reference}")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    """Start the API server."""
    import uvicorn

    # The app factory reads settings from the environment in the server process.
    os.environ["STOREFRONT_DATABASE_URL"] = settings.database_url

    print("Starting storefront API server...")
    print(f"Database: {settings.database_url}")
    print(f"API docs: http://{args.host}:{args.port}/docs")
    print()

    uvicorn.run(
        "storefront.api:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="storefront",
        description="Storefront order and payment backend",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--database-url", help="Override STOREFRONT_DATABASE_URL"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init-db
    subparsers.add_parser("init-db", help="Create database tables")

    # add-product
    product_parser = subparsers.add_parser("add-product", help="Create or update a product")
    product_parser.add_argument("product_id", help="Product ID")
    product_parser.add_argument("--nombre", "-n", help="Display name (defaults to the ID)")
    product_parser.add_argument("--precio", type=float, default=0.0, help="Unit price")
    product_parser.add_argument("--stock", type=int, default=0, help="Available stock")

    # orders
    orders_parser = subparsers.add_parser("orders", help="List a user's orders")
    orders_parser.add_argument("user_id", help="User ID")
    orders_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # payment-status
    status_parser = subparsers.add_parser(
        "payment-status", help="Query a MercadoPago payment's status"
    )
    status_parser.add_argument("payment_id", help="MercadoPago payment ID")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = Settings.from_env()
    if args.database_url:
        settings.database_url = args.database_url
    configure_logging(settings.log_level)

    commands = {
        "init-db": cmd_init_db,
        "add-product": cmd_add_product,
        "orders": cmd_orders,
        "payment-status": cmd_payment_status,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args, settings)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
