"""Command-line interface for shopflow."""

import argparse
import json
import logging
import sys
from decimal import Decimal, InvalidOperation

from . import __version__
from .config import load_settings
from .errors import ShopflowError
from .settlement import SettlementWorkflow


def get_workflow() -> SettlementWorkflow:
    """Build a workflow from environment settings, creating tables if needed."""
    settings = load_settings()
    workflow = SettlementWorkflow.from_settings(settings)
    workflow.db.create_all()
    return workflow


def cmd_init(args: argparse.Namespace) -> int:
    """Create the database schema."""
    try:
        settings = load_settings()
        workflow = SettlementWorkflow.from_settings(settings)
        try:
            workflow.db.create_all()
        finally:
            workflow.close()

        print(f"Initialized shopflow database at {settings.database_url}")
        print(f"Gateways: {', '.join(settings.gateways) or 'none'}")
        return 0

    except ShopflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = load_settings()

        print("Starting shopflow API server...")
        print(f"Database: {settings.database_url}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "shopflow.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=settings.log_level.lower(),
        )
        return 0

    except ImportError:
        print("Error: uvicorn not installed. Run: pip install uvicorn", file=sys.stderr)
        return 1
    except ShopflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_list(args: argparse.Namespace) -> int:
    """List products."""
    try:
        workflow = get_workflow()
        try:
            products = workflow.inventory.list_products(include_inactive=args.all)
        finally:
            workflow.close()

        if not products:
            print("No products.")
            print("Add one with: shopflow products add <name> --price <price>")
            return 0

        if args.json:
            print(json.dumps([p.to_dict() for p in products], indent=2))
        else:
            print(f"Products ({len(products)}):")
            print()
            for p in products:
                status = "" if p.active else "  [inactive]"
                print(f"  {p.id:>4}  {p.name}{status}")
                print(f"        price {p.price}  stock {p.stock}")
            print()

        return 0

    except ShopflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_add(args: argparse.Namespace) -> int:
    """Add a product."""
    try:
        try:
            price = Decimal(args.price)
        except InvalidOperation:
            print(f"Error: Invalid price: {args.price}", file=sys.stderr)
            return 1

        workflow = get_workflow()
        try:
            product = workflow.inventory.create_product(
                name=args.name,
                price=price,
                stock=args.stock,
                description=args.description,
            )
        finally:
            workflow.close()

        print(f"Added product: {product.id}")
        print(f"  Name: {product.name}")
        print(f"  Price: {product.price}")
        print(f"  Stock: {product.stock}")
        return 0

    except ShopflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_stock(args: argparse.Namespace) -> int:
    """Apply a signed stock correction."""
    try:
        workflow = get_workflow()
        try:
            stock = workflow.inventory.adjust(args.product_id, args.delta)
        finally:
            workflow.close()

        print(f"Product {args.product_id} stock: {stock}")
        return 0

    except ShopflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders."""
    try:
        workflow = get_workflow()
        try:
            if args.customer is not None:
                orders = workflow.orders.list_for_customer(args.customer)
            else:
                orders = workflow.orders.list_all()
        finally:
            workflow.close()

        if not orders:
            print("No orders.")
            return 0

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
        else:
            print(f"Orders ({len(orders)}):")
            print()
            for o in orders:
                print(
                    f"  #{o.id:<4} customer {o.customer_id}  total {o.total}  "
                    f"{o.fulfillment_status.value}/{o.payment_status.value}"
                )
            print()

        return 0

    except ShopflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order with its line items and payments."""
    try:
        workflow = get_workflow()
        try:
            order = workflow.orders.get(args.order_id)
            payments = workflow.payments.list_for_order(args.order_id)
        finally:
            workflow.close()

        if args.json:
            data = order.to_dict()
            data["payments"] = [p.to_dict() for p in payments]
            print(json.dumps(data, indent=2))
            return 0

        print(f"Order #{order.id}")
        print(f"  Customer: {order.customer_id}")
        print(f"  Fulfillment: {order.fulfillment_status.value}")
        print(f"  Payment: {order.payment_status.value} ({order.payment_method})")
        print(f"  Ship to: {order.address}")
        print("  Items:")
        for item in order.items:
            print(
                f"    product {item.product_id}  x{item.quantity}  "
                f"@ {item.unit_price} = {item.subtotal}"
            )
        print(f"  Total: {order.total}")
        if payments:
            print("  Payments:")
            for p in payments:
                print(f"    #{p.id}  {p.gateway}  {p.amount}  {p.status.value}  {p.transaction_id}")
        return 0

    except ShopflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="shopflow",
        description="Manage the shopflow catalog and orders, or run the API server.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    subparsers.add_parser("init", help="Create the database schema")

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

    # products (subcommand group)
    products_parser = subparsers.add_parser("products", help="Manage the catalog")
    products_subparsers = products_parser.add_subparsers(dest="products_command")

    products_list_parser = products_subparsers.add_parser("list", help="List products")
    products_list_parser.add_argument(
        "--all", "-a", action="store_true", help="Include inactive products"
    )
    products_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    products_add_parser = products_subparsers.add_parser("add", help="Add a product")
    products_add_parser.add_argument("name", help="Product name")
    products_add_parser.add_argument("--price", required=True, help="Unit price, e.g. 19.99")
    products_add_parser.add_argument(
        "--stock", "-s", type=int, default=0, help="Initial stock (default: 0)"
    )
    products_add_parser.add_argument("--description", "-d", help="Description")

    products_stock_parser = products_subparsers.add_parser(
        "stock", help="Add (positive) or remove (negative) stock"
    )
    products_stock_parser.add_argument("product_id", type=int, help="Product ID")
    products_stock_parser.add_argument("delta", type=int, help="Signed stock change")

    # orders (subcommand group)
    orders_parser = subparsers.add_parser("orders", help="Inspect orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    orders_list_parser = orders_subparsers.add_parser("list", help="List orders")
    orders_list_parser.add_argument(
        "--customer", "-c", type=int, help="Only orders for this customer ID"
    )
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    orders_show_parser = orders_subparsers.add_parser("show", help="Show one order")
    orders_show_parser.add_argument("order_id", type=int, help="Order ID")
    orders_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    # Handle products subcommands
    if args.command == "products":
        if not getattr(args, "products_command", None):
            parser.parse_args(["products", "--help"])
            return 0
        if args.products_command == "list":
            return cmd_products_list(args)
        elif args.products_command == "add":
            return cmd_products_add(args)
        elif args.products_command == "stock":
            return cmd_products_stock(args)

    # Handle orders subcommands
    if args.command == "orders":
        if not getattr(args, "orders_command", None):
            parser.parse_args(["orders", "--help"])
            return 0
        if args.orders_command == "list":
            return cmd_orders_list(args)
        elif args.orders_command == "show":
            return cmd_orders_show(args)

    commands = {
        "init": cmd_init,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
