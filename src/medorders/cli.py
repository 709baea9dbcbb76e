"""Command-line interface for medorders."""

import argparse
import json
import logging
import sys

from . import __version__
from .auth import issue_token
from .catalog import ProductCatalog
from .config import DEFAULT_TOKEN_SECRET, get_settings
from .errors import MedordersError
from .models import OrderStatus, Role
from .orders import OrderFilters, OrderStore
from .store import Database
from .users import UserStore


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_init(args: argparse.Namespace) -> int:
    """Create an empty data file."""
    try:
        db = Database()
        db.init(force=args.force)
        print(f"Initialized medorders database at {db.data_path}")
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_users_add(args: argparse.Namespace) -> int:
    """Create a user, plus a laboratory profile for lab accounts."""
    try:
        users = UserStore(Database())
        role = Role(args.role)
        user = users.create_user(args.name, role, email=args.email, phone=args.phone)
        print(f"Created {role.value} user: {user.id}")

        if role == Role.LABORATORY:
            profile = users.create_lab_profile(
                user.id, args.lab_name or args.name, address=args.address, city=args.city
            )
            print(f"Laboratory profile: {profile.id}")
        elif args.lab_name:
            print("Warning: --lab-name ignored for non-laboratory users", file=sys.stderr)

        print(f"Token: {issue_token(user.id, get_settings().token_secret)}")
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_users_token(args: argparse.Namespace) -> int:
    """Print a bearer token for an existing user."""
    try:
        user = UserStore(Database()).get_user(args.user_id)
        print(issue_token(user.id, get_settings().token_secret))
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_users_list(args: argparse.Namespace) -> int:
    try:
        role = Role(args.role) if args.role else None
        users = UserStore(Database()).list_users(role)

        if args.json:
            print(json.dumps([u.to_dict() for u in users], indent=2))
            return 0

        if not users:
            print("No users.")
            return 0
        for user in users:
            print(f"{user.id}  {user.role.value:<16} {user.name}")
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_add(args: argparse.Namespace) -> int:
    """List a product under a laboratory account."""
    try:
        db = Database()
        owner = UserStore(db).get_user(args.owner)
        product = ProductCatalog(db).create_product(
            owner,
            name=args.name,
            description=args.desc or "",
            price=args.price,
            available_quantity=args.quantity,
            image_url=args.image_url,
        )
        print(f"Added product: {product.id}")
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products_list(args: argparse.Namespace) -> int:
    try:
        result = ProductCatalog(Database()).list_products(
            search=args.search, owner_id=args.owner, page=args.page, limit=args.limit
        )

        if args.json:
            output = {
                "products": [p.to_dict() for p in result.items],
                "pagination": result.pagination(),
            }
            print(json.dumps(output, indent=2))
            return 0

        if not result.items:
            print("No products.")
            return 0

        for product in result.items:
            print(
                f"{product.id}  {product.name:<30} {product.price:>10.2f}  "
                f"qty={product.available_quantity}  owner={product.owner_id}"
            )
        print(f"\nPage {result.page}/{result.total_pages or 1} ({result.total} total)")
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_list(args: argparse.Namespace) -> int:
    try:
        filters = OrderFilters(
            status=OrderStatus(args.status) if args.status else None,
            need_assignment=True if args.needs_assignment else None,
        )
        result = OrderStore(Database()).list_orders(filters, page=args.page, limit=args.limit)

        if args.json:
            output = {
                "orders": [o.to_dict() for o in result.items],
                "pagination": result.pagination(),
            }
            print(json.dumps(output, indent=2))
            return 0

        if not result.items:
            print("No orders.")
            return 0

        for order in result.items:
            lab = order.laboratory_user or "-"
            paid = "paid" if order.is_paid else ("cod" if order.cod else "unpaid")
            print(
                f"{order.id}  {order.status.value:<22} {order.total_price:>10.2f}  "
                f"{paid:<6} lab={lab}  lines={len(order.products)}"
            )
        print(f"\nPage {result.page}/{result.total_pages or 1} ({result.total} total)")
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_stats(args: argparse.Namespace) -> int:
    try:
        stats = OrderStore(Database()).order_stats()

        if args.json:
            print(json.dumps(stats, indent=2))
            return 0

        for key, value in stats.items():
            print(f"{key.replace('_', ' '):<20} {value}")
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        settings = get_settings()
        if settings.token_secret == DEFAULT_TOKEN_SECRET:
            print(
                "Error: MEDORDERS_TOKEN_SECRET is not set; refusing to serve with the "
                "built-in development secret.",
                file=sys.stderr,
            )
            return 1

        import uvicorn

        db = Database()
        if not db.exists():
            print("Warning: database not initialized. Run 'medorders init' first.", file=sys.stderr)
            print("Starting server anyway...", file=sys.stderr)

        print("Starting medorders API server...")
        print(f"Data file: {db.data_path}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "medorders.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=settings.log_level.lower(),
            workers=1,  # Single worker to avoid concurrent write issues
        )
        return 0

    except MedordersError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="medorders",
        description="Multi-laboratory orders and delivery for a healthcare marketplace.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Create the data file")
    init_parser.add_argument(
        "--force", "-f", action="store_true", help="Overwrite an existing data file"
    )

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

    # users (subcommand group)
    users_parser = subparsers.add_parser("users", help="Manage user accounts")
    users_subparsers = users_parser.add_subparsers(dest="users_command")

    users_add_parser = users_subparsers.add_parser("add", help="Create a user")
    users_add_parser.add_argument("name", help="Display name")
    users_add_parser.add_argument(
        "--role", "-r", required=True, choices=[r.value for r in Role], help="Account role"
    )
    users_add_parser.add_argument("--email", help="Email address")
    users_add_parser.add_argument("--phone", help="Phone number")
    users_add_parser.add_argument(
        "--lab-name", help="Laboratory profile name (laboratory role only)"
    )
    users_add_parser.add_argument("--address", help="Laboratory address")
    users_add_parser.add_argument("--city", help="Laboratory city")

    users_token_parser = users_subparsers.add_parser("token", help="Print a bearer token")
    users_token_parser.add_argument("user_id", help="User ID")

    users_list_parser = users_subparsers.add_parser("list", help="List users")
    users_list_parser.add_argument("--role", "-r", choices=[r.value for r in Role])
    users_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # products (subcommand group)
    products_parser = subparsers.add_parser("products", help="Manage the product catalog")
    products_subparsers = products_parser.add_subparsers(dest="products_command")

    products_add_parser = products_subparsers.add_parser("add", help="Add a product")
    products_add_parser.add_argument("name", help="Product name")
    products_add_parser.add_argument(
        "--owner", "-o", required=True, help="Laboratory user ID that owns the product"
    )
    products_add_parser.add_argument("--price", type=float, required=True, help="Unit price")
    products_add_parser.add_argument(
        "--quantity", "-q", type=int, default=0, help="Available quantity (default: 0)"
    )
    products_add_parser.add_argument("--desc", "-d", help="Description")
    products_add_parser.add_argument("--image-url", help="Image URL")

    products_list_parser = products_subparsers.add_parser("list", help="List products")
    products_list_parser.add_argument("--search", "-s", help="Match name or description")
    products_list_parser.add_argument("--owner", "-o", help="Only this laboratory's products")
    products_list_parser.add_argument("--page", type=int, default=1)
    products_list_parser.add_argument("--limit", type=int, default=20)
    products_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders (subcommand group)
    orders_parser = subparsers.add_parser("orders", help="Inspect orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    orders_list_parser = orders_subparsers.add_parser("list", help="List orders, newest first")
    orders_list_parser.add_argument(
        "--status", choices=[s.value for s in OrderStatus], help="Filter by status"
    )
    orders_list_parser.add_argument(
        "--needs-assignment", action="store_true", help="Only orders waiting for a laboratory"
    )
    orders_list_parser.add_argument("--page", type=int, default=1)
    orders_list_parser.add_argument("--limit", type=int, default=20)
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    orders_stats_parser = orders_subparsers.add_parser("stats", help="Dashboard statistics")
    orders_stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


GROUP_COMMANDS = {
    "users": ("users_command", {
        "add": cmd_users_add,
        "token": cmd_users_token,
        "list": cmd_users_list,
    }),
    "products": ("products_command", {
        "add": cmd_products_add,
        "list": cmd_products_list,
    }),
    "orders": ("orders_command", {
        "list": cmd_orders_list,
        "stats": cmd_orders_stats,
    }),
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(args.verbose)

    if args.command in GROUP_COMMANDS:
        dest, handlers = GROUP_COMMANDS[args.command]
        sub = getattr(args, dest, None)
        if not sub:
            parser.parse_args([args.command, "--help"])
            return 0
        return handlers[sub](args)

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
