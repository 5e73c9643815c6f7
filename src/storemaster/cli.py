"""Command-line entry points for the StoreMaster toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing plain-text reports. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reports
from .constants import SALES_PAGE_SIZE
from .data_manager import ProductRow, SaleRow
from .document_store import StoreUnavailable, TransactionConflict


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="storemaster",
        description="Command-line tools for the StoreMaster inventory and sales store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as product edits and sales."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "sell": register_sell_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "products": register_products_command(subparsers),
        "sales": register_sales_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_fields(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--category", required=True)
    parser.add_argument("--price-buy", required=True)
    parser.add_argument("--price-sell", required=True)
    parser.add_argument("--stock", required=True)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_fields(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutates=True)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Overwrite the fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        _add_product_fields(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product, mutates=True)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product. Recorded sales are kept."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product, mutates=True)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Sell units of a product, deducting stock atomically."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell, mutates=True)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List products ordered by name."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None, help="Only show products whose name or category contains this text.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a whole number, got {raw!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return value


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Show the most recent sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=_positive_int, default=SALES_PAGE_SIZE)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display revenue, profit, low-stock and daily sales figures."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report)


@contextmanager
def runtime_session(
    config_path: Optional[Path] = None,
    *,
    exclusive: bool = False,
) -> Iterator[core_logic.RuntimeContext]:
    """Resolve the runtime context for CLI operations.

    With ``exclusive`` the workbook lock is held until the block exits, so a
    mutating command loads, executes and persists without another client
    slipping in between.
    """
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    if exclusive:
        with core_logic.locked_runtime_context(target) as context:
            core_logic.ensure_schema_version(context)
            yield context
    else:
        context = core_logic.load_runtime_context(target)
        core_logic.ensure_schema_version(context)
        yield context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_money(raw: str, *, label: str) -> Decimal:
    """Parse a user-entered amount, rejecting text that is not a number."""
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise core_logic.InvalidProduct(f"{label} must be a number, got {raw!r}") from exc


def parse_stock(raw: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise core_logic.InvalidProduct(f"Stock must be a whole number, got {raw!r}") from exc


def translate_product_draft(args: argparse.Namespace) -> core_logic.ProductDraft:
    """Translate CLI args into a product draft."""
    return core_logic.ProductDraft(
        name=args.name,
        category=args.category,
        price_buy=parse_money(args.price_buy, label="Buy price"),
        price_sell=parse_money(args.price_sell, label="Sell price"),
        stock=parse_stock(args.stock),
    )


def translate_sell(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        product_id=args.product_id,
        quantity=core_logic.parse_quantity(args.quantity),
    )


def format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def format_product_line(product: ProductRow, *, low_stock_threshold: int) -> str:
    marker = " (low)" if product.stock < low_stock_threshold else ""
    return (
        f"{product.product_id}  {product.name:<24} {product.category:<16} "
        f"buy {format_money(product.price_buy):>10}  sell {format_money(product.price_sell):>10}  "
        f"stock {product.stock}{marker}"
    )


def format_sale_line(sale: SaleRow) -> str:
    when = sale.date.astimezone().strftime("%Y-%m-%d %H:%M")
    return (
        f"{when}  {sale.product_name:<24} x{sale.quantity:<4} "
        f"total {format_money(sale.total_amount):>10}  profit {format_money(sale.profit):>10}"
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_product_draft(args))
    print(f"Added product {product.product_id}: {product.name}")
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-product workflow in the BLL."""
    product = core_logic.update_product(context, args.product_id, translate_product_draft(args))
    print(f"Updated product {product.product_id}: {product.name}")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, args.product_id)
    print(f"Deleted product {args.product_id}")
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sell(args))
    print(
        f"Sold {sale.quantity} x {sale.product_name} for {format_money(sale.total_amount)} "
        f"(profit {format_money(sale.profit)}), sale {sale.sale_id}"
    )
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the product list, optionally filtered by a search term."""
    products = core_logic.list_products(context)
    term = (getattr(args, "search", None) or "").strip().lower()
    if term:
        products = [p for p in products if term in p.name.lower() or term in p.category.lower()]
    if not products:
        print("No products found.")
        return 0
    for product in products:
        print(format_product_line(product, low_stock_threshold=context.settings.low_stock_threshold))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the most recent sales."""
    sales = core_logic.list_sales(context, limit=args.limit)
    if not sales:
        print("No sales recorded yet.")
        return 0
    print(f"Showing last {len(sales)} transaction(s)")
    for sale in sales:
        print(format_sale_line(sale))
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard aggregates."""
    report = reports.build_dashboard(context)
    stats = report.stats
    print(f"Total products : {stats.total_products}")
    print(f"Total revenue  : {format_money(stats.total_revenue)}")
    print(f"Total profit   : {format_money(stats.total_profit)}")
    print(f"Low stock      : {stats.low_stock_count}")

    print("\nLow stock items:")
    if not report.low_stock:
        print("  All products are well stocked.")
    for product in report.low_stock:
        print(f"  {product.name} ({product.stock} left)")

    print("\nRecent sales:")
    if not report.recent_sales:
        print("  No sales recorded yet.")
    for sale in report.recent_sales:
        print(f"  {format_sale_line(sale)}")

    print("\nDaily revenue:")
    if not report.daily:
        print("  No sales recorded yet.")
    for bucket in report.daily:
        print(f"  {bucket.day.isoformat()}  {format_money(bucket.sales):>10}  profit {format_money(bucket.profit):>10}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, (StoreUnavailable, FileNotFoundError)):
        log.error("%s", error)
        return 3
    if isinstance(error, TransactionConflict):
        log.error("%s; please retry", error)
        return 4
    log.error("%s", error)
    return 1


def persist_store(context: core_logic.RuntimeContext) -> None:
    """Persist store changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table[args.command]
        with runtime_session(getattr(args, "config", None), exclusive=spec.mutates) as context:
            exit_code = dispatch_command(context, args, command_table)
            if exit_code == 0 and spec.mutates:
                persist_store(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
