"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from storemaster import cli, core_logic, data_manager
from storemaster.document_store import StoreUnavailable, TransactionConflict


WRITE_COMMANDS = {
    "add-product",
    "edit-product",
    "delete-product",
    "sell",
}

READ_COMMANDS = {
    "products",
    "sales",
    "dashboard",
}

PRODUCT_ARGS = [
    "--name",
    "Widget",
    "--category",
    "Hardware",
    "--price-buy",
    "2.00",
    "--price-sell",
    "5.00",
    "--stock",
    "10",
]


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _parse(register, argv):
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = register(subparsers)
    spec.register(subparsers)
    return spec, parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "storemaster"
    assert "StoreMaster" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire reading and mutating sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS
    assert {name for name, spec in command_table.items() if spec.mutates} == WRITE_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert spec.name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    for spec in specs.values():
        assert not spec.mutates
        assert spec.name in subparsers_action.choices


def test_register_add_product_command_configures_arguments():
    """register_add_product_command should define the product fields."""

    spec, namespace = _parse(cli.register_add_product_command, ["add-product", *PRODUCT_ARGS])

    assert spec.name == "add-product"
    assert namespace.name == "Widget"
    assert namespace.price_buy == "2.00"
    assert namespace.price_sell == "5.00"
    assert namespace.stock == "10"


def test_register_edit_product_command_requires_product_id():
    _, namespace = _parse(
        cli.register_edit_product_command,
        ["edit-product", "--product-id", "abc", *PRODUCT_ARGS],
    )
    assert namespace.product_id == "abc"

    with pytest.raises(SystemExit):
        _parse(cli.register_edit_product_command, ["edit-product", *PRODUCT_ARGS])


def test_register_sell_command_configures_arguments():
    spec, namespace = _parse(
        cli.register_sell_command,
        ["sell", "--product-id", "abc", "--quantity", "3"],
    )

    assert spec.mutates
    assert namespace.product_id == "abc"
    assert namespace.quantity == "3"


def test_register_sales_command_defaults_to_page_size():
    _, namespace = _parse(cli.register_sales_command, ["sales"])
    assert namespace.limit == 50


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_routes_to_executor(context):
    execute = Mock(return_value=0)
    spec = cli.CommandSpec("alpha", "alpha help", Mock(), execute)
    args = argparse.Namespace(command="alpha")

    assert cli.dispatch_command(context, args, {"alpha": spec}) == 0
    execute.assert_called_once_with(context, args)

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="omega"), {"alpha": spec})


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_product_draft_parses_numbers():
    args = argparse.Namespace(
        name="Widget", category="Hardware", price_buy="2.00", price_sell=" 5.5 ", stock="10"
    )

    draft = cli.translate_product_draft(args)

    assert draft == core_logic.ProductDraft("Widget", "Hardware", Decimal("2.00"), Decimal("5.5"), 10)


@pytest.mark.parametrize(
    "field, value",
    [("price_buy", "two"), ("price_sell", ""), ("stock", "1.5")],
)
def test_translate_product_draft_rejects_non_numbers(field, value):
    values = {"name": "Widget", "category": "Hardware", "price_buy": "2", "price_sell": "5", "stock": "1"}
    values[field] = value

    with pytest.raises(core_logic.InvalidProduct):
        cli.translate_product_draft(argparse.Namespace(**values))


def test_translate_sell_validates_quantity():
    command = cli.translate_sell(argparse.Namespace(product_id="abc", quantity="4"))
    assert command == core_logic.SaleCommand("abc", 4)

    with pytest.raises(core_logic.InvalidQuantity):
        cli.translate_sell(argparse.Namespace(product_id="abc", quantity="0"))


def test_format_money_uses_two_decimals_and_grouping():
    assert cli.format_money(Decimal("1234.5")) == "$1,234.50"
    assert cli.format_money(Decimal("0")) == "$0.00"


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_sell_prints_receipt(context, widget, capsys):
    args = argparse.Namespace(product_id=widget.product_id, quantity="3")

    assert cli.run_sell(context, args) == 0

    output = capsys.readouterr().out
    assert "Sold 3 x Widget for $15.00 (profit $9.00)" in output
    assert core_logic.get_product(context, widget.product_id).stock == 7


def test_run_products_report_filters_and_marks_low_stock(context, widget, capsys):
    core_logic.add_product(context, core_logic.ProductDraft("Cable", "Electronics", Decimal("1"), Decimal("3"), 2))

    cli.run_products_report(context, argparse.Namespace(search="elec"))

    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    assert "Cable" in lines[0]
    assert lines[0].endswith("stock 2 (low)")


def test_run_products_report_without_matches(context, capsys):
    cli.run_products_report(context, argparse.Namespace(search=None))
    assert capsys.readouterr().out.strip() == "No products found."


def test_run_sales_report_lists_newest_first(context, widget, capsys):
    for day, quantity in ((1, 1), (2, 2)):
        core_logic.record_sale(
            context,
            core_logic.SaleCommand(widget.product_id, quantity, timestamp=datetime(2025, 7, day, 12, tzinfo=UTC)),
        )

    cli.run_sales_report(context, argparse.Namespace(limit=1))

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0] == "Showing last 1 transaction(s)"
    assert "x2" in lines[1]


def test_run_dashboard_report_prints_totals(context, widget, capsys):
    core_logic.record_sale(context, core_logic.SaleCommand(widget.product_id, 3))

    assert cli.run_dashboard_report(context, argparse.Namespace()) == 0

    output = capsys.readouterr().out
    assert "Total products : 1" in output
    assert "Total revenue  : $15.00" in output
    assert "Total profit   : $9.00" in output
    assert "All products are well stocked." in output


# ---------------------------------------------------------------------------
# Error handling and entry point
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.InsufficientStock("p", available=1, requested=2), 2),
        (core_logic.InvalidQuantity("bad"), 2),
        (core_logic.ProductNotFound("p"), 2),
        (StoreUnavailable("disk"), 3),
        (FileNotFoundError("config.ini"), 3),
        (TransactionConflict(5), 4),
        (RuntimeError("schema"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


def test_main_persists_mutations_and_reports_them(config_file, capsys):
    base = ["--config", str(config_file)]

    assert cli.main([*base, "add-product", *PRODUCT_ARGS]) == 0
    added = capsys.readouterr().out
    product_id = added.split("Added product ", 1)[1].split(":", 1)[0]

    assert cli.main([*base, "sell", "--product-id", product_id, "--quantity", "3"]) == 0
    assert cli.main([*base, "sell", "--product-id", product_id, "--quantity", "8"]) == 2
    capsys.readouterr()

    assert cli.main([*base, "products"]) == 0
    assert "stock 7" in capsys.readouterr().out

    assert cli.main([*base, "dashboard"]) == 0
    assert "Total revenue  : $15.00" in capsys.readouterr().out


def test_main_rejects_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="0.1.0")

    assert cli.main(["--config", str(bundle.config_path), "products"]) == 1


def test_main_missing_config_returns_io_exit_code(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "products"]) == 3


def test_main_does_not_persist_failed_mutations(config_file, monkeypatch):
    persist = Mock()
    monkeypatch.setattr(cli, "persist_store", persist)

    assert cli.main(["--config", str(config_file), "sell", "--product-id", "ghost", "--quantity", "1"]) == 2
    persist.assert_not_called()


def test_main_delete_unknown_product_is_a_business_error(config_file, monkeypatch):
    persist = Mock()
    monkeypatch.setattr(cli, "persist_store", persist)

    assert cli.main(["--config", str(config_file), "delete-product", "--product-id", "ghost"]) == 2
    persist.assert_not_called()


@pytest.mark.parametrize("limit", ["0", "-3", "ten"])
def test_sales_limit_must_be_a_positive_whole_number(limit):
    with pytest.raises(SystemExit):
        _parse(cli.register_sales_command, ["sales", "--limit", limit])


def test_main_reports_locked_workbook_as_io_error(config_factory):
    bundle = config_factory(lock_timeout=0.2)
    backend = data_manager.WorkbookBackend(bundle.workbook_path)

    with backend.locked():
        assert cli.main(["--config", str(bundle.config_path), "add-product", *PRODUCT_ARGS]) == 3
    assert cli.main(["--config", str(bundle.config_path), "add-product", *PRODUCT_ARGS]) == 0
