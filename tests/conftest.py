"""Shared pytest fixtures and utilities for StoreMaster tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from storemaster import cli, constants, core_logic, data_manager  # noqa: E402
from storemaster.document_store import DocumentStore  # noqa: E402
from storemaster.setup_workbook import create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Transactions]\n"
    "MaxAttempts = {max_attempts}\n"
    "RetryBackoff = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "store_data.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_store_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh, empty store workbook."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_attempts: int = 5,
        autosave: bool = False,
        lock_timeout: float | None = None,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                max_attempts=max_attempts,
            )
        )
        store_lines = []
        if autosave:
            store_lines.append("AutoSave = yes")
        if lock_timeout is not None:
            store_lines.append(f"LockTimeout = {lock_timeout}")
        if store_lines:
            with config_path.open("a") as handle:
                handle.write("\n[Store]\n" + "\n".join(store_lines) + "\n")
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "store_data.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        retry_backoff=0.0,
    )


@pytest.fixture
def store() -> DocumentStore:
    """Return an empty in-memory store with no backoff between retries."""

    return DocumentStore(
        [constants.Collection.PRODUCTS.value, constants.Collection.SALES.value],
        retry_backoff=0.0,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: DocumentStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=store)


@pytest.fixture
def widget_draft() -> core_logic.ProductDraft:
    """The reference product: buy 2.00, sell 5.00, ten in stock."""

    return core_logic.ProductDraft(
        name="Widget",
        category="Hardware",
        price_buy=Decimal("2.00"),
        price_sell=Decimal("5.00"),
        stock=10,
    )


@pytest.fixture
def widget(context: core_logic.RuntimeContext, widget_draft: core_logic.ProductDraft) -> data_manager.ProductRow:
    """Insert the reference product and return its record."""

    return core_logic.add_product(
        context,
        widget_draft,
        created_at=datetime(2025, 1, 2, 9, 30, tzinfo=UTC),
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="storemaster", description="StoreMaster CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
