"""Data access layer for StoreMaster.

This module provides low-level helpers that read from and write to the store
workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: creating, opening and persisting the Excel file.
3. Sheet operations: turning worksheet rows into versioned documents and back.
4. Record mapping: converting store documents into typed product and sale
   records, and records into document fields.
"""


from __future__ import annotations

import configparser
import os
import tempfile
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import filelock
import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    COLLECTION_SHEETS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_MAX_TRANSACTION_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    LOW_STOCK_THRESHOLD,
    Collection,
)
from .document_store import Document, StoreUnavailable


CONFIG_FILE_NAME = "config.ini"
PRODUCTS = Collection.PRODUCTS.value
SALES = Collection.SALES.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    max_transaction_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS
    retry_backoff: float = DEFAULT_RETRY_BACKOFF_SECONDS
    autosave: bool = False
    low_stock_threshold: int = LOW_STOCK_THRESHOLD
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ColumnSpec:
    """Describe how one worksheet column maps onto a document field."""

    header: str
    field: str
    kind: str


# The first two columns of every sheet carry the document id and version.
COLLECTION_COLUMNS: Mapping[str, Sequence[ColumnSpec]] = {
    PRODUCTS: (
        ColumnSpec("Name", "name", "text"),
        ColumnSpec("Category", "category", "text"),
        ColumnSpec("PriceBuy", "price_buy", "money"),
        ColumnSpec("PriceSell", "price_sell", "money"),
        ColumnSpec("Stock", "stock", "int"),
        ColumnSpec("CreatedAt", "created_at", "timestamp"),
    ),
    SALES: (
        ColumnSpec("ProductID", "product_id", "text"),
        ColumnSpec("ProductName", "product_name", "text"),
        ColumnSpec("Quantity", "quantity", "int"),
        ColumnSpec("TotalAmount", "total_amount", "money"),
        ColumnSpec("Profit", "profit", "money"),
        ColumnSpec("Date", "date", "timestamp"),
    ),
}

ID_HEADER = "DocumentID"
VERSION_HEADER = "Version"


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a product document."""

    product_id: str
    name: str
    category: str
    price_buy: Decimal
    price_sell: Decimal
    stock: int
    created_at: datetime


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a sale document."""

    sale_id: str
    product_id: str
    product_name: str
    quantity: int
    total_amount: Decimal
    profit: Decimal
    date: datetime


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. User home references (``~``) are expanded.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Validation happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Transactions]``, ``[Store]`` and
    ``[Reports]`` sections are optional and fall back to the package defaults.
    Relative ``DataFile`` paths are anchored to ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional numeric or boolean entry cannot be parsed or
            is out of range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_attempts = parser.getint(
        "Transactions", "MaxAttempts", fallback=DEFAULT_MAX_TRANSACTION_ATTEMPTS)
    retry_backoff = parser.getfloat(
        "Transactions", "RetryBackoff", fallback=DEFAULT_RETRY_BACKOFF_SECONDS)
    autosave = parser.getboolean("Store", "AutoSave", fallback=False)
    lock_timeout = parser.getfloat("Store", "LockTimeout", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    low_stock_threshold = parser.getint(
        "Reports", "LowStockThreshold", fallback=LOW_STOCK_THRESHOLD)

    if max_attempts < 1:
        raise ValueError("Transactions.MaxAttempts must be at least 1")
    if retry_backoff < 0:
        raise ValueError("Transactions.RetryBackoff must be zero or positive")
    if lock_timeout < 0:
        raise ValueError("Store.LockTimeout must be zero or positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        max_transaction_attempts=max_attempts,
        retry_backoff=retry_backoff,
        autosave=autosave,
        low_stock_threshold=low_stock_threshold,
        lock_timeout=lock_timeout,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def sheet_headers(collection: str) -> List[str]:
    """Return the header row expected on the sheet backing ``collection``."""
    columns = COLLECTION_COLUMNS[collection]
    return [ID_HEADER, VERSION_HEADER, *(column.header for column in columns)]


def new_store_workbook() -> Workbook:
    """Build an empty workbook with one bold-headed sheet per collection."""

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for collection, sheet_name in COLLECTION_SHEETS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, header in enumerate(sheet_headers(collection), start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = header
            cell.font = bold_font
    return workbook


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is written to a temporary file in the destination folder and
    then moved into place, so readers never observe a half-written file.
    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def iter_documents(workbook: Workbook, collection: str) -> Iterable[Document]:
    """Stream the documents stored on the sheet backing ``collection``.

    The header row is validated against :func:`sheet_headers` and fully empty
    rows are skipped.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        collection (str): Collection name, e.g. ``"products"``.

    Yields:
        Document: One versioned document per populated row.

    Raises:
        ValueError: If the header row does not match the expected layout or a
            row holds values that cannot be converted.
    """

    sheet = workbook[COLLECTION_SHEETS[collection]]
    headers = [cell.value for cell in sheet[1]]
    expected = sheet_headers(collection)
    if headers[: len(expected)] != expected:
        raise ValueError(
            f"Unexpected header on sheet '{sheet.title}': {headers!r} (expected {expected!r})")

    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        # skip fully empty rows
        if not any(cell is not None for cell in raw):
            continue
        try:
            yield deserialize_document(collection, raw)
        except (ValueError, TypeError, InvalidOperation) as exc:
            raise ValueError(f"Malformed row {row_idx} on sheet '{sheet.title}': {exc}") from exc


def write_documents(workbook: Workbook, collection: str, documents: Iterable[Document]) -> None:
    """Replace every data row of the collection sheet with ``documents``."""

    sheet = workbook[COLLECTION_SHEETS[collection]]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    # append() keeps counting from the pre-deletion row, so place cells explicitly.
    for row_idx, document in enumerate(documents, start=2):
        for column_idx, value in enumerate(serialize_document(collection, document), start=1):
            sheet.cell(row=row_idx, column=column_idx).value = value


def serialize_document(collection: str, document: Document) -> List[object]:
    """Convert a document into the worksheet column ordering.

    Timestamps are written as ISO 8601 strings; money stays
    :class:`~decimal.Decimal` so Excel keeps the precision.
    """

    values: List[object] = [document.id, document.version]
    for column in COLLECTION_COLUMNS[collection]:
        value = document.data.get(column.field)
        if column.kind == "timestamp" and value is not None:
            value = value.isoformat()
        values.append(value)
    return values


def deserialize_document(collection: str, raw_row: Sequence[object]) -> Document:
    """Convert a raw worksheet row into a versioned document.

    Args:
        collection (str): Collection whose column layout applies.
        raw_row (Sequence[object]): Raw cell values in worksheet order.

    Returns:
        Document: Document with normalized Python values: ``Decimal`` for
            money, ``int`` for counts and timezone-aware ``datetime`` for
            timestamps.
    """

    doc_id = raw_row[0]
    version_raw = raw_row[1]
    if doc_id is None:
        raise ValueError("missing document id")

    data: Dict[str, Any] = {}
    for offset, column in enumerate(COLLECTION_COLUMNS[collection], start=2):
        raw = raw_row[offset] if offset < len(raw_row) else None
        data[column.field] = _coerce_cell(column.kind, raw)

    version = int(version_raw) if version_raw is not None else 1
    return Document(id=str(doc_id), data=data, version=version)


def _coerce_cell(kind: str, raw: object) -> Any:
    if raw is None:
        return Decimal("0.00") if kind == "money" else None
    if kind == "text":
        return str(raw)
    if kind == "money":
        return Decimal(str(raw))
    if kind == "int":
        return int(raw)
    if kind == "timestamp":
        if isinstance(raw, datetime):
            return raw
        return datetime.fromisoformat(str(raw))
    raise ValueError(f"Unknown column kind: {kind}")


class WorkbookBackend:
    """:class:`~storemaster.document_store.StoreBackend` backed by a workbook.

    Every I/O failure is re-raised as
    :class:`~storemaster.document_store.StoreUnavailable` so callers only deal
    with the store's error taxonomy.

    Clients in other processes coordinate through a ``<workbook>.lock`` file
    next to the workbook; see :meth:`locked`.
    """

    def __init__(self, data_file: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self.lock_timeout = lock_timeout
        # Reentrant per instance; threads of one process are already serialized by the store.
        self._file_lock = filelock.FileLock(
            f"{self.data_file}.lock", timeout=lock_timeout, thread_local=False)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the workbook lock, waiting up to ``lock_timeout`` seconds.

        Raises:
            StoreUnavailable: If another client keeps the lock or the lock file
                cannot be created.
        """
        try:
            self._file_lock.acquire()
        except filelock.Timeout as exc:
            log.error("Timed out waiting for the lock on '%s'", self.data_file)
            raise StoreUnavailable(
                f"Store workbook '{self.data_file}' is locked by another client") from exc
        except OSError as exc:
            log.error("Unable to lock store workbook '%s': %s", self.data_file, exc)
            raise StoreUnavailable(f"Unable to lock store workbook '{self.data_file}': {exc}") from exc
        try:
            yield
        finally:
            self._file_lock.release()

    def load(self) -> Dict[str, Dict[str, Document]]:
        try:
            workbook = open_workbook(self.data_file)
            collections: Dict[str, Dict[str, Document]] = {}
            for collection in COLLECTION_SHEETS:
                collections[collection] = {
                    document.id: document for document in iter_documents(workbook, collection)
                }
        except (OSError, zipfile.BadZipFile, InvalidFileException, KeyError, ValueError) as exc:
            log.error("Unable to load store workbook '%s': %s", self.data_file, exc)
            raise StoreUnavailable(f"Unable to load store workbook '{self.data_file}': {exc}") from exc

        log.info(
            "Loaded %d product(s) and %d sale(s) from '%s'",
            len(collections[PRODUCTS]),
            len(collections[SALES]),
            self.data_file,
        )
        return collections

    def save(self, collections: Mapping[str, Mapping[str, Document]]) -> None:
        unknown = set(collections) - set(COLLECTION_SHEETS)
        if unknown:
            raise StoreUnavailable(f"No worksheet mapped for collection(s): {', '.join(sorted(unknown))}")
        try:
            if self.data_file.exists():
                workbook = open_workbook(self.data_file)
            else:
                workbook = new_store_workbook()
            for collection in COLLECTION_SHEETS:
                write_documents(workbook, collection, collections.get(collection, {}).values())
            save_workbook(workbook, self.data_file)
        except (OSError, zipfile.BadZipFile, InvalidFileException, KeyError) as exc:
            log.error("Unable to save store workbook '%s': %s", self.data_file, exc)
            raise StoreUnavailable(f"Unable to save store workbook '{self.data_file}': {exc}") from exc
        log.info("Persisted store workbook '%s'", self.data_file)


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> Dict[str, Any]:
    """Convert a product record into document fields (the id is not a field)."""

    return {
        "name": record.name,
        "category": record.category,
        "price_buy": record.price_buy,
        "price_sell": record.price_sell,
        "stock": record.stock,
        "created_at": record.created_at,
    }


def serialize_sale(record: SaleRow) -> Dict[str, Any]:
    """Convert a sale record into document fields (the id is not a field)."""

    return {
        "product_id": record.product_id,
        "product_name": record.product_name,
        "quantity": record.quantity,
        "total_amount": record.total_amount,
        "profit": record.profit,
        "date": record.date,
    }


def deserialize_product(document: Document) -> ProductRow:
    """Convert a product document into a strongly typed record.

    Numeric fields are normalized to ``Decimal``/``int`` so records built from
    freshly created documents and from reloaded worksheet rows compare equal.
    """

    data = document.data
    return ProductRow(
        product_id=document.id,
        name=str(data.get("name") or ""),
        category=str(data.get("category") or ""),
        price_buy=Decimal(str(data.get("price_buy", "0.00"))),
        price_sell=Decimal(str(data.get("price_sell", "0.00"))),
        stock=int(data.get("stock") or 0),
        created_at=data["created_at"],
    )


def deserialize_sale(document: Document) -> SaleRow:
    """Convert a sale document into a strongly typed record."""

    data = document.data
    return SaleRow(
        sale_id=document.id,
        product_id=str(data.get("product_id") or ""),
        product_name=str(data.get("product_name") or ""),
        quantity=int(data.get("quantity") or 0),
        total_amount=Decimal(str(data.get("total_amount", "0.00"))),
        profit=Decimal(str(data.get("profit", "0.00"))),
        date=data["date"],
    )
