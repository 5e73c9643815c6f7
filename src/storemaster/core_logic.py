"""Business logic layer for StoreMaster.

This module holds the inventory-sale consistency engine and the
administrative product workflows. It consumes the document store for all
reads and writes while ensuring every mutation passes through the domain
rules: stock never goes negative, sales snapshot the product at sale time, and
a stock decrement and its sale record are committed together or not at all.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, Collection
from .document_store import (
    DocumentNotFound,
    DocumentStore,
    ErrorCallback,
    Subscription,
    Transaction,
)


PRODUCTS = Collection.PRODUCTS.value
SALES = Collection.SALES.value


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced document is unknown."""


class ProductNotFound(MissingReferenceError):
    """Raised when a product id does not resolve to a stored product."""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Unknown product id: {product_id}")
        self.product_id = product_id


class InsufficientStock(BusinessRuleViolation):
    """Raised when a sale asks for more units than the product holds."""

    def __init__(self, product_id: str, *, available: int, requested: int) -> None:
        super().__init__(f"Not enough stock. Only {available} available.")
        self.product_id = product_id
        self.available = available
        self.requested = requested


class InvalidQuantity(BusinessRuleViolation, ValueError):
    """Raised when a sale quantity is not a positive integer."""


class InvalidProduct(BusinessRuleViolation, ValueError):
    """Raised when product fields fail validation."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the document store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: DocumentStore


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling ``quantity`` units of a product."""

    product_id: str
    quantity: int
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ProductDraft:
    """Editable product fields as entered by an administrator."""

    name: str
    category: str
    price_buy: Decimal
    price_sell: Decimal
    stock: int


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def open_store(
    settings: data_manager.ConfigSettings,
    backend: Optional[data_manager.WorkbookBackend] = None,
) -> DocumentStore:
    """Open the workbook-backed document store described by ``settings``."""
    if backend is None:
        backend = data_manager.WorkbookBackend(settings.data_file, lock_timeout=settings.lock_timeout)
    return DocumentStore.open(
        backend,
        max_attempts=settings.max_transaction_attempts,
        retry_backoff=settings.retry_backoff,
        autosave=settings.autosave,
    )


def load_settings(config_path: Optional[Path] = None) -> data_manager.ConfigSettings:
    """Locate, read and parse ``config.ini``.

    Relative ``DataFile`` entries resolve against the directory holding the
    configuration file.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    return data_manager.parse_settings(parser, base_path=resolved_config.parent)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the document store for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        StoreUnavailable: If the store workbook cannot be loaded.
    """
    settings = load_settings(config_path)
    store = open_store(settings)
    log.info("Loaded runtime context for store '%s' (%s)", settings.store_name, settings.data_file)
    return RuntimeContext(settings=settings, store=store)


@contextmanager
def locked_runtime_context(config_path: Optional[Path] = None) -> Iterator[RuntimeContext]:
    """Like :func:`load_runtime_context`, holding the workbook lock throughout.

    Other clients wait for the lock before they load or save, so a
    read-modify-persist cycle run inside the ``with`` block cannot interleave
    with theirs.

    Raises:
        StoreUnavailable: If the lock is not released within
            ``Store.LockTimeout`` seconds or the workbook cannot be loaded.
    """
    settings = load_settings(config_path)
    backend = data_manager.WorkbookBackend(settings.data_file, lock_timeout=settings.lock_timeout)
    with backend.locked():
        store = open_store(settings, backend)
        log.info("Locked runtime context for store '%s' (%s)", settings.store_name, settings.data_file)
        yield RuntimeContext(settings=settings, store=store)



def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product ordered by name."""
    documents = context.store.query(PRODUCTS, order_by="name")
    return [data_manager.deserialize_product(document) for document in documents]


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        ProductNotFound: If ``product_id`` is absent from the store.
    """
    try:
        document = context.store.get(PRODUCTS, product_id)
    except DocumentNotFound as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise ProductNotFound(product_id) from exc
    return data_manager.deserialize_product(document)


def list_sales(context: RuntimeContext, *, limit: Optional[int] = None) -> List[data_manager.SaleRow]:
    """Return sales, most recent first, optionally capped at ``limit`` rows."""
    documents = context.store.query(SALES, order_by="date", descending=True, limit=limit)
    return [data_manager.deserialize_sale(document) for document in documents]


def watch_products(
    context: RuntimeContext,
    callback: Callable[[List[data_manager.ProductRow]], None],
    *,
    on_error: Optional[ErrorCallback] = None,
) -> Subscription:
    """Subscribe to the product list ordered by name.

    ``callback`` receives the full, typed product list immediately and again
    after every committed change to the ``products`` collection. Call
    ``unsubscribe()`` on the returned handle to stop the updates.
    """

    def _deliver(documents):
        callback([data_manager.deserialize_product(document) for document in documents])

    return context.store.subscribe(PRODUCTS, _deliver, order_by="name", on_error=on_error)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: object) -> int:
    """Validate that a sale quantity is a strictly positive integer.

    Args:
        quantity (object): Quantity supplied by a command object.

    Returns:
        int: The validated quantity.

    Raises:
        InvalidQuantity: If ``quantity`` is not an ``int`` (booleans are
            rejected too) or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not an integer", quantity)
        raise InvalidQuantity(f"Quantity must be a whole number, got {quantity!r}")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidQuantity("Quantity must be greater than zero")
    return quantity


def parse_quantity(raw: str) -> int:
    """Turn user-entered text into a validated sale quantity.

    Raises:
        InvalidQuantity: If ``raw`` is not a positive whole number.
    """
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise InvalidQuantity(f"Invalid quantity: {raw!r}") from exc
    return require_positive_quantity(value)


def require_nonnegative_money(amount: Decimal, *, label: str = "Amount") -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        InvalidProduct: If ``amount`` is not a finite decimal or is below zero.
    """
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise InvalidProduct(f"{label} must be a decimal amount, got {amount!r}")
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s=%s", label, amount)
        raise InvalidProduct(f"{label} must be zero or positive")


def validate_product_draft(draft: ProductDraft) -> None:
    """Check every administrator-supplied product field.

    Names and categories must contain visible text, prices must be non-negative
    decimals and stock a non-negative integer.

    Raises:
        InvalidProduct: On the first failing field.
    """
    if not draft.name or not draft.name.strip():
        raise InvalidProduct("Product name must not be empty")
    if not draft.category or not draft.category.strip():
        raise InvalidProduct("Product category must not be empty")
    require_nonnegative_money(draft.price_buy, label="Buy price")
    require_nonnegative_money(draft.price_sell, label="Sell price")
    if isinstance(draft.stock, bool) or not isinstance(draft.stock, int):
        raise InvalidProduct(f"Stock must be a whole number, got {draft.stock!r}")
    if draft.stock < 0:
        raise InvalidProduct("Stock must be zero or positive")


# ---------------------------------------------------------------------------
# Administrative product workflows
# ---------------------------------------------------------------------------


def add_product(context: RuntimeContext, draft: ProductDraft, *, created_at: Optional[datetime] = None) -> data_manager.ProductRow:
    """Validate and insert a new product; the store assigns its id.

    Raises:
        InvalidProduct: If any field fails validation.
    """
    validate_product_draft(draft)
    record = data_manager.ProductRow(
        product_id="",
        name=draft.name.strip(),
        category=draft.category.strip(),
        price_buy=draft.price_buy,
        price_sell=draft.price_sell,
        stock=draft.stock,
        created_at=_resolve_timestamp(created_at),
    )
    product_id = context.store.create(PRODUCTS, data_manager.serialize_product(record))
    log.info("Added product '%s' (%s) with stock %d", record.name, product_id, record.stock)
    return replace(record, product_id=product_id)


def update_product(context: RuntimeContext, product_id: str, draft: ProductDraft) -> data_manager.ProductRow:
    """Overwrite an existing product with the edited fields.

    The whole document is rewritten, so any sale transaction that read the
    product concurrently fails its version check and re-reads. ``created_at``
    is carried over from the stored document.

    Raises:
        InvalidProduct: If any field fails validation.
        ProductNotFound: If ``product_id`` does not exist.
    """
    validate_product_draft(draft)

    def _rewrite(transaction: Transaction) -> data_manager.ProductRow:
        try:
            current = data_manager.deserialize_product(transaction.get(PRODUCTS, product_id))
        except DocumentNotFound as exc:
            raise ProductNotFound(product_id) from exc
        record = replace(
            current,
            name=draft.name.strip(),
            category=draft.category.strip(),
            price_buy=draft.price_buy,
            price_sell=draft.price_sell,
            stock=draft.stock,
        )
        transaction.set(PRODUCTS, product_id, data_manager.serialize_product(record))
        return record

    try:
        record = context.store.run_transaction(_rewrite)
    except ProductNotFound:
        log.warning("Attempted edit of unknown product '%s'", product_id)
        raise
    log.info("Updated product '%s' (%s)", record.name, product_id)
    return record


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product. Past sales keep their snapshot and are not touched.

    Raises:
        ProductNotFound: If ``product_id`` does not exist.
    """

    def _remove(transaction: Transaction) -> None:
        try:
            transaction.get(PRODUCTS, product_id)
        except DocumentNotFound as exc:
            raise ProductNotFound(product_id) from exc
        transaction.delete(PRODUCTS, product_id)

    try:
        context.store.run_transaction(_remove)
    except ProductNotFound:
        log.warning("Attempted delete of unknown product '%s'", product_id)
        raise
    log.info("Deleted product '%s'", product_id)



# ---------------------------------------------------------------------------
# Sale transaction engine
# ---------------------------------------------------------------------------


def build_sale(product: data_manager.ProductRow, quantity: int, *, timestamp: datetime) -> data_manager.SaleRow:
    """Materialize a sale from a product snapshot.

    Amounts are derived from the snapshot only, never from caller-supplied
    prices, so a sale always reflects the prices that were current when the
    stock was decremented.

    Args:
        product (data_manager.ProductRow): Product as read inside the
            transaction.
        quantity (int): Validated positive quantity.
        timestamp (datetime): Sale timestamp.

    Returns:
        data_manager.SaleRow: Sale record without an id yet.
    """
    return data_manager.SaleRow(
        sale_id="",
        product_id=product.product_id,
        product_name=product.name,
        quantity=quantity,
        total_amount=product.price_sell * quantity,
        profit=(product.price_sell - product.price_buy) * quantity,
        date=timestamp,
    )


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Atomically decrement stock and record the matching sale.

    The product is re-read inside the store transaction, the stock check uses
    that value, and both the stock update and the new sale document are staged
    in the same transaction. If another writer touches the product before the
    commit, the store re-runs the whole read-check-write cycle.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (SaleCommand): Product id and quantity to sell.

    Returns:
        data_manager.SaleRow: The committed sale, including its new id.

    Raises:
        InvalidQuantity: If the quantity is not a positive integer.
        ProductNotFound: If the product does not exist.
        InsufficientStock: If the product holds fewer units than requested.
        TransactionConflict: If the store gave up after repeated conflicts.
        StoreUnavailable: If the backend failed while persisting.
    """
    quantity = require_positive_quantity(command.quantity)

    def _sell(transaction: Transaction) -> data_manager.SaleRow:
        try:
            document = transaction.get(PRODUCTS, command.product_id)
        except DocumentNotFound as exc:
            raise ProductNotFound(command.product_id) from exc
        product = data_manager.deserialize_product(document)

        new_stock = product.stock - quantity
        if new_stock < 0:
            raise InsufficientStock(product.product_id, available=product.stock, requested=quantity)

        transaction.update(PRODUCTS, product.product_id, {"stock": new_stock})
        sale = build_sale(product, quantity, timestamp=_resolve_timestamp(command.timestamp))
        sale_id = transaction.create(SALES, data_manager.serialize_sale(sale))
        return replace(sale, sale_id=sale_id)

    try:
        sale = context.store.run_transaction(_sell)
    except ProductNotFound:
        log.warning("Attempted sale of unknown product '%s'", command.product_id)
        raise
    except InsufficientStock as exc:
        log.warning(
            "Rejected sale of %d unit(s) of '%s': only %d available",
            exc.requested,
            exc.product_id,
            exc.available,
        )
        raise

    log.info(
        "Recorded sale '%s' for product '%s' (quantity=%d, total=%s, profit=%s)",
        sale.sale_id,
        sale.product_id,
        sale.quantity,
        sale.total_amount,
        sale.profit,
    )
    return sale


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def persist_context(context: RuntimeContext) -> None:
    """Flush the store to its workbook backend.

    Raises:
        StoreUnavailable: If the workbook cannot be written.
    """
    context.store.flush()
    log.info("Persisted store '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the store from disk, discarding unsaved in-memory changes.

    Returns:
        RuntimeContext: Fresh context with a newly loaded store. Subscriptions
            registered on the old store are not carried over.
    """
    store = open_store(context.settings)
    log.info("Reloaded store '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store)
