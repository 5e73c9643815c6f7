"""Constants shared across StoreMaster modules.

Collection names, worksheet names and the numeric thresholds used by the
store, the sale engine and the dashboard readers live here so every layer
agrees on a single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Products with stock strictly below this value are reported as low stock.
LOW_STOCK_THRESHOLD = 5

DEFAULT_MAX_TRANSACTION_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF_SECONDS = 0.01
MAX_RETRY_BACKOFF_SECONDS = 1.0

# Seconds to wait for another client to release the workbook lock.
DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0

# Sales history page size shown by the sales report.
SALES_PAGE_SIZE = 50
RECENT_SALES_COUNT = 5
TREND_DAYS = 7

ZERO_MONEY = Decimal("0.00")


class Collection(str, Enum):
    """Enumerate the document collections held by the store."""

    PRODUCTS = "products"
    SALES = "sales"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names used to persist collections."""

    PRODUCTS = "Products"
    SALES = "Sales"


COLLECTION_SHEETS = {
    Collection.PRODUCTS.value: SheetName.PRODUCTS.value,
    Collection.SALES.value: SheetName.SALES.value,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "LOW_STOCK_THRESHOLD",
    "DEFAULT_MAX_TRANSACTION_ATTEMPTS",
    "DEFAULT_RETRY_BACKOFF_SECONDS",
    "MAX_RETRY_BACKOFF_SECONDS",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "SALES_PAGE_SIZE",
    "RECENT_SALES_COUNT",
    "TREND_DAYS",
    "ZERO_MONEY",
    "Collection",
    "SheetName",
    "COLLECTION_SHEETS",
]
