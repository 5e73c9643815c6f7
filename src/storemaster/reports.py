"""Read-side aggregations behind the dashboard and sales reports.

Every helper here is a pure function over product and sale records, so the
numbers can be computed from any snapshot the caller already holds. Empty
inputs produce zero totals and empty lists rather than errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, tzinfo
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from . import core_logic, log
from .constants import LOW_STOCK_THRESHOLD, RECENT_SALES_COUNT, TREND_DAYS, ZERO_MONEY
from .data_manager import ProductRow, SaleRow


@dataclass(frozen=True)
class DailySales:
    """Revenue and profit accumulated on one calendar day."""

    day: date
    sales: Decimal
    profit: Decimal


@dataclass(frozen=True)
class DashboardStats:
    """Headline counters shown at the top of the dashboard."""

    total_products: int
    total_revenue: Decimal
    total_profit: Decimal
    low_stock_count: int


@dataclass(frozen=True)
class DashboardReport:
    """Everything the dashboard needs, computed from one read of the store."""

    stats: DashboardStats
    low_stock: List[ProductRow] = field(default_factory=list)
    recent_sales: List[SaleRow] = field(default_factory=list)
    daily: List[DailySales] = field(default_factory=list)


def total_products(products: Sequence[ProductRow]) -> int:
    return len(products)


def summarize_sales(sales: Sequence[SaleRow]) -> Dict[str, Decimal]:
    """Sum revenue and profit across ``sales``.

    Returns:
        dict[str, Decimal]: ``total_revenue`` and ``total_profit``.
    """
    total_revenue = ZERO_MONEY
    total_profit = ZERO_MONEY
    for sale in sales:
        total_revenue += sale.total_amount
        total_profit += sale.profit
    return {"total_revenue": total_revenue, "total_profit": total_profit}


def low_stock_products(products: Sequence[ProductRow], threshold: int = LOW_STOCK_THRESHOLD) -> List[ProductRow]:
    """Return the products whose stock is strictly below ``threshold``."""
    return [product for product in products if product.stock < threshold]


def recent_sales(sales: Sequence[SaleRow], count: int = RECENT_SALES_COUNT) -> List[SaleRow]:
    """Return the ``count`` most recent sales, newest first."""
    ordered = sorted(sales, key=lambda sale: sale.date, reverse=True)
    return ordered[:count]


def daily_revenue(sales: Sequence[SaleRow], *, tz: Optional[tzinfo] = None, days: int = TREND_DAYS) -> List[DailySales]:
    """Bucket sales by calendar day for the trend chart.

    Each sale's timestamp is converted to ``tz`` (the machine's local zone
    when ``None``) before taking its date, so a sale just after local midnight
    lands on the day the shop saw it.

    Args:
        sales (Sequence[SaleRow]): Sales in any order.
        tz (tzinfo | None): Zone that defines calendar days.
        days (int): Number of most recent days with sales to keep.

    Returns:
        list[DailySales]: Buckets in chronological order, at most ``days``
            long. Days without sales are not padded in.
    """
    buckets: Dict[date, List[Decimal]] = {}
    for sale in sorted(sales, key=lambda item: item.date):
        day = sale.date.astimezone(tz).date()
        totals = buckets.setdefault(day, [ZERO_MONEY, ZERO_MONEY])
        totals[0] += sale.total_amount
        totals[1] += sale.profit

    selected = sorted(buckets.items())[-days:] if days > 0 else []
    return [DailySales(day=day, sales=totals[0], profit=totals[1]) for day, totals in selected]


def compute_dashboard(
    products: Sequence[ProductRow],
    sales: Sequence[SaleRow],
    *,
    low_stock_threshold: int = LOW_STOCK_THRESHOLD,
    tz: Optional[tzinfo] = None,
) -> DashboardReport:
    """Assemble a :class:`DashboardReport` from already loaded records."""
    summary = summarize_sales(sales)
    low_stock = low_stock_products(products, low_stock_threshold)
    stats = DashboardStats(
        total_products=total_products(products),
        total_revenue=summary["total_revenue"],
        total_profit=summary["total_profit"],
        low_stock_count=len(low_stock),
    )
    return DashboardReport(
        stats=stats,
        low_stock=low_stock,
        recent_sales=recent_sales(sales),
        daily=daily_revenue(sales, tz=tz),
    )


def build_dashboard(context: core_logic.RuntimeContext, *, tz: Optional[tzinfo] = None) -> DashboardReport:
    """Read products and sales from the store and aggregate them."""
    products = core_logic.list_products(context)
    sales = core_logic.list_sales(context)
    report = compute_dashboard(
        products,
        sales,
        low_stock_threshold=context.settings.low_stock_threshold,
        tz=tz,
    )
    log.debug(
        "Built dashboard: products=%d revenue=%s profit=%s low_stock=%d",
        report.stats.total_products,
        report.stats.total_revenue,
        report.stats.total_profit,
        report.stats.low_stock_count,
    )
    return report
