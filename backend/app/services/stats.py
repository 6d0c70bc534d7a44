"""Dashboard and sales statistics.

Periods (UTC):
  today  → since 00:00 today
  week   → the last 7 days
  month  → since the 1st of the current month

Results are cached in Redis under "stats:*"; ledger and expense writes
invalidate them.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.client import Client
from app.models.expense import Expense
from app.models.product import Product
from app.models.sale import Credit, CreditStatus, Sale
from app.utils.cache import cached
from app.utils.time import days_ago, start_of_day, start_of_month, utcnow


def _periods() -> dict[str, object]:
    now = utcnow()
    return {
        "today": start_of_day(now),
        "week": days_ago(7, now),
        "month": start_of_month(now),
    }


async def _sales_since(db: AsyncSession, since) -> tuple[float, int]:
    row = (
        await db.execute(
            select(func.coalesce(func.sum(Sale.total), 0), func.count(Sale.id))
            .where(Sale.sold_at >= since)
        )
    ).one()
    return float(row[0]), int(row[1])


@cached(ttl=settings.stats_cache_ttl, prefix="stats")
async def sales_stats(db: AsyncSession) -> dict:
    out = {}
    for name, since in _periods().items():
        total, count = await _sales_since(db, since)
        out[name] = {"total": total, "count": count}
    return out


@cached(ttl=settings.stats_cache_ttl, prefix="stats")
async def dashboard_stats(db: AsyncSession) -> dict:
    periods = _periods()
    month_start = periods["month"]

    sales_today, _ = await _sales_since(db, periods["today"])
    sales_week, _ = await _sales_since(db, periods["week"])
    sales_month, _ = await _sales_since(db, month_start)

    month_expenses = float((
        await db.execute(
            select(func.coalesce(func.sum(Expense.amount), 0))
            .where(Expense.spent_at >= month_start)
        )
    ).scalar_one())

    gross_profit = float((
        await db.execute(
            select(func.coalesce(
                func.sum((Sale.unit_price - Product.purchase_price) * Sale.quantity), 0
            ))
            .join(Product, Product.id == Sale.product_id)
            .where(Sale.sold_at >= month_start)
        )
    ).scalar_one())

    product_count, stock_value = (
        await db.execute(
            select(
                func.count(Product.id),
                func.coalesce(func.sum(Product.purchase_price * Product.stock), 0),
            )
        )
    ).one()
    low_stock = (
        await db.execute(
            select(func.count(Product.id)).where(Product.stock <= Product.stock_min)
        )
    ).scalar_one()

    client_count = (await db.execute(select(func.count(Client.id)))).scalar_one()

    open_credit = float((
        await db.execute(
            select(func.coalesce(func.sum(Credit.remaining_amount), 0))
            .where(Credit.status == CreditStatus.OPEN)
        )
    ).scalar_one())

    return {
        "sales_today": sales_today,
        "sales_week": sales_week,
        "sales_month": sales_month,
        "gross_profit": gross_profit,
        "net_profit": gross_profit - month_expenses,
        "product_count": int(product_count),
        "stock_value": float(stock_value),
        "low_stock_count": int(low_stock),
        "client_count": int(client_count),
        "open_credit": open_credit,
        "month_expenses": month_expenses,
    }
