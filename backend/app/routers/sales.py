"""Sales router.

Endpoints:
    GET    /api/sales/         List sales (filters: date range, client, product, type)
    GET    /api/sales/stats    Totals for today / last 7 days / this month
    GET    /api/sales/{id}     Single sale with product and client names
    POST   /api/sales/         Record a sale (cash or credit)
    DELETE /api/sales/{id}     Cancel a sale and reverse its effects
"""

from datetime import datetime

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import get_ledger, require_permission
from app.auth.permissions import SALES_CREATE, SALES_DELETE, SALES_READ
from app.database import get_db
from app.middleware.exceptions import ResourceNotFoundError
from app.models.client import Client
from app.models.product import Product
from app.models.sale import Sale, SaleType
from app.models.user import User
from app.schemas.common import ApiResponse, ok, ok_list
from app.schemas.sale import (
    CreditOut,
    SaleCreate,
    SaleCreated,
    SaleDetail,
    SaleOut,
    SalesStats,
)
from app.services.ledger import LedgerService
from app.services.stats import sales_stats

router = APIRouter()


def _detail_query():
    return (
        select(Sale, Product.name, Client.name)
        .outerjoin(Product, Product.id == Sale.product_id)
        .outerjoin(Client, Client.id == Sale.client_id)
    )


def _to_detail(sale: Sale, product_name: str | None, client_name: str | None) -> SaleDetail:
    return SaleDetail(
        **SaleOut.model_validate(sale).model_dump(),
        product_name=product_name,
        client_name=client_name,
    )


@router.get("/", response_model=ApiResponse[list[SaleDetail]])
async def list_sales(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    client_id: str | None = None,
    product_id: str | None = None,
    sale_type: SaleType | None = None,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(SALES_READ)),
):
    """List sales, newest first."""
    query = _detail_query()
    if start_date:
        query = query.where(Sale.sold_at >= start_date)
    if end_date:
        query = query.where(Sale.sold_at <= end_date)
    if client_id:
        query = query.where(Sale.client_id == client_id)
    if product_id:
        query = query.where(Sale.product_id == product_id)
    if sale_type:
        query = query.where(Sale.sale_type == sale_type)

    rows = (await db.execute(query.order_by(Sale.sold_at.desc()))).all()
    return ok_list([_to_detail(*row) for row in rows])


@router.get("/stats", response_model=ApiResponse[SalesStats])
async def get_sales_stats(
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(SALES_READ)),
):
    return ok(SalesStats.model_validate(await sales_stats(db)))


@router.get("/{sale_id}", response_model=ApiResponse[SaleDetail])
async def get_sale(
    sale_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(SALES_READ)),
):
    row = (await db.execute(_detail_query().where(Sale.id == sale_id))).first()
    if row is None:
        raise ResourceNotFoundError("Sale", sale_id)
    return ok(_to_detail(*row))


@router.post("/", response_model=ApiResponse[SaleCreated], status_code=status.HTTP_201_CREATED)
async def create_sale(
    body: SaleCreate,
    ledger: LedgerService = Depends(get_ledger),
    _user: User = Depends(require_permission(SALES_CREATE)),
):
    """Record a sale. A credit sale also opens a credit for the client."""
    result = await ledger.create_sale(
        product_id=body.product_id,
        quantity=body.quantity,
        sale_type=body.sale_type,
        client_id=body.client_id,
    )
    return ok(
        SaleCreated(
            sale=SaleOut.model_validate(result.sale),
            credit=CreditOut.model_validate(result.credit) if result.credit else None,
        ),
        message="Sale recorded",
    )


@router.delete("/{sale_id}", response_model=ApiResponse[None])
async def cancel_sale(
    sale_id: str,
    ledger: LedgerService = Depends(get_ledger),
    _user: User = Depends(require_permission(SALES_DELETE)),
):
    await ledger.cancel_sale(sale_id)
    return ok(message="Sale cancelled")
