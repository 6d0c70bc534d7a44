"""Statistics router.

Endpoints:
    GET /api/stats/dashboard   Sales, profit, stock and credit overview
    GET /api/stats/sales       Sales totals for today / last 7 days / this month
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import require_permission
from app.auth.permissions import STATS_READ
from app.database import get_db
from app.models.user import User
from app.schemas.common import ApiResponse, ok
from app.schemas.sale import SalesStats
from app.schemas.stats import DashboardStats
from app.services.stats import dashboard_stats, sales_stats

router = APIRouter()


@router.get("/dashboard", response_model=ApiResponse[DashboardStats])
async def get_dashboard(
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(STATS_READ)),
):
    return ok(DashboardStats.model_validate(await dashboard_stats(db)))


@router.get("/sales", response_model=ApiResponse[SalesStats])
async def get_sales(
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(STATS_READ)),
):
    return ok(SalesStats.model_validate(await sales_stats(db)))
