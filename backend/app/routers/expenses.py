"""Expenses router.

Endpoints:
    GET    /api/expenses/        List expenses (filters: date range, category)
    GET    /api/expenses/{id}    Single expense
    POST   /api/expenses/        Record an expense
    DELETE /api/expenses/{id}    Delete an expense
"""

from datetime import datetime

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import require_permission
from app.auth.permissions import EXPENSES_CREATE, EXPENSES_DELETE, EXPENSES_READ
from app.database import get_db
from app.middleware.exceptions import ResourceNotFoundError
from app.models.expense import Expense
from app.models.user import User
from app.schemas.common import ApiResponse, ok, ok_list
from app.schemas.expense import ExpenseCreate, ExpenseOut
from app.utils.cache import invalidate_cache
from app.utils.time import utcnow

router = APIRouter()


async def _get_expense(db: AsyncSession, expense_id: str) -> Expense:
    expense = await db.get(Expense, expense_id)
    if not expense:
        raise ResourceNotFoundError("Expense", expense_id)
    return expense


@router.get("/", response_model=ApiResponse[list[ExpenseOut]])
async def list_expenses(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    category: str | None = None,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(EXPENSES_READ)),
):
    """List expenses, most recent first."""
    query = select(Expense)
    if start_date:
        query = query.where(Expense.spent_at >= start_date)
    if end_date:
        query = query.where(Expense.spent_at <= end_date)
    if category:
        query = query.where(Expense.category == category)

    result = await db.execute(query.order_by(Expense.spent_at.desc()))
    return ok_list([ExpenseOut.model_validate(e) for e in result.scalars().all()])


@router.get("/{expense_id}", response_model=ApiResponse[ExpenseOut])
async def get_expense(
    expense_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(EXPENSES_READ)),
):
    return ok(ExpenseOut.model_validate(await _get_expense(db, expense_id)))


@router.post("/", response_model=ApiResponse[ExpenseOut], status_code=status.HTTP_201_CREATED)
async def create_expense(
    body: ExpenseCreate,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(EXPENSES_CREATE)),
):
    expense = Expense(
        description=body.description,
        amount=body.amount,
        category=body.category,
        spent_at=body.spent_at or utcnow(),
    )
    db.add(expense)
    await db.commit()
    await invalidate_cache("stats:*")
    return ok(ExpenseOut.model_validate(expense), message="Expense recorded")


@router.delete("/{expense_id}", response_model=ApiResponse[None])
async def delete_expense(
    expense_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(EXPENSES_DELETE)),
):
    expense = await _get_expense(db, expense_id)
    await db.delete(expense)
    await db.commit()
    await invalidate_cache("stats:*")
    return ok(message="Expense deleted")
