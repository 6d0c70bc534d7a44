"""Credits router.

Endpoints:
    GET   /api/credits/           List credits (filters: status, client)
    GET   /api/credits/{id}       Single credit with client name and phone
    PATCH /api/credits/{id}/pay   Record a full or partial payment
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import get_ledger, require_permission
from app.auth.permissions import CREDITS_PAY, CREDITS_READ
from app.database import get_db
from app.middleware.exceptions import ResourceNotFoundError
from app.models.client import Client
from app.models.sale import Credit, CreditStatus
from app.models.user import User
from app.schemas.common import ApiResponse, ok, ok_list
from app.schemas.sale import CreditDetail, CreditOut, CreditPayment
from app.services.ledger import LedgerService

router = APIRouter()


def _to_detail(credit: Credit, client_name: str | None, client_phone: str | None) -> CreditDetail:
    return CreditDetail(
        **CreditOut.model_validate(credit).model_dump(),
        client_name=client_name,
        client_phone=client_phone,
    )


def _detail_query():
    return select(Credit, Client.name, Client.phone).outerjoin(
        Client, Client.id == Credit.client_id
    )


@router.get("/", response_model=ApiResponse[list[CreditDetail]])
async def list_credits(
    status: CreditStatus | None = None,
    client_id: str | None = None,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CREDITS_READ)),
):
    query = _detail_query()
    if status:
        query = query.where(Credit.status == status)
    if client_id:
        query = query.where(Credit.client_id == client_id)

    rows = (await db.execute(query.order_by(Credit.created_at.desc()))).all()
    return ok_list([_to_detail(*row) for row in rows])


@router.get("/{credit_id}", response_model=ApiResponse[CreditDetail])
async def get_credit(
    credit_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CREDITS_READ)),
):
    row = (await db.execute(_detail_query().where(Credit.id == credit_id))).first()
    if row is None:
        raise ResourceNotFoundError("Credit", credit_id)
    return ok(_to_detail(*row))


@router.patch("/{credit_id}/pay", response_model=ApiResponse[CreditOut])
async def pay_credit(
    credit_id: str,
    body: CreditPayment | None = None,
    ledger: LedgerService = Depends(get_ledger),
    _user: User = Depends(require_permission(CREDITS_PAY)),
):
    """Pay `amount` off the credit; without an amount the whole remainder is paid."""
    credit = await ledger.pay_credit(credit_id, body.amount if body else None)
    message = "Credit fully paid" if credit.status == CreditStatus.PAID else "Payment recorded"
    return ok(CreditOut.model_validate(credit), message=message)
