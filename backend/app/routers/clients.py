"""Client management router.

Endpoints:
    GET    /api/clients/             List clients with sale / credit counts
    GET    /api/clients/{id}         Client with recent sales and open credits
    GET    /api/clients/{id}/stats   Purchase and open credit counts
    POST   /api/clients/             Create client
    PUT    /api/clients/{id}         Update client
    DELETE /api/clients/{id}         Delete client (refused with open credits)
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import require_permission
from app.auth.permissions import CLIENTS_CREATE, CLIENTS_DELETE, CLIENTS_READ, CLIENTS_UPDATE
from app.database import get_db
from app.middleware.exceptions import BusinessLogicError, ConflictError, ResourceNotFoundError
from app.models.client import Client
from app.models.sale import Credit, CreditStatus, Sale
from app.models.user import User
from app.schemas.client import (
    ClientCreate,
    ClientDetail,
    ClientOut,
    ClientStats,
    ClientSummary,
    ClientUpdate,
)
from app.schemas.common import ApiResponse, ok, ok_list
from app.schemas.sale import CreditOut, SaleOut
from app.utils.cache import invalidate_cache

router = APIRouter()

RECENT_SALES_LIMIT = 10


async def _get_client(db: AsyncSession, client_id: str) -> Client:
    client = await db.get(Client, client_id)
    if not client:
        raise ResourceNotFoundError("Client", client_id)
    return client


async def _phone_taken(db: AsyncSession, phone: str, exclude_id: str | None = None) -> bool:
    query = select(Client.id).where(Client.phone == phone)
    if exclude_id:
        query = query.where(Client.id != exclude_id)
    return (await db.execute(query)).scalar_one_or_none() is not None


async def _open_credit_count(db: AsyncSession, client_id: str) -> int:
    return (
        await db.execute(
            select(func.count(Credit.id)).where(
                Credit.client_id == client_id, Credit.status == CreditStatus.OPEN
            )
        )
    ).scalar_one()


@router.get("/", response_model=ApiResponse[list[ClientSummary]])
async def list_clients(
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CLIENTS_READ)),
):
    """List clients by name, each with its number of sales and credits."""
    sale_counts = (
        select(Sale.client_id, func.count(Sale.id).label("n"))
        .group_by(Sale.client_id)
        .subquery()
    )
    credit_counts = (
        select(Credit.client_id, func.count(Credit.id).label("n"))
        .group_by(Credit.client_id)
        .subquery()
    )
    query = (
        select(
            Client,
            func.coalesce(sale_counts.c.n, 0),
            func.coalesce(credit_counts.c.n, 0),
        )
        .outerjoin(sale_counts, sale_counts.c.client_id == Client.id)
        .outerjoin(credit_counts, credit_counts.c.client_id == Client.id)
    )
    if search:
        pattern = f"%{search}%"
        query = query.where(Client.name.ilike(pattern) | Client.phone.ilike(pattern))

    rows = (await db.execute(query.order_by(Client.name))).all()
    return ok_list([
        ClientSummary(
            **ClientOut.model_validate(client).model_dump(),
            sale_count=sales,
            credit_count=credits,
        )
        for client, sales, credits in rows
    ])


@router.get("/{client_id}", response_model=ApiResponse[ClientDetail])
async def get_client(
    client_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CLIENTS_READ)),
):
    client = await _get_client(db, client_id)
    sales = (
        await db.execute(
            select(Sale)
            .where(Sale.client_id == client.id)
            .order_by(Sale.sold_at.desc())
            .limit(RECENT_SALES_LIMIT)
        )
    ).scalars().all()
    credits = (
        await db.execute(
            select(Credit)
            .where(Credit.client_id == client.id, Credit.status == CreditStatus.OPEN)
            .order_by(Credit.created_at.desc())
        )
    ).scalars().all()
    return ok(ClientDetail(
        **ClientOut.model_validate(client).model_dump(),
        recent_sales=[SaleOut.model_validate(s) for s in sales],
        open_credits=[CreditOut.model_validate(c) for c in credits],
    ))


@router.get("/{client_id}/stats", response_model=ApiResponse[ClientStats])
async def get_client_stats(
    client_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CLIENTS_READ)),
):
    client = await _get_client(db, client_id)
    purchases = (
        await db.execute(select(func.count(Sale.id)).where(Sale.client_id == client.id))
    ).scalar_one()
    return ok(ClientStats(
        client=ClientOut.model_validate(client),
        purchase_count=purchases,
        open_credit_count=await _open_credit_count(db, client.id),
    ))


@router.post("/", response_model=ApiResponse[ClientOut], status_code=status.HTTP_201_CREATED)
async def create_client(
    body: ClientCreate,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CLIENTS_CREATE)),
):
    if await _phone_taken(db, body.phone):
        raise ConflictError(f"A client with phone {body.phone} already exists")

    client = Client(**body.model_dump())
    db.add(client)
    await db.commit()
    await invalidate_cache("stats:*")
    return ok(ClientOut.model_validate(client), message="Client created")


@router.put("/{client_id}", response_model=ApiResponse[ClientOut])
async def update_client(
    client_id: str,
    body: ClientUpdate,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CLIENTS_UPDATE)),
):
    """Update contact details. Balances move only through sales and payments."""
    client = await _get_client(db, client_id)
    updates = body.model_dump(exclude_unset=True)

    if "phone" in updates and await _phone_taken(db, updates["phone"], exclude_id=client.id):
        raise ConflictError(f"A client with phone {updates['phone']} already exists")

    for key, value in updates.items():
        setattr(client, key, value)
    await db.flush()
    await db.refresh(client)
    return ok(ClientOut.model_validate(client), message="Client updated")


@router.delete("/{client_id}", response_model=ApiResponse[None])
async def delete_client(
    client_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(CLIENTS_DELETE)),
):
    client = await _get_client(db, client_id)
    open_credits = await _open_credit_count(db, client.id)
    if open_credits:
        raise BusinessLogicError(
            f"Client has {open_credits} open credit(s)",
            error_code="CLIENT_HAS_OPEN_CREDITS",
        )

    has_history = (
        await db.execute(select(func.count(Sale.id)).where(Sale.client_id == client.id))
    ).scalar_one() or (
        await db.execute(select(func.count(Credit.id)).where(Credit.client_id == client.id))
    ).scalar_one()
    if has_history:
        raise BusinessLogicError(
            "Client has recorded sales or credits and cannot be deleted",
            error_code="CLIENT_HAS_HISTORY",
        )

    await db.delete(client)
    await db.commit()
    await invalidate_cache("stats:*")
    return ok(message="Client deleted")
