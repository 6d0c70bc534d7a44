"""Product catalog router.

Endpoints:
    GET    /api/products/               List products (optional category / search)
    GET    /api/products/low-stock      Products at or below their minimum
    GET    /api/products/code/{code}    Look up by product code
    GET    /api/products/{id}           Single product
    POST   /api/products/               Create product
    PUT    /api/products/{id}           Update product (not stock)
    DELETE /api/products/{id}           Delete product
    POST   /api/products/{id}/restock   Add stock, recorded as an expense
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import get_ledger, require_permission
from app.auth.permissions import (
    PRODUCTS_CREATE,
    PRODUCTS_DELETE,
    PRODUCTS_READ,
    PRODUCTS_RESTOCK,
    PRODUCTS_UPDATE,
)
from app.database import get_db
from app.middleware.exceptions import (
    BusinessLogicError,
    ConflictError,
    InvalidRequestError,
    ResourceNotFoundError,
)
from app.models.product import Product
from app.models.sale import Sale
from app.models.user import User
from app.schemas.common import ApiResponse, ok, ok_list
from app.schemas.expense import ExpenseOut
from app.schemas.product import (
    ProductCreate,
    ProductOut,
    ProductUpdate,
    RestockRequest,
    RestockResult,
)
from app.services.ledger import LedgerService
from app.utils.cache import invalidate_cache

router = APIRouter()


async def _get_product(db: AsyncSession, product_id: str) -> Product:
    product = await db.get(Product, product_id)
    if not product:
        raise ResourceNotFoundError("Product", product_id)
    return product


async def _code_taken(db: AsyncSession, code: str, exclude_id: str | None = None) -> bool:
    query = select(Product.id).where(Product.code == code)
    if exclude_id:
        query = query.where(Product.id != exclude_id)
    return (await db.execute(query)).scalar_one_or_none() is not None


@router.get("/", response_model=ApiResponse[list[ProductOut]])
async def list_products(
    category: str | None = None,
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(PRODUCTS_READ)),
):
    query = select(Product)
    if category:
        query = query.where(Product.category == category)
    if search:
        pattern = f"%{search}%"
        query = query.where(Product.name.ilike(pattern) | Product.code.ilike(pattern))
    result = await db.execute(query.order_by(Product.name))
    return ok_list([ProductOut.model_validate(p) for p in result.scalars().all()])


@router.get("/low-stock", response_model=ApiResponse[list[ProductOut]])
async def list_low_stock(
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(PRODUCTS_READ)),
):
    """Products whose stock is at or below stock_min, emptiest first."""
    result = await db.execute(
        select(Product)
        .where(Product.stock <= Product.stock_min)
        .order_by(Product.stock, Product.name)
    )
    return ok_list([ProductOut.model_validate(p) for p in result.scalars().all()])


@router.get("/code/{code}", response_model=ApiResponse[ProductOut])
async def get_product_by_code(
    code: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(PRODUCTS_READ)),
):
    product = (
        await db.execute(select(Product).where(Product.code == code))
    ).scalar_one_or_none()
    if not product:
        raise ResourceNotFoundError("Product", code)
    return ok(ProductOut.model_validate(product))


@router.get("/{product_id}", response_model=ApiResponse[ProductOut])
async def get_product(
    product_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(PRODUCTS_READ)),
):
    return ok(ProductOut.model_validate(await _get_product(db, product_id)))


@router.post("/", response_model=ApiResponse[ProductOut], status_code=status.HTTP_201_CREATED)
async def create_product(
    body: ProductCreate,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(PRODUCTS_CREATE)),
):
    if await _code_taken(db, body.code):
        raise ConflictError(f"Product code already exists: {body.code}")

    product = Product(**body.model_dump())
    db.add(product)
    await db.commit()
    await invalidate_cache("stats:*")
    return ok(ProductOut.model_validate(product), message="Product created")


@router.put("/{product_id}", response_model=ApiResponse[ProductOut])
async def update_product(
    product_id: str,
    body: ProductUpdate,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(PRODUCTS_UPDATE)),
):
    product = await _get_product(db, product_id)
    updates = body.model_dump(exclude_unset=True)

    if "code" in updates and await _code_taken(db, updates["code"], exclude_id=product.id):
        raise ConflictError(f"Product code already exists: {updates['code']}")

    purchase = updates.get("purchase_price", product.purchase_price)
    sale = updates.get("sale_price", product.sale_price)
    if sale <= purchase:
        raise InvalidRequestError("sale_price must be greater than purchase_price")

    for key, value in updates.items():
        setattr(product, key, value)
    await db.commit()
    await invalidate_cache("stats:*")
    await db.refresh(product)
    return ok(ProductOut.model_validate(product), message="Product updated")


@router.delete("/{product_id}", response_model=ApiResponse[None])
async def delete_product(
    product_id: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(require_permission(PRODUCTS_DELETE)),
):
    """Delete a product that has never been sold."""
    product = await _get_product(db, product_id)
    sold = (
        await db.execute(select(func.count(Sale.id)).where(Sale.product_id == product.id))
    ).scalar_one()
    if sold:
        raise BusinessLogicError(
            f"Product has {sold} recorded sale(s) and cannot be deleted",
            error_code="PRODUCT_HAS_SALES",
        )
    await db.delete(product)
    await db.commit()
    await invalidate_cache("stats:*")
    return ok(message="Product deleted")


@router.post("/{product_id}/restock", response_model=ApiResponse[RestockResult])
async def restock_product(
    product_id: str,
    body: RestockRequest,
    ledger: LedgerService = Depends(get_ledger),
    _user: User = Depends(require_permission(PRODUCTS_RESTOCK)),
):
    product, expense = await ledger.restock_product(product_id, body.quantity)
    return ok(
        RestockResult(
            product=ProductOut.model_validate(product),
            expense=ExpenseOut.model_validate(expense),
        ),
        message=f"{body.quantity} unit(s) added to stock",
    )
