"""Transactional ledger operations: sales, cancellations, credit payments, restocks.

Each public method runs inside one database transaction
(`async with sessions.begin()`): either every row change commits or none
does. Rows that decide the outcome (product stock, client balances,
credit remainder) are read with SELECT ... FOR UPDATE so concurrent
operations on the same product or client serialize.

State machines:
  Sale:   created → deleted (cancel); never edited in place
  Credit: En cours → Payé (full payment), En cours → En cours (partial),
          deleted only as part of cancelling its sale
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.middleware.exceptions import (
    BusinessLogicError,
    InvalidRequestError,
    ResourceNotFoundError,
)
from app.models.client import Client
from app.models.expense import RESTOCK_CATEGORY, Expense
from app.models.product import Product
from app.models.sale import Credit, CreditStatus, Sale, SaleType
from app.utils.cache import invalidate_cache
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

CREDIT_TERM = timedelta(days=30)


class InsufficientStockError(BusinessLogicError):
    def __init__(self, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock: {available} available, {requested} requested",
            error_code="INSUFFICIENT_STOCK",
        )


@dataclass
class SaleResult:
    sale: Sale
    credit: Credit | None = None


class LedgerService:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    # ── Helpers ─────────────────────────────────────────────

    @staticmethod
    async def _locked(db: AsyncSession, model, ident: str):
        return (
            await db.execute(select(model).where(model.id == ident).with_for_update())
        ).scalar_one_or_none()

    @staticmethod
    async def _adjust_stock(db: AsyncSession, product_id: str, delta: int) -> bool:
        """Apply a stock delta; a decrement only applies if stock stays >= 0."""
        stmt = update(Product).where(Product.id == product_id)
        if delta < 0:
            stmt = stmt.where(Product.stock >= -delta)
        result = await db.execute(
            stmt.values(stock=Product.stock + delta).execution_options(
                synchronize_session=False
            )
        )
        return result.rowcount == 1

    @staticmethod
    async def _adjust_client(
        db: AsyncSession, client_id: str, credit: float = 0, purchases: float = 0
    ) -> None:
        await db.execute(
            update(Client)
            .where(Client.id == client_id)
            .values(
                credit=Client.credit + credit,
                purchases_total=Client.purchases_total + purchases,
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def find_matching_credit(db: AsyncSession, sale: Sale) -> Credit | None:
        """Credit most likely opened by `sale`.

        There is no stored link between a sale and its credit. The match is
        the most recently created open credit of the same client whose
        original amount equals the sale total. Two open credits with equal
        amounts for one client are indistinguishable; the newest wins.
        """
        if sale.client_id is None:
            return None
        return (
            await db.execute(
                select(Credit)
                .where(
                    Credit.client_id == sale.client_id,
                    Credit.status == CreditStatus.OPEN,
                    Credit.amount == sale.total,
                )
                .order_by(Credit.created_at.desc())
                .limit(1)
                .with_for_update()
            )
        ).scalar_one_or_none()

    # ── Sales ───────────────────────────────────────────────

    async def create_sale(
        self,
        product_id: str,
        quantity: int,
        sale_type: SaleType | str = SaleType.CASH,
        client_id: str | None = None,
    ) -> SaleResult:
        if quantity is None or quantity <= 0:
            raise InvalidRequestError("Quantity must be greater than zero")
        try:
            sale_type = SaleType(sale_type)
        except ValueError:
            raise InvalidRequestError(
                f"Invalid sale type: {sale_type!r} (expected 'comptant' or 'credit')"
            )

        async with self._sessions.begin() as db:
            product = await self._locked(db, Product, product_id)
            if product is None:
                raise ResourceNotFoundError("Product", product_id)
            if quantity > product.stock:
                raise InsufficientStockError(product.stock, quantity)
            if sale_type == SaleType.CREDIT and not client_id:
                raise BusinessLogicError(
                    "A client is required for a credit sale", error_code="CLIENT_REQUIRED"
                )
            if client_id and await self._locked(db, Client, client_id) is None:
                raise ResourceNotFoundError("Client", client_id)

            unit_price = product.sale_price
            total = unit_price * quantity

            sale = Sale(
                product_id=product.id,
                client_id=client_id or None,
                quantity=quantity,
                unit_price=unit_price,
                total=total,
                sale_type=sale_type,
                sold_at=utcnow(),
            )
            db.add(sale)
            await db.flush()

            if not await self._adjust_stock(db, product.id, -quantity):
                raise InsufficientStockError(product.stock, quantity)

            credit = None
            if sale_type == SaleType.CREDIT:
                now = utcnow()
                credit = Credit(
                    client_id=client_id,
                    amount=total,
                    remaining_amount=total,
                    due_date=now + CREDIT_TERM,
                    status=CreditStatus.OPEN,
                    created_at=now,
                )
                db.add(credit)
                await self._adjust_client(db, client_id, credit=total, purchases=total)
            elif client_id:
                await self._adjust_client(db, client_id, purchases=total)

        logger.info(
            "Sale %s: %d x %s (%s) total=%.2f client=%s",
            sale.id, quantity, product.id, sale_type.value, total, client_id,
        )
        await invalidate_cache("stats:*")
        return SaleResult(sale=sale, credit=credit)

    async def cancel_sale(self, sale_id: str) -> Sale:
        """Delete a sale and reverse its effects.

        For a credit sale the matching credit (see find_matching_credit) is
        deleted when one is found. The client's balance and purchase total
        are reduced by the sale total either way.
        """
        async with self._sessions.begin() as db:
            sale = await self._locked(db, Sale, sale_id)
            if sale is None:
                raise ResourceNotFoundError("Sale", sale_id)

            await self._adjust_stock(db, sale.product_id, sale.quantity)

            if sale.sale_type == SaleType.CREDIT and sale.client_id:
                credit = await self.find_matching_credit(db, sale)
                if credit is not None:
                    await db.execute(delete(Credit).where(Credit.id == credit.id))
                else:
                    logger.warning(
                        "No open credit matches cancelled sale %s (client %s, total %.2f)",
                        sale.id, sale.client_id, sale.total,
                    )
                await self._adjust_client(
                    db, sale.client_id, credit=-sale.total, purchases=-sale.total
                )
            elif sale.client_id:
                await self._adjust_client(db, sale.client_id, purchases=-sale.total)

            await db.delete(sale)

        logger.info("Sale %s cancelled, %d units returned to stock", sale.id, sale.quantity)
        await invalidate_cache("stats:*")
        return sale

    # ── Credits ─────────────────────────────────────────────

    async def pay_credit(self, credit_id: str, amount: float | None = None) -> Credit:
        """Settle part or all of a credit; omitted amount pays the full remainder."""
        async with self._sessions.begin() as db:
            credit = await self._locked(db, Credit, credit_id)
            if credit is None:
                raise ResourceNotFoundError("Credit", credit_id)
            if credit.status == CreditStatus.PAID:
                raise BusinessLogicError("This credit is already paid", error_code="ALREADY_PAID")

            if amount is None:
                amount = credit.remaining_amount
            if amount <= 0:
                raise InvalidRequestError("Payment amount must be greater than zero")
            if amount > credit.remaining_amount:
                raise BusinessLogicError(
                    f"Payment of {amount} exceeds the remaining {credit.remaining_amount}",
                    error_code="OVERPAYMENT",
                )

            credit.remaining_amount = credit.remaining_amount - amount
            credit.status = (
                CreditStatus.PAID if credit.remaining_amount == 0 else CreditStatus.OPEN
            )
            await self._adjust_client(db, credit.client_id, credit=-amount)

        logger.info(
            "Credit %s paid %.2f, remaining %.2f", credit.id, amount, credit.remaining_amount
        )
        await invalidate_cache("stats:*")
        return credit

    # ── Stock ───────────────────────────────────────────────

    async def restock_product(self, product_id: str, quantity: int) -> tuple[Product, Expense]:
        """Add stock and record the purchase as an expense."""
        if quantity is None or quantity <= 0:
            raise InvalidRequestError("Quantity must be greater than zero")

        async with self._sessions.begin() as db:
            product = await self._locked(db, Product, product_id)
            if product is None:
                raise ResourceNotFoundError("Product", product_id)

            product.stock = product.stock + quantity
            expense = Expense(
                description=f"Réappro: {product.name} ({quantity} unités)",
                amount=product.purchase_price * quantity,
                category=RESTOCK_CATEGORY,
                spent_at=utcnow(),
            )
            db.add(expense)

        logger.info("Product %s restocked with %d units", product.id, quantity)
        await invalidate_cache("stats:*")
        return product, expense
