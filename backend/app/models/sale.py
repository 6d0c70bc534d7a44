"""Sales and the credits they open.

A credit sale inserts one Credit row for the sale total. There is no
foreign key from Credit back to Sale: cancellation finds the credit by
client, amount and status (see services.ledger.cancel_sale).
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint, DateTime, Enum as SAEnum, Float, ForeignKey, Integer, String,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.time import utcnow


class SaleType(str, enum.Enum):
    CASH = "comptant"
    CREDIT = "credit"


class CreditStatus(str, enum.Enum):
    OPEN = "En cours"
    PAID = "Payé"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Sale(Base):
    __tablename__ = "sales"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    client_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("clients.id"), index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Price snapshot at the time of sale
    unit_price: Mapped[float] = mapped_column(Float, nullable=False)
    total: Mapped[float] = mapped_column(Float, nullable=False)
    sale_type: Mapped[SaleType] = mapped_column(
        SAEnum(SaleType, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=SaleType.CASH,
    )

    sold_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class Credit(Base):
    __tablename__ = "credits"
    __table_args__ = (
        CheckConstraint(
            "remaining_amount >= 0 AND remaining_amount <= amount",
            name="ck_credits_remaining_in_range",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    client_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clients.id"), nullable=False, index=True
    )

    amount: Mapped[float] = mapped_column(Float, nullable=False)
    # Always within [0, amount]
    remaining_amount: Mapped[float] = mapped_column(Float, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[CreditStatus] = mapped_column(
        SAEnum(CreditStatus, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=CreditStatus.OPEN,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
