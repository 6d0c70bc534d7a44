from datetime import datetime

from pydantic import BaseModel, Field

from app.models.sale import CreditStatus, SaleType


class SaleCreate(BaseModel):
    product_id: str
    quantity: int
    sale_type: SaleType = SaleType.CASH
    client_id: str | None = None


class SaleOut(BaseModel):
    id: str
    product_id: str
    client_id: str | None
    quantity: int
    unit_price: float
    total: float
    sale_type: SaleType
    sold_at: datetime

    model_config = {"from_attributes": True}


class SaleDetail(SaleOut):
    product_name: str | None = None
    client_name: str | None = None


class CreditOut(BaseModel):
    id: str
    client_id: str
    amount: float
    remaining_amount: float
    due_date: datetime
    status: CreditStatus
    created_at: datetime

    model_config = {"from_attributes": True}


class CreditDetail(CreditOut):
    client_name: str | None = None
    client_phone: str | None = None


class SaleCreated(BaseModel):
    sale: SaleOut
    credit: CreditOut | None = None


class CreditPayment(BaseModel):
    amount: float | None = Field(None, description="Defaults to the full remaining amount")


class PeriodTotals(BaseModel):
    total: float
    count: int


class SalesStats(BaseModel):
    today: PeriodTotals
    week: PeriodTotals
    month: PeriodTotals
