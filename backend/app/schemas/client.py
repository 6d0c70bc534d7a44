"""Pydantic schemas for Client CRUD operations."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from app.schemas.common import reject_explicit_nulls
from app.schemas.sale import CreditOut, SaleOut


class ClientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=3, max_length=30)
    address: str | None = None


class ClientUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    phone: str | None = Field(None, min_length=3, max_length=30)
    address: str | None = None

    @model_validator(mode="after")
    def _required_columns_not_null(self):
        reject_explicit_nulls(self, ("name", "phone"))
        return self


class ClientOut(BaseModel):
    id: str
    name: str
    phone: str
    address: str | None
    credit: float
    purchases_total: float
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ClientSummary(ClientOut):
    sale_count: int = 0
    credit_count: int = 0


class ClientDetail(ClientOut):
    recent_sales: list[SaleOut] = []
    open_credits: list[CreditOut] = []


class ClientStats(BaseModel):
    client: ClientOut
    purchase_count: int
    open_credit_count: int
