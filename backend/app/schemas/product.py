from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from app.models.product import DEFAULT_STOCK_MIN
from app.schemas.common import reject_explicit_nulls
from app.schemas.expense import ExpenseOut


class ProductCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    category: str = Field(..., min_length=1, max_length=100)
    supplier: str | None = None
    purchase_price: float = Field(..., ge=0)
    sale_price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    stock_min: int = Field(DEFAULT_STOCK_MIN, ge=0)

    @model_validator(mode="after")
    def _sale_above_purchase(self):
        if self.sale_price <= self.purchase_price:
            raise ValueError("sale_price must be greater than purchase_price")
        return self


class ProductUpdate(BaseModel):
    """Stock is not editable here; it moves only through sales and restocks."""
    code: str | None = Field(None, min_length=1, max_length=50)
    name: str | None = Field(None, min_length=1, max_length=255)
    category: str | None = None
    supplier: str | None = None
    purchase_price: float | None = Field(None, ge=0)
    sale_price: float | None = Field(None, ge=0)
    stock_min: int | None = Field(None, ge=0)

    @model_validator(mode="after")
    def _required_columns_not_null(self):
        reject_explicit_nulls(
            self,
            ("code", "name", "category", "purchase_price", "sale_price", "stock_min"),
        )
        return self


class RestockRequest(BaseModel):
    quantity: int


class ProductOut(BaseModel):
    id: str
    code: str
    name: str
    category: str
    supplier: str | None
    purchase_price: float
    sale_price: float
    stock: int
    stock_min: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RestockResult(BaseModel):
    product: ProductOut
    expense: ExpenseOut
