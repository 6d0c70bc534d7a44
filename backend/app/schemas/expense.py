from datetime import datetime

from pydantic import BaseModel, Field


class ExpenseCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    amount: float = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=100)
    spent_at: datetime | None = None


class ExpenseOut(BaseModel):
    id: str
    description: str
    amount: float
    category: str
    spent_at: datetime

    model_config = {"from_attributes": True}
