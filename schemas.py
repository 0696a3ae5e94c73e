from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import BudgetPeriod, DevicePlatform, TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class TransactionIn(BaseModel):
    occurred_at: datetime
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category_id: int
    note: Optional[str] = Field(default=None, max_length=200)


class BudgetIn(BaseModel):
    limit_cents: int = Field(..., gt=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    category_id: Optional[int] = None


class RegisterDeviceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1, max_length=512)
    platform: DevicePlatform


class UnregisterDeviceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1, max_length=512)


class BudgetStatusOut(BaseModel):
    budget_id: int
    category_id: Optional[int]
    period: BudgetPeriod
    window_start: datetime
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    classification: str
