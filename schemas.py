from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CurrencyChangeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    currency: str = Field(..., min_length=1, max_length=10)
    convert_existing: Optional[bool] = None


class ProviderFailureOut(BaseModel):
    provider: str
    error: str


class CurrencyChangeOut(BaseModel):
    previous_currency: str
    currency: str
    currency_symbol: str
    rate: float
    changed: bool
    data_converted: bool
    expenses_converted: int
    budgets_converted: int
    message: str


class ConfirmationRequiredOut(BaseModel):
    requires_confirmation: bool = True
    message: str
    current_currency: str
    new_currency: str
    expense_count: int
    budget_count: int
