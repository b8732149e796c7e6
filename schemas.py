from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal, Optional


def _clean_symbol(value):
    if value is None:
        return value
    value = value.strip().upper()
    if not value:
        raise ValueError("symbol must not be blank")
    return value


class AccountOption(BaseModel):
    type: str
    label: str
    balance: float

class CreateAccountRequest(BaseModel):
    account_type: str
    account_name: Optional[str] = None

class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_name: str
    account_type: str
    starting_balance: float
    current_balance: float
    created_at: Optional[datetime] = None

class CreateAccountResponse(BaseModel):
    message: str
    account: AccountResponse

class PositionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    symbol: str
    quantity: float
    average_price: float

class OrderRequest(BaseModel):
    symbol: str = Field(min_length=1, max_length=16)
    trade_type: str  # "Buy" or "Sell"
    quantity: float = Field(gt=0, description="Number of shares")

    @field_validator("symbol")
    @classmethod
    def clean_symbol(cls, value):
        return _clean_symbol(value)

class TradeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    symbol: str
    trade_type: str
    quantity: float
    price: float
    balance_after: float
    created_at: Optional[datetime] = None

class OrderResponse(BaseModel):
    message: str
    balance: float
    trade: TradeResponse

class LeaderboardEntry(BaseModel):
    rank: int
    trader: str  # masked email
    account_name: str
    account_type: str
    starting_balance: float
    current_balance: float
    equity: float
    total_return: float
    return_percent: float

class ResetResponse(BaseModel):
    message: str

class JournalEntryCreate(BaseModel):
    symbol: str = Field(min_length=1, max_length=16)
    trade_type: Literal["Buy", "Sell"]
    quantity: float = Field(gt=0)
    price: float = Field(gt=0)
    notes: Optional[str] = None
    trade_date: Optional[datetime] = None

    @field_validator("symbol")
    @classmethod
    def clean_symbol(cls, value):
        return _clean_symbol(value)

class JournalEntryUpdate(BaseModel):
    symbol: Optional[str] = Field(default=None, min_length=1, max_length=16)
    trade_type: Optional[Literal["Buy", "Sell"]] = None
    quantity: Optional[float] = Field(default=None, gt=0)
    price: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = None
    trade_date: Optional[datetime] = None

    @field_validator("symbol")
    @classmethod
    def clean_symbol(cls, value):
        return _clean_symbol(value)

class QuoteResponse(BaseModel):
    symbol: str
    price: float
    provider: str
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    previous_close: Optional[float] = None
    change: Optional[float] = None
    change_percent: Optional[float] = None
