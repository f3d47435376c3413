from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import (
    AccountType,
    BudgetPeriod,
    InvoiceStatus,
    Role,
    TransactionType,
)
from periods import local_now, to_local_naive


class AlertLevel(str, Enum):
    ok = "OK"
    warning = "WARNING"
    danger = "DANGER"


class ExportFormat(str, Enum):
    csv = "csv"
    pdf = "pdf"


class RegisterIn(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    role: Role = Role.owner


class LoginIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    username: str
    email: str
    role: Role


class PasswordResetRequestIn(BaseModel):
    email: EmailStr


class PasswordResetIn(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6, max_length=128)


class MessageOut(BaseModel):
    message: str
    token: Optional[str] = None


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    initial_balance: Decimal = Field(
        default=Decimal("0"), ge=0, max_digits=14, decimal_places=2
    )


class AccountRenameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Account name is required")
        return value.strip()


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance: Decimal
    created_at: datetime
    updated_at: datetime


class TransactionIn(BaseModel):
    account_id: int
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    date: datetime = Field(default_factory=local_now)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("category")
    @classmethod
    def _category_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Category is required")
        return value.strip()

    @field_validator("date")
    @classmethod
    def _not_in_future(cls, value: datetime) -> datetime:
        value = to_local_naive(value)
        if value > local_now():
            raise ValueError("Date cannot be in the future")
        return value


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    amount: Decimal
    type: TransactionType
    category: str
    date: datetime
    description: Optional[str]
    created_at: datetime
    updated_at: datetime


class TransactionPage(BaseModel):
    transactions: list[TransactionOut]
    current_page: int
    total_items: int
    total_pages: int


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    period: BudgetPeriod


class BudgetAmountIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)


class BudgetOut(BaseModel):
    id: int
    category: str
    amount: Decimal
    period: BudgetPeriod
    spent: Decimal
    remaining: Decimal
    percent_used: float
    alert_level: AlertLevel
    window_start: datetime
    created_at: datetime
    updated_at: datetime


class InvoiceItemIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    quantity: Decimal = Field(..., gt=0, max_digits=12, decimal_places=3)
    unit_price: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)


class InvoiceIn(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=120)
    client_email: EmailStr
    due_date: date
    account_id: int
    items: list[InvoiceItemIn] = Field(..., min_length=1)


class InvoiceStatusIn(BaseModel):
    status: InvoiceStatus

    @field_validator("status", mode="before")
    @classmethod
    def _upper(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    client_name: str
    client_email: str
    due_date: date
    account_id: int
    account_name: str
    status: InvoiceStatus
    total: Decimal
    items: list[InvoiceItemOut]
    created_at: datetime
    updated_at: datetime


class InvoicePage(BaseModel):
    invoices: list[InvoiceOut]
    current_page: int
    total_items: int
    total_pages: int


class AccountBalance(BaseModel):
    account_id: int
    account_name: str
    balance: Decimal


class BalanceSheetOut(BaseModel):
    as_of_date: datetime
    assets: list[AccountBalance]
    liabilities: list[AccountBalance]
    total_assets: Decimal
    total_liabilities: Decimal
    equity: Decimal


class CategoryAmount(BaseModel):
    category: str
    amount: Decimal


class ProfitAndLossOut(BaseModel):
    start_date: datetime
    end_date: datetime
    revenue: list[CategoryAmount]
    expenses: list[CategoryAmount]
    total_revenue: Decimal
    total_expenses: Decimal
    net_profit: Decimal


class CashFlowOut(BaseModel):
    start_date: datetime
    end_date: datetime
    inflows: list[CategoryAmount]
    outflows: list[CategoryAmount]
    total_inflows: Decimal
    total_outflows: Decimal
    net_cash_flow: Decimal
    opening_balance: Decimal
    closing_balance: Decimal


class CSVRow(BaseModel):
    line: int
    amount: Decimal
    type: TransactionType
    category: str
    date: datetime
    description: Optional[str]


class ImportResultOut(BaseModel):
    message: str
    imported: int
