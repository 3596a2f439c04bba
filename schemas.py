from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import EnvelopeType, ScheduleType, TransactionType

# Largest amount a DECIMAL(12, 2) column holds.
MAX_AMOUNT = Decimal("9999999999.99")


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    is_active: bool = True


class BudgetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Z]{3}$")
    is_active: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    parent_id: Optional[int] = None
    is_income: bool = False
    display_order: Optional[int] = Field(default=None, ge=0)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    parent_id: Optional[int] = None
    is_income: Optional[bool] = None
    is_active: Optional[bool] = None


class EnvelopeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None
    envelope_type: EnvelopeType = EnvelopeType.regular
    target_amount: Optional[Decimal] = Field(
        default=None, ge=0, le=MAX_AMOUNT, decimal_places=2
    )
    display_order: Optional[int] = Field(default=None, ge=0)
    notify_on_low_balance: bool = False
    low_balance_threshold: Optional[Decimal] = Field(
        default=None, ge=0, le=MAX_AMOUNT, decimal_places=2
    )


class EnvelopeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None
    envelope_type: Optional[EnvelopeType] = None
    target_amount: Optional[Decimal] = Field(
        default=None, ge=0, le=MAX_AMOUNT, decimal_places=2
    )
    notify_on_low_balance: Optional[bool] = None
    low_balance_threshold: Optional[Decimal] = Field(
        default=None, ge=0, le=MAX_AMOUNT, decimal_places=2
    )
    is_active: Optional[bool] = None


class PayeeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class PayeeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None


class IncomeSourceIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    expected_amount: Optional[Decimal] = Field(
        default=None, ge=0, le=MAX_AMOUNT, decimal_places=2
    )
    schedule_type: Optional[ScheduleType] = None
    schedule_config: Optional[dict[str, Any]] = None
    next_expected_date: Optional[date] = None


class IncomeSourceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    expected_amount: Optional[Decimal] = Field(
        default=None, ge=0, le=MAX_AMOUNT, decimal_places=2
    )
    schedule_type: Optional[ScheduleType] = None
    schedule_config: Optional[dict[str, Any]] = None
    next_expected_date: Optional[date] = None
    is_active: Optional[bool] = None


class TransactionIn(BaseModel):
    # Amount, date and reference rules are enforced by TransactionValidator so
    # that every violation surfaces through the ledger error taxonomy.
    transaction_type: str
    amount: Decimal
    transaction_date: date
    description: Optional[str] = None
    from_envelope_id: Optional[int] = None
    to_envelope_id: Optional[int] = None
    payee_id: Optional[int] = None
    income_source_id: Optional[int] = None
    category_id: Optional[int] = None
    is_cleared: bool = False
    is_reconciled: bool = False


class TransactionPatch(BaseModel):
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_date: Optional[date] = None
    description: Optional[str] = None
    from_envelope_id: Optional[int] = None
    to_envelope_id: Optional[int] = None
    payee_id: Optional[int] = None
    income_source_id: Optional[int] = None
    category_id: Optional[int] = None
    is_cleared: Optional[bool] = None
    is_reconciled: Optional[bool] = None


class ReorderItem(BaseModel):
    id: int
    display_order: int = Field(..., ge=0)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    parent_id: Optional[int]
    name: str
    description: Optional[str]
    display_order: int
    is_income: bool
    is_system: bool
    is_active: bool


class CategoryNode(CategoryOut):
    children: list[CategoryOut] = Field(default_factory=list)


class EnvelopeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    category_id: Optional[int]
    name: str
    description: Optional[str]
    envelope_type: EnvelopeType
    current_balance_cents: int
    target_amount_cents: Optional[int]
    display_order: int
    notify_on_low_balance: bool
    low_balance_threshold_cents: Optional[int]
    is_active: bool


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    name: str
    description: Optional[str]
    currency: str
    available_amount_cents: int
    is_active: bool


class PayeeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    name: str
    description: Optional[str]
    total_paid_cents: int
    last_payment_date: Optional[date]
    last_payment_amount_cents: Optional[int]
    is_active: bool


class IncomeSourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    name: str
    description: Optional[str]
    expected_amount_cents: Optional[int]
    schedule_type: Optional[ScheduleType]
    schedule_config: Optional[dict[str, Any]]
    next_expected_date: Optional[date]
    is_active: bool


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    transaction_type: TransactionType
    amount_cents: int
    transaction_date: date
    description: Optional[str]
    from_envelope_id: Optional[int]
    to_envelope_id: Optional[int]
    payee_id: Optional[int]
    income_source_id: Optional[int]
    category_id: Optional[int]
    is_cleared: bool
    is_reconciled: bool
    is_deleted: bool
    deleted_at: Optional[datetime]
    deleted_by: Optional[int]


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
