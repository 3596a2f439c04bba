from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    allocation = "allocation"
    expense = "expense"
    transfer = "transfer"
    debt_payment = "debt_payment"


class EnvelopeType(str, Enum):
    regular = "regular"
    savings = "savings"
    debt = "debt"


class ScheduleType(str, Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    semi_monthly = "semi_monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    one_time = "one_time"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    available_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_budgets_owner", "owner_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_income: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id", back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )
    envelopes: Mapped[list["Envelope"]] = relationship(
        "Envelope", back_populates="category"
    )

    __table_args__ = (
        Index("ix_categories_scope_order", "budget_id", "parent_id", "display_order"),
        CheckConstraint("display_order >= 0", name="ck_categories_order_positive"),
    )


class Envelope(Base, TimestampMixin):
    __tablename__ = "envelopes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    envelope_type: Mapped[EnvelopeType] = mapped_column(
        SAEnum(EnvelopeType), nullable=False, default=EnvelopeType.regular
    )
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    target_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notify_on_low_balance: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    low_balance_threshold_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="envelopes"
    )

    __table_args__ = (
        Index(
            "ix_envelopes_scope_order", "budget_id", "category_id", "display_order"
        ),
        CheckConstraint("display_order >= 0", name="ck_envelopes_order_positive"),
        CheckConstraint(
            "target_amount_cents IS NULL OR target_amount_cents >= 0",
            name="ck_envelopes_target_positive",
        ),
    )


class Payee(Base, TimestampMixin):
    __tablename__ = "payees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    total_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_date: Mapped[Optional[date]] = mapped_column(Date)
    last_payment_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_payee_budget_name"),
    )


class IncomeSource(Base, TimestampMixin):
    __tablename__ = "income_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    expected_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    schedule_type: Mapped[Optional[ScheduleType]] = mapped_column(SAEnum(ScheduleType))
    schedule_config: Mapped[Optional[dict]] = mapped_column(JSON)
    next_expected_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_income_sources_budget_next", "budget_id", "next_expected_date"),
        CheckConstraint(
            "expected_amount_cents IS NULL OR expected_amount_cents >= 0",
            name="ck_income_sources_expected_positive",
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    from_envelope_id: Mapped[Optional[int]] = mapped_column(ForeignKey("envelopes.id"))
    to_envelope_id: Mapped[Optional[int]] = mapped_column(ForeignKey("envelopes.id"))
    payee_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payees.id"))
    income_source_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("income_sources.id")
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    is_cleared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_by: Mapped[Optional[int]] = mapped_column(Integer)


    __table_args__ = (
        Index("ix_transactions_budget_date", "budget_id", "is_deleted", "transaction_date"),
        Index("ix_transactions_budget_type", "budget_id", "transaction_type"),
        Index("ix_transactions_from_envelope", "from_envelope_id"),
        Index("ix_transactions_to_envelope", "to_envelope_id"),
        Index("ix_transactions_payee", "payee_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
