from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from errors import (
    InvalidEnvelopeTransfer,
    InvalidTransactionType,
    NotFoundError,
    ValidationError,
)
from models import EnvelopeType, TransactionType
from schedules import local_today
from schemas import MAX_AMOUNT, TransactionIn
from store import LedgerReader

CENT = Decimal("0.01")
MAX_DESCRIPTION_LENGTH = 500

REFERENCE_FIELDS = (
    "from_envelope_id",
    "to_envelope_id",
    "payee_id",
    "income_source_id",
)

# type -> (required, forbidden, message when the shape is wrong)
_SHAPES: dict[TransactionType, tuple[tuple[str, ...], tuple[str, ...], str]] = {
    TransactionType.income: (
        ("income_source_id",),
        ("from_envelope_id", "to_envelope_id", "payee_id"),
        "Income transactions require income_source_id and no envelope or payee references",
    ),
    TransactionType.allocation: (
        ("to_envelope_id",),
        ("from_envelope_id", "payee_id", "income_source_id"),
        "Allocation transactions require to_envelope_id only",
    ),
    TransactionType.expense: (
        ("from_envelope_id", "payee_id"),
        ("to_envelope_id", "income_source_id"),
        "expense transactions require from_envelope_id and payee_id",
    ),
    TransactionType.debt_payment: (
        ("from_envelope_id", "payee_id"),
        ("to_envelope_id", "income_source_id"),
        "debt_payment transactions require from_envelope_id and payee_id",
    ),
    TransactionType.transfer: (
        ("from_envelope_id", "to_envelope_id"),
        ("payee_id", "income_source_id"),
        "Transfer transactions require from_envelope_id and to_envelope_id",
    ),
}


def parse_transaction_type(value: object) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise InvalidTransactionType("Invalid transaction type") from exc


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def check_filter_amount(amount: Decimal, field: str) -> None:
    if not amount.is_finite() or not 0 <= amount <= MAX_AMOUNT:
        raise ValidationError(f"{field} must be between 0 and {MAX_AMOUNT}")


class TransactionValidator:
    """Decides whether a proposed transaction is well formed for its type.

    Reads through ``LedgerReader`` only; every failure is raised as a ledger
    error and nothing is written.
    """

    def __init__(
        self, reader: LedgerReader, today: Callable[[], date] = local_today
    ) -> None:
        self.reader = reader
        self.today = today

    def check_common(self, proposed: TransactionIn) -> None:
        amount = proposed.amount
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Transaction amount must be positive")
        if amount > MAX_AMOUNT:
            raise ValidationError(f"Transaction amount cannot exceed {MAX_AMOUNT}")
        try:
            whole_cents = amount == amount.quantize(CENT)
        except InvalidOperation as exc:
            raise ValidationError("Transaction amount is not a valid amount") from exc
        if not whole_cents:
            raise ValidationError(
                "Transaction amount can have at most 2 decimal places"
            )
        if proposed.transaction_date > self.today():
            raise ValidationError("Transaction date cannot be in the future")
        if (
            proposed.description is not None
            and len(proposed.description) > MAX_DESCRIPTION_LENGTH
        ):
            raise ValidationError(
                "Transaction description must be 500 characters or less"
            )

    def check_shape(self, proposed: TransactionIn) -> TransactionType:
        kind = parse_transaction_type(proposed.transaction_type)
        required, forbidden, message = _SHAPES[kind]
        if any(getattr(proposed, field) is None for field in required) or any(
            getattr(proposed, field) is not None for field in forbidden
        ):
            raise ValidationError(message)
        if (
            kind == TransactionType.transfer
            and proposed.from_envelope_id == proposed.to_envelope_id
        ):
            raise InvalidEnvelopeTransfer("Cannot transfer to the same envelope")
        return kind

    def validate(self, proposed: TransactionIn, budget_id: int) -> TransactionType:
        self.check_common(proposed)
        kind = self.check_shape(proposed)

        if kind == TransactionType.income:
            self._income_source(budget_id, proposed.income_source_id)
        elif kind == TransactionType.allocation:
            self._envelope(
                budget_id,
                proposed.to_envelope_id,
                "Envelope not found or does not belong to this budget",
                "Cannot allocate to inactive envelope",
            )
        elif kind in (TransactionType.expense, TransactionType.debt_payment):
            envelope = self._envelope(
                budget_id,
                proposed.from_envelope_id,
                "Envelope not found or does not belong to this budget",
                "Cannot spend from inactive envelope",
            )
            self._payee(budget_id, proposed.payee_id)
            if (
                kind == TransactionType.debt_payment
                and envelope.envelope_type != EnvelopeType.debt
            ):
                raise ValidationError("Debt payments must be made from debt envelopes")
        elif kind == TransactionType.transfer:
            self._envelope(
                budget_id,
                proposed.from_envelope_id,
                "Source envelope not found or does not belong to this budget",
                "Cannot transfer from inactive envelope",
            )
            self._envelope(
                budget_id,
                proposed.to_envelope_id,
                "Destination envelope not found or does not belong to this budget",
                "Cannot transfer to inactive envelope",
            )

        if proposed.category_id is not None:
            if self.reader.get_category(budget_id, proposed.category_id) is None:
                raise NotFoundError(
                    "Category not found or does not belong to this budget"
                )
        return kind

    def _envelope(
        self, budget_id: int, envelope_id: Optional[int], missing: str, inactive: str
    ):
        envelope = self.reader.get_envelope(budget_id, envelope_id)
        if envelope is None:
            raise NotFoundError(missing)
        if not envelope.is_active:
            raise ValidationError(inactive)
        return envelope

    def _payee(self, budget_id: int, payee_id: Optional[int]):
        payee = self.reader.get_payee(budget_id, payee_id)
        if payee is None:
            raise NotFoundError("Payee not found or does not belong to this budget")
        if not payee.is_active:
            raise ValidationError("Cannot make payment to inactive payee")
        return payee

    def _income_source(self, budget_id: int, income_source_id: Optional[int]):
        source = self.reader.get_income_source(budget_id, income_source_id)
        if source is None:
            raise NotFoundError(
                "Income source not found or does not belong to this budget"
            )
        return source
