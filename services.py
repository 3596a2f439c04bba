from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

from rapidfuzz import fuzz, process
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

import cache as cache_ns
from cache import LedgerCache, cache_key
from errors import AlreadyExistsError, NotFoundError, ValidationError
from identity import IdentityProvider
from models import (
    Budget,
    Category,
    Envelope,
    IncomeSource,
    Payee,
    Transaction,
    TransactionType,
)
from ordering import OrderingEngine, ScopeLocks, scope_key
from resilience import ResilienceWrapper
from schedules import local_today, next_expected_date, validate_schedule
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryNode,
    CategoryOut,
    CategoryUpdate,
    EnvelopeIn,
    EnvelopeOut,
    EnvelopeUpdate,
    IncomeSourceIn,
    IncomeSourceOut,
    IncomeSourceUpdate,
    PayeeIn,
    PayeeOut,
    PayeeUpdate,
    TransactionIn,
    TransactionPatch,
)
from store import LedgerStore, envelope_filter
from validation import (
    REFERENCE_FIELDS,
    TransactionValidator,
    check_filter_amount,
    to_cents,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_CATEGORIES = (
    ("Savings", "Savings goals and emergency funds"),
    ("Debt", "Debt payments and tracking"),
)

SEARCH_SCORE_CUTOFF = 60


def optional_cents(amount: Optional[Decimal]) -> Optional[int]:
    return None if amount is None else to_cents(amount)


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def _clean(name: str) -> str:
    clean_name = name.strip()
    if not clean_name:
        raise ValidationError("Name cannot be empty")
    return clean_name


@dataclass
class TransactionFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    transaction_type: Optional[TransactionType] = None
    envelope_id: Optional[int] = None
    payee_id: Optional[int] = None
    income_source_id: Optional[int] = None
    category_id: Optional[int] = None
    is_cleared: Optional[bool] = None
    is_reconciled: Optional[bool] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


class LedgerContext:
    """The capabilities one request works with, shared by every service.

    Writes run once through the resilience wrapper and invalidate their cache
    groups only after the work returned; reads retry transient store errors.
    """

    def __init__(
        self,
        store: LedgerStore,
        identity: IdentityProvider,
        cache: LedgerCache,
        resilience: ResilienceWrapper,
    ) -> None:
        self.store = store
        self.identity = identity
        self.cache = cache
        self.resilience = resilience

    @property
    def user_id(self) -> int:
        return self.identity.current_user_id()

    def acting_user(self) -> int:
        return self.resilience.call(self.identity.current_user_id)

    def write(self, work: Callable[[], T], *groups: str) -> T:
        result = self.resilience.call(work)
        for group in groups:
            self.cache.invalidate_group(group)
        return result

    def read(self, work: Callable[[], T]) -> T:
        return self.resilience.call_with_retry(work)

    def cached(self, namespace: str, key: str, work: Callable[[], T]) -> T:
        return self.cache.get_or_compute(namespace, key, None, lambda: self.read(work))


class BudgetService:
    def __init__(self, ctx: LedgerContext) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.session: Session = ctx.store.session

    def list(self) -> list[BudgetOut]:
        user_id = self.ctx.acting_user()

        def work() -> list[BudgetOut]:
            return [BudgetOut.model_validate(b) for b in self.store.budgets_for(user_id)]

        return self.ctx.cached(cache_ns.BUDGETS, cache_key("list", user_id), work)

    def get(self, budget_id: int) -> Budget:
        return self.ctx.read(lambda: self.store.require_budget(budget_id, self.ctx.user_id))

    def create(self, data: BudgetIn) -> Budget:
        def work() -> Budget:
            budget = Budget(
                owner_id=self.ctx.user_id,
                name=_clean(data.name),
                description=data.description,
                currency=data.currency,
                is_active=data.is_active,
            )
            self.store.add(budget)
            self.store.flush()
            for position, (name, description) in enumerate(SYSTEM_CATEGORIES):
                self.store.add(
                    Category(
                        budget_id=budget.id,
                        name=name,
                        description=description,
                        display_order=position,
                        is_system=True,
                    )
                )
            self.store.commit()
            self.store.refresh(budget)
            return budget

        return self.ctx.write(work, "BUDGET_CHANGE", "CATEGORY_CHANGE")

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        def work() -> Budget:
            budget = self.store.require_budget(budget_id, self.ctx.user_id)
            changes = data.model_dump(exclude_unset=True)
            if changes.get("name") is not None:
                budget.name = _clean(changes["name"])
            if "description" in changes:
                budget.description = changes["description"]
            if changes.get("currency") is not None:
                budget.currency = changes["currency"]
            if changes.get("is_active") is not None:
                budget.is_active = changes["is_active"]
            self.store.commit()
            self.store.refresh(budget)
            return budget

        return self.ctx.write(work, "BUDGET_CHANGE")

    def delete(self, budget_id: int) -> None:
        def work() -> None:
            self.store.require_budget(budget_id, self.ctx.user_id)
            self.store.delete_budget(budget_id)
            self.store.commit()

        self.ctx.resilience.call(work)
        self.ctx.cache.clear()
        logger.info("budget_deleted: budget=%s", budget_id)


class CategoryService:
    def __init__(self, ctx: LedgerContext, ordering: OrderingEngine) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.session: Session = ctx.store.session
        self.ordering = ordering

    def list(self, budget_id: int) -> list[CategoryOut]:
        user_id = self.ctx.acting_user()

        def work() -> list[CategoryOut]:
            self.store.require_budget(budget_id, user_id)
            stmt = (
                select(Category)
                .where(Category.budget_id == budget_id)
                .order_by(Category.display_order, Category.id)
            )
            return [CategoryOut.model_validate(c) for c in self.session.scalars(stmt)]

        return self.ctx.cached(
            cache_ns.CATEGORIES, cache_key("list", user_id, budget_id), work
        )

    def tree(self, budget_id: int) -> list[CategoryNode]:
        user_id = self.ctx.acting_user()

        def work() -> list[CategoryNode]:
            self.store.require_budget(budget_id, user_id)
            rows = self.session.scalars(
                select(Category)
                .where(Category.budget_id == budget_id)
                .order_by(Category.display_order, Category.id)
            ).all()
            nodes = {
                c.id: CategoryNode(**CategoryOut.model_validate(c).model_dump())
                for c in rows
                if c.parent_id is None
            }
            for c in rows:
                if c.parent_id is not None and c.parent_id in nodes:
                    nodes[c.parent_id].children.append(CategoryOut.model_validate(c))
            return list(nodes.values())

        return self.ctx.cached(
            cache_ns.CATEGORY_TREE, cache_key("tree", user_id, budget_id), work
        )

    def _load(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        self.store.require_budget(category.budget_id, self.ctx.user_id)
        return category

    def get(self, category_id: int) -> Category:
        return self.ctx.read(lambda: self._load(category_id))

    def _check_parent(self, budget_id: int, parent_id: int) -> Category:
        parent = self.store.get_category(budget_id, parent_id)
        if parent is None:
            raise NotFoundError("Parent category not found")
        if parent.parent_id is not None:
            raise ValidationError(
                "Categories support single-level nesting only; "
                "the parent category already has a parent"
            )
        return parent

    def create(self, budget_id: int, data: CategoryIn) -> Category:
        def work() -> Category:
            self.store.require_budget(budget_id, self.ctx.user_id)
            if data.parent_id is not None:
                self._check_parent(budget_id, data.parent_id)
            with self.ordering.hold(scope_key(Category, budget_id, data.parent_id)):
                if data.display_order is None:
                    position = self.store.next_display_order(
                        Category, budget_id, data.parent_id
                    )
                else:
                    position = data.display_order
                    self.store.make_room(
                        Category, budget_id, data.parent_id, position
                    )
                category = Category(
                    budget_id=budget_id,
                    parent_id=data.parent_id,
                    name=_clean(data.name),
                    description=data.description,
                    is_income=data.is_income,
                    display_order=position,
                )
                self.store.add(category)
                self.store.flush()
                self.ordering.renumber(Category, budget_id, data.parent_id)
                self.store.commit()
            self.store.refresh(category)
            return category

        return self.ctx.write(work, "CATEGORY_CHANGE")

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        def work() -> Category:
            category = self._load(category_id)
            if category.is_system:
                raise ValidationError("System categories cannot be modified")
            changes = data.model_dump(exclude_unset=True)
            moving = (
                "parent_id" in changes and changes["parent_id"] != category.parent_id
            )
            scopes = (
                (
                    scope_key(Category, category.budget_id, category.parent_id),
                    scope_key(Category, category.budget_id, changes["parent_id"]),
                )
                if moving
                else ()
            )
            with self.ordering.hold(*scopes):
                if moving:
                    self._move(category, changes["parent_id"])
                if changes.get("name") is not None:
                    category.name = _clean(changes["name"])
                if "description" in changes:
                    category.description = changes["description"]
                if changes.get("is_income") is not None:
                    category.is_income = changes["is_income"]
                if changes.get("is_active") is not None:
                    category.is_active = changes["is_active"]
                self.store.commit()
            self.store.refresh(category)
            return category

        return self.ctx.write(work, "CATEGORY_CHANGE")

    def _move(self, category: Category, parent_id: Optional[int]) -> None:
        if parent_id is not None:
            if parent_id == category.id:
                raise ValidationError("A category cannot be its own parent")
            self._check_parent(category.budget_id, parent_id)
            has_children = self.session.scalar(
                select(func.count(Category.id)).where(Category.parent_id == category.id)
            )
            if has_children:
                raise ValidationError(
                    "A category with subcategories cannot become a subcategory"
                )
        old_parent = category.parent_id
        category.display_order = self.store.next_display_order(
            Category, category.budget_id, parent_id
        )
        category.parent_id = parent_id
        self.store.flush()
        self.ordering.renumber(Category, category.budget_id, old_parent)

    def delete(self, category_id: int) -> None:
        def work() -> None:
            category = self._load(category_id)
            if category.is_system:
                raise ValidationError("System categories cannot be deleted")
            has_children = self.session.scalar(
                select(func.count(Category.id)).where(Category.parent_id == category.id)
            )
            if has_children:
                raise ValidationError("Cannot delete category with subcategories")
            budget_id = category.budget_id
            parent_id = category.parent_id

            with self.ordering.hold(
                scope_key(Category, budget_id, parent_id),
                scope_key(Envelope, budget_id, category.id),
                scope_key(Envelope, budget_id, None),
            ):
                orphans = self.session.scalars(
                    select(Envelope)
                    .where(Envelope.category_id == category.id)
                    .order_by(Envelope.display_order, Envelope.created_at, Envelope.id)
                ).all()
                position = self.store.next_display_order(Envelope, budget_id, None)
                for envelope in orphans:
                    envelope.category_id = None
                    envelope.display_order = position
                    position += 1
                self.session.execute(
                    update(Transaction)
                    .where(Transaction.category_id == category.id)
                    .values(category_id=None)
                    .execution_options(synchronize_session="fetch")
                )
                self.session.delete(category)
                self.store.flush()
                self.ordering.renumber(Category, budget_id, parent_id)
                self.ordering.renumber(Envelope, budget_id, None)
                self.store.commit()

        self.ctx.write(work, "CATEGORY_CHANGE")


class EnvelopeService:
    def __init__(self, ctx: LedgerContext, ordering: OrderingEngine) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.session: Session = ctx.store.session
        self.ordering = ordering

    def _listing(self, budget_id: int, label: str, *criteria) -> list[EnvelopeOut]:
        user_id = self.ctx.acting_user()

        def work() -> list[EnvelopeOut]:
            self.store.require_budget(budget_id, user_id)
            stmt = (
                select(Envelope)
                .where(Envelope.budget_id == budget_id, *criteria)
                .order_by(Envelope.category_id, Envelope.display_order, Envelope.id)
            )
            return [EnvelopeOut.model_validate(e) for e in self.session.scalars(stmt)]

        return self.ctx.cached(
            cache_ns.ENVELOPES, cache_key(label, user_id, budget_id), work
        )

    def list(self, budget_id: int) -> list[EnvelopeOut]:
        return self._listing(budget_id, "list")

    def by_category(
        self, budget_id: int, category_id: Optional[int]
    ) -> list[EnvelopeOut]:
        scope = (
            Envelope.category_id.is_(None)
            if category_id is None
            else Envelope.category_id == category_id
        )
        return self._listing(
            budget_id, f"category-{category_id or 'none'}", scope
        )

    def low_balance(self, budget_id: int) -> list[EnvelopeOut]:
        return self._listing(
            budget_id,
            "low-balance",
            Envelope.is_active.is_(True),
            Envelope.notify_on_low_balance.is_(True),
            Envelope.low_balance_threshold_cents.is_not(None),
            Envelope.current_balance_cents <= Envelope.low_balance_threshold_cents,
        )

    def negative(self, budget_id: int) -> list[EnvelopeOut]:
        return self._listing(
            budget_id, "negative", Envelope.current_balance_cents < 0
        )

    def _load(self, envelope_id: int) -> Envelope:
        envelope = self.session.get(Envelope, envelope_id)
        if not envelope:
            raise NotFoundError("Envelope not found")
        self.store.require_budget(envelope.budget_id, self.ctx.user_id)
        return envelope

    def get(self, envelope_id: int) -> Envelope:
        return self.ctx.read(lambda: self._load(envelope_id))

    def _check_category(self, budget_id: int, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        if self.store.get_category(budget_id, category_id) is None:
            raise NotFoundError("Category not found or does not belong to this budget")

    def create(self, budget_id: int, data: EnvelopeIn) -> Envelope:
        def work() -> Envelope:
            self.store.require_budget(budget_id, self.ctx.user_id)
            self._check_category(budget_id, data.category_id)
            with self.ordering.hold(scope_key(Envelope, budget_id, data.category_id)):
                if data.display_order is None:
                    position = self.store.next_display_order(
                        Envelope, budget_id, data.category_id
                    )
                else:
                    position = data.display_order
                    self.store.make_room(
                        Envelope, budget_id, data.category_id, position
                    )
                envelope = Envelope(
                    budget_id=budget_id,
                    category_id=data.category_id,
                    name=_clean(data.name),
                    description=data.description,
                    envelope_type=data.envelope_type,
                    target_amount_cents=optional_cents(data.target_amount),
                    display_order=position,
                    notify_on_low_balance=data.notify_on_low_balance,
                    low_balance_threshold_cents=optional_cents(
                        data.low_balance_threshold
                    ),
                )
                self.store.add(envelope)
                self.store.flush()
                self.ordering.renumber(Envelope, budget_id, data.category_id)
                self.store.commit()
            self.store.refresh(envelope)
            return envelope

        return self.ctx.write(work, "ENVELOPE_CHANGE")

    def update(self, envelope_id: int, data: EnvelopeUpdate) -> Envelope:
        def work() -> Envelope:
            envelope = self._load(envelope_id)
            changes = data.model_dump(exclude_unset=True)
            moving = (
                "category_id" in changes
                and changes["category_id"] != envelope.category_id
            )
            scopes = (
                (
                    scope_key(Envelope, envelope.budget_id, envelope.category_id),
                    scope_key(Envelope, envelope.budget_id, changes["category_id"]),
                )
                if moving
                else ()
            )
            with self.ordering.hold(*scopes):
                if moving:
                    self._check_category(envelope.budget_id, changes["category_id"])
                    old_category = envelope.category_id
                    envelope.display_order = self.store.next_display_order(
                        Envelope, envelope.budget_id, changes["category_id"]
                    )
                    envelope.category_id = changes["category_id"]
                    self.store.flush()
                    self.ordering.renumber(Envelope, envelope.budget_id, old_category)
                if changes.get("name") is not None:
                    envelope.name = _clean(changes["name"])
                if "description" in changes:
                    envelope.description = changes["description"]
                if changes.get("envelope_type") is not None:
                    envelope.envelope_type = changes["envelope_type"]
                if "target_amount" in changes:
                    envelope.target_amount_cents = optional_cents(
                        changes["target_amount"]
                    )
                if changes.get("notify_on_low_balance") is not None:
                    envelope.notify_on_low_balance = changes["notify_on_low_balance"]
                if "low_balance_threshold" in changes:
                    envelope.low_balance_threshold_cents = optional_cents(
                        changes["low_balance_threshold"]
                    )
                if changes.get("is_active") is not None:
                    envelope.is_active = changes["is_active"]
                self.store.commit()
            self.store.refresh(envelope)
            return envelope

        return self.ctx.write(work, "ENVELOPE_CHANGE")

    def delete(self, envelope_id: int) -> None:
        def work() -> None:
            envelope = self._load(envelope_id)
            if envelope.current_balance_cents != 0:
                raise ValidationError(
                    "Cannot delete envelope with non-zero balance. "
                    "Transfer the funds to another envelope first."
                )
            if self.store.is_referenced(
                Transaction.from_envelope_id, envelope.id
            ) or self.store.is_referenced(Transaction.to_envelope_id, envelope.id):
                raise ValidationError(
                    "Cannot delete envelope with transaction history; "
                    "deactivate it instead"
                )
            budget_id, category_id = envelope.budget_id, envelope.category_id
            with self.ordering.hold(scope_key(Envelope, budget_id, category_id)):
                self.session.delete(envelope)
                self.store.flush()
                self.ordering.renumber(Envelope, budget_id, category_id)
                self.store.commit()

        self.ctx.write(work, "ENVELOPE_CHANGE")


class PayeeService:
    def __init__(self, ctx: LedgerContext) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.session: Session = ctx.store.session

    def list(self, budget_id: int) -> list[PayeeOut]:
        user_id = self.ctx.acting_user()

        def work() -> list[PayeeOut]:
            self.store.require_budget(budget_id, user_id)
            stmt = (
                select(Payee)
                .where(Payee.budget_id == budget_id)
                .order_by(func.lower(Payee.name), Payee.id)
            )
            return [PayeeOut.model_validate(p) for p in self.session.scalars(stmt)]

        return self.ctx.cached(cache_ns.PAYEES, cache_key("list", user_id, budget_id), work)

    def _load(self, payee_id: int) -> Payee:
        payee = self.session.get(Payee, payee_id)
        if not payee:
            raise NotFoundError("Payee not found")
        self.store.require_budget(payee.budget_id, self.ctx.user_id)
        return payee

    def get(self, payee_id: int) -> Payee:
        return self.ctx.read(lambda: self._load(payee_id))

    def _ensure_unique(
        self, budget_id: int, name: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Payee.id).where(
            Payee.budget_id == budget_id, func.lower(Payee.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Payee.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise AlreadyExistsError("Payee with this name already exists")

    def create(self, budget_id: int, data: PayeeIn) -> Payee:
        def work() -> Payee:
            self.store.require_budget(budget_id, self.ctx.user_id)
            name = _clean(data.name)
            self._ensure_unique(budget_id, name)
            payee = Payee(budget_id=budget_id, name=name, description=data.description)
            self.store.add(payee)
            self.store.commit()
            self.store.refresh(payee)
            return payee

        return self.ctx.write(work, "PAYEE_CHANGE")

    def update(self, payee_id: int, data: PayeeUpdate) -> Payee:
        def work() -> Payee:
            payee = self._load(payee_id)
            changes = data.model_dump(exclude_unset=True)
            if changes.get("name") is not None:
                name = _clean(changes["name"])
                self._ensure_unique(payee.budget_id, name, exclude_id=payee.id)
                payee.name = name
            if "description" in changes:
                payee.description = changes["description"]
            if changes.get("is_active") is not None:
                payee.is_active = changes["is_active"]
            self.store.commit()
            self.store.refresh(payee)
            return payee

        return self.ctx.write(work, "PAYEE_CHANGE")

    def delete(self, payee_id: int) -> None:
        def work() -> None:
            payee = self._load(payee_id)
            if self.store.is_referenced(Transaction.payee_id, payee.id):
                raise ValidationError(
                    "Cannot delete payee with transactions; deactivate it instead"
                )
            self.session.delete(payee)
            self.store.commit()

        self.ctx.write(work, "PAYEE_CHANGE")

    def search(self, budget_id: int, query: str, limit: int = 10) -> list[PayeeOut]:
        needle = query.strip().lower()
        payees = [p for p in self.list(budget_id) if p.is_active]
        if not needle:
            return payees[:limit]
        by_id = {p.id: p for p in payees}
        matches = process.extract(
            needle,
            {p.id: p.name.lower() for p in payees},
            scorer=fuzz.WRatio,
            score_cutoff=SEARCH_SCORE_CUTOFF,
            limit=None,
        )
        # Substring hits first, then by fuzzy score, then by name.
        ranked = sorted(
            matches,
            key=lambda m: (needle not in m[0], -m[1], m[0]),
        )
        return [by_id[payee_id] for _name, _score, payee_id in ranked[:limit]]

    def top(self, budget_id: int, limit: int = 10) -> list[PayeeOut]:
        payees = [p for p in self.list(budget_id) if p.total_paid_cents > 0]
        payees.sort(key=lambda p: (-p.total_paid_cents, p.name.lower()))
        return payees[:limit]


class IncomeSourceService:
    def __init__(
        self, ctx: LedgerContext, today: Callable[[], date] = local_today
    ) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.session: Session = ctx.store.session
        self.today = today

    def list(self, budget_id: int) -> list[IncomeSourceOut]:
        user_id = self.ctx.acting_user()

        def work() -> list[IncomeSourceOut]:
            self.store.require_budget(budget_id, user_id)
            stmt = (
                select(IncomeSource)
                .where(IncomeSource.budget_id == budget_id)
                .order_by(func.lower(IncomeSource.name), IncomeSource.id)
            )
            return [
                IncomeSourceOut.model_validate(s) for s in self.session.scalars(stmt)
            ]

        return self.ctx.cached(
            cache_ns.INCOME_SOURCES, cache_key("list", user_id, budget_id), work
        )

    def upcoming(self, budget_id: int, days: int = 30) -> list[IncomeSourceOut]:
        today = self.today()
        horizon = today + timedelta(days=days)
        sources = [
            s
            for s in self.list(budget_id)
            if s.is_active
            and s.next_expected_date is not None
            and today <= s.next_expected_date <= horizon
        ]
        return sorted(sources, key=lambda s: (s.next_expected_date, s.id))

    def overdue(self, budget_id: int) -> list[IncomeSourceOut]:
        today = self.today()
        sources = [
            s
            for s in self.list(budget_id)
            if s.is_active
            and s.next_expected_date is not None
            and s.next_expected_date < today
        ]
        return sorted(sources, key=lambda s: (s.next_expected_date, s.id))

    def _load(self, income_source_id: int) -> IncomeSource:
        source = self.session.get(IncomeSource, income_source_id)
        if not source:
            raise NotFoundError("Income source not found")
        self.store.require_budget(source.budget_id, self.ctx.user_id)
        return source

    def get(self, income_source_id: int) -> IncomeSource:
        return self.ctx.read(lambda: self._load(income_source_id))

    def _first_expected(self, schedule_type, config) -> Optional[date]:
        # A payday falling on today still counts as upcoming.
        yesterday = self.today() - timedelta(days=1)
        return next_expected_date(schedule_type, config, yesterday)

    def create(self, budget_id: int, data: IncomeSourceIn) -> IncomeSource:
        def work() -> IncomeSource:
            self.store.require_budget(budget_id, self.ctx.user_id)
            validate_schedule(data.schedule_type, data.schedule_config)
            expected = data.next_expected_date or self._first_expected(
                data.schedule_type, data.schedule_config
            )
            source = IncomeSource(
                budget_id=budget_id,
                name=_clean(data.name),
                description=data.description,
                expected_amount_cents=optional_cents(data.expected_amount),
                schedule_type=data.schedule_type,
                schedule_config=data.schedule_config,
                next_expected_date=expected,
            )
            self.store.add(source)
            self.store.commit()
            self.store.refresh(source)
            return source

        return self.ctx.write(work, "INCOME_SOURCE_CHANGE")

    def update(self, income_source_id: int, data: IncomeSourceUpdate) -> IncomeSource:
        def work() -> IncomeSource:
            source = self._load(income_source_id)
            changes = data.model_dump(exclude_unset=True)
            if changes.get("name") is not None:
                source.name = _clean(changes["name"])
            if "description" in changes:
                source.description = changes["description"]
            if "expected_amount" in changes:
                source.expected_amount_cents = optional_cents(changes["expected_amount"])
            if changes.get("is_active") is not None:
                source.is_active = changes["is_active"]
            if "schedule_type" in changes or "schedule_config" in changes:
                schedule_type = changes.get("schedule_type", source.schedule_type)
                config = changes.get("schedule_config", source.schedule_config)
                validate_schedule(schedule_type, config)
                source.schedule_type = schedule_type
                source.schedule_config = config
                if "next_expected_date" not in changes:
                    source.next_expected_date = self._first_expected(
                        schedule_type, config
                    )
            if "next_expected_date" in changes:
                source.next_expected_date = changes["next_expected_date"]
            self.store.commit()
            self.store.refresh(source)
            return source

        return self.ctx.write(work, "INCOME_SOURCE_CHANGE")

    def delete(self, income_source_id: int) -> None:
        def work() -> None:
            source = self._load(income_source_id)
            if self.store.is_referenced(Transaction.income_source_id, source.id):
                raise ValidationError(
                    "Cannot delete income source with transactions; "
                    "deactivate it instead"
                )
            self.session.delete(source)
            self.store.commit()

        self.ctx.write(work, "INCOME_SOURCE_CHANGE")


class TransactionService:
    def __init__(self, ctx: LedgerContext, validator: TransactionValidator) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.session: Session = ctx.store.session
        self.validator = validator

    def create(self, budget_id: int, data: TransactionIn) -> Transaction:
        def work() -> Transaction:
            self.store.require_budget(budget_id, self.ctx.user_id)
            kind = self.validator.validate(data, budget_id)
            txn = Transaction(
                budget_id=budget_id,
                transaction_type=kind,
                amount_cents=to_cents(data.amount),
                transaction_date=data.transaction_date,
                description=data.description,
                from_envelope_id=data.from_envelope_id,
                to_envelope_id=data.to_envelope_id,
                payee_id=data.payee_id,
                income_source_id=data.income_source_id,
                category_id=data.category_id,
                is_cleared=data.is_cleared,
                is_reconciled=data.is_reconciled,
            )
            self.store.add(txn)
            self.store.apply_effects(txn, 1)
            self.store.commit()
            self.store.refresh(txn)
            return txn

        txn = self.ctx.write(work, "TRANSACTION_CHANGE")
        logger.info(
            "transaction_created: id=%s type=%s budget=%s",
            txn.id,
            txn.transaction_type.value,
            budget_id,
        )
        return txn

    def _load(self, transaction_id: int) -> Transaction:
        txn = self.store.get_transaction(transaction_id)
        if not txn or txn.is_deleted:
            raise NotFoundError("Transaction not found")
        self.store.require_budget(txn.budget_id, self.ctx.user_id)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        return self.ctx.read(lambda: self._load(transaction_id))

    @staticmethod
    def _merge(txn: Transaction, patch: TransactionPatch) -> TransactionIn:
        current: dict[str, Any] = {
            "transaction_type": txn.transaction_type.value,
            "amount": cents_to_decimal(txn.amount_cents),
            "transaction_date": txn.transaction_date,
            "description": txn.description,
            "from_envelope_id": txn.from_envelope_id,
            "to_envelope_id": txn.to_envelope_id,
            "payee_id": txn.payee_id,
            "income_source_id": txn.income_source_id,
            "category_id": txn.category_id,
            "is_cleared": txn.is_cleared,
            "is_reconciled": txn.is_reconciled,
        }
        for field in patch.model_fields_set:
            value = getattr(patch, field)
            if value is None and field in (
                "transaction_type",
                "amount",
                "transaction_date",
                "is_cleared",
                "is_reconciled",
            ):
                continue
            current[field] = value
        return TransactionIn(**current)

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        touched = patch.model_fields_set

        def work() -> Transaction:
            txn = self._load(transaction_id)
            proposed = self._merge(txn, patch)
            structural = {"transaction_type", "category_id", *REFERENCE_FIELDS}
            if touched & structural:
                kind = self.validator.validate(proposed, txn.budget_id)
            else:
                self.validator.check_common(proposed)
                kind = txn.transaction_type

            old_payee_id = txn.payee_id
            self.store.apply_effects(txn, -1)
            txn.transaction_type = kind
            txn.amount_cents = to_cents(proposed.amount)
            txn.transaction_date = proposed.transaction_date
            txn.description = proposed.description
            txn.from_envelope_id = proposed.from_envelope_id
            txn.to_envelope_id = proposed.to_envelope_id
            txn.payee_id = proposed.payee_id
            txn.income_source_id = proposed.income_source_id
            txn.category_id = proposed.category_id
            txn.is_cleared = proposed.is_cleared
            txn.is_reconciled = proposed.is_reconciled
            self.store.apply_effects(txn, 1)
            if old_payee_id is not None and old_payee_id != txn.payee_id:
                self.store.refresh_last_payment(old_payee_id)
            self.store.commit()
            self.store.refresh(txn)
            return txn

        return self.ctx.write(work, "TRANSACTION_CHANGE")

    def soft_delete(self, transaction_id: int) -> None:
        def work() -> None:
            txn = self._load(transaction_id)
            txn.is_deleted = True
            txn.deleted_at = datetime.utcnow()
            txn.deleted_by = self.ctx.user_id
            self.store.apply_effects(txn, -1)
            self.store.commit()

        self.ctx.write(work, "TRANSACTION_CHANGE")
        logger.info("transaction_deleted: id=%s", transaction_id)

    def restore(self, transaction_id: int) -> Transaction:
        def work() -> Transaction:
            user_id = self.ctx.user_id
            txn = self.store.get_transaction(transaction_id)
            if not txn or not txn.is_deleted or txn.deleted_by != user_id:
                raise NotFoundError(
                    "Deleted transaction not found or you cannot restore it"
                )
            self.store.require_budget(txn.budget_id, user_id)
            txn.is_deleted = False
            txn.deleted_at = None
            txn.deleted_by = None
            self.store.apply_effects(txn, 1)
            self.store.commit()
            self.store.refresh(txn)
            return txn

        txn = self.ctx.write(work, "TRANSACTION_CHANGE")
        logger.info("transaction_restored: id=%s", transaction_id)
        return txn

    def list(
        self,
        budget_id: int,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        if filters.min_amount is not None:
            check_filter_amount(filters.min_amount, "min_amount")
        if filters.max_amount is not None:
            check_filter_amount(filters.max_amount, "max_amount")

        def work() -> list[Transaction]:
            self.store.require_budget(budget_id, self.ctx.user_id)
            stmt = (
                select(Transaction)
                .where(
                    Transaction.budget_id == budget_id,
                    Transaction.is_deleted.is_(False),
                )
                .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
                .offset(offset)
                .limit(limit)
            )
            if filters.start_date:
                stmt = stmt.where(Transaction.transaction_date >= filters.start_date)
            if filters.end_date:
                stmt = stmt.where(Transaction.transaction_date <= filters.end_date)
            if filters.transaction_type:
                stmt = stmt.where(
                    Transaction.transaction_type == filters.transaction_type
                )
            if filters.envelope_id:
                stmt = stmt.where(envelope_filter(filters.envelope_id))
            if filters.payee_id:
                stmt = stmt.where(Transaction.payee_id == filters.payee_id)
            if filters.income_source_id:
                stmt = stmt.where(
                    Transaction.income_source_id == filters.income_source_id
                )
            if filters.category_id:
                stmt = stmt.where(Transaction.category_id == filters.category_id)
            if filters.is_cleared is not None:
                stmt = stmt.where(Transaction.is_cleared.is_(filters.is_cleared))
            if filters.is_reconciled is not None:
                stmt = stmt.where(Transaction.is_reconciled.is_(filters.is_reconciled))
            if filters.min_amount is not None:
                stmt = stmt.where(
                    Transaction.amount_cents >= to_cents(filters.min_amount)
                )
            if filters.max_amount is not None:
                stmt = stmt.where(
                    Transaction.amount_cents <= to_cents(filters.max_amount)
                )
            return list(self.session.scalars(stmt).all())

        return self.ctx.read(work)

    def recent(self, budget_id: int, limit: int = 10) -> list[Transaction]:
        return self.list(budget_id, TransactionFilters(), limit=limit)

    def deleted(self, budget_id: int, limit: int = 200) -> list[Transaction]:
        def work() -> list[Transaction]:
            user_id = self.ctx.user_id
            self.store.require_budget(budget_id, user_id)
            stmt = (
                select(Transaction)
                .where(
                    Transaction.budget_id == budget_id,
                    Transaction.is_deleted.is_(True),
                    Transaction.deleted_by == user_id,
                )
                .order_by(Transaction.deleted_at.desc(), Transaction.id.desc())
                .limit(limit)
            )
            return list(self.session.scalars(stmt).all())

        return self.ctx.read(work)


@dataclass
class LedgerServices:
    budgets: BudgetService
    categories: CategoryService
    envelopes: EnvelopeService
    payees: PayeeService
    income_sources: IncomeSourceService
    transactions: TransactionService
    ordering: OrderingEngine


def build_services(
    session: Session,
    identity: IdentityProvider,
    cache: LedgerCache,
    locks: ScopeLocks,
    *,
    today: Callable[[], date] = local_today,
    resilience: Optional[ResilienceWrapper] = None,
) -> LedgerServices:
    store = LedgerStore(session)
    resilience = resilience or ResilienceWrapper(identity, on_failure=store.rollback)
    ordering = OrderingEngine(store, identity, cache, locks, resilience)
    ctx = LedgerContext(store, identity, cache, resilience)
    return LedgerServices(
        budgets=BudgetService(ctx),
        categories=CategoryService(ctx, ordering),
        envelopes=EnvelopeService(ctx, ordering),
        payees=PayeeService(ctx),
        income_sources=IncomeSourceService(ctx, today=today),
        transactions=TransactionService(
            ctx, TransactionValidator(store, today=today)
        ),
        ordering=ordering,
    )
