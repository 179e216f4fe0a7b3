from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Type, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from currencies import normalize_currency, symbol_for
from fx_rates import RateResolver, build_rate_resolver, quantize_rate
from models import Budget, CurrencyChange, Expense, User, utcnow
from periods import MonthPeriod, resolve_month, trailing_months

logger = logging.getLogger(__name__)

NEAR_LIMIT_PERCENT = Decimal("80")

MonetaryModel = Union[Type[Expense], Type[Budget]]


class ValidationError(ValueError):
    """Malformed input from the caller."""


class ConfirmationRequired(Exception):
    """The user owns monetary records and has not said whether to convert them."""

    def __init__(
        self,
        *,
        expense_count: int,
        budget_count: int,
        current_currency: str,
        new_currency: str,
    ) -> None:
        self.expense_count = expense_count
        self.budget_count = budget_count
        self.current_currency = current_currency
        self.new_currency = new_currency
        super().__init__(
            f"Changing currency from {current_currency} to {new_currency} affects "
            f"{expense_count} expense(s) and {budget_count} budget(s); "
            "pass convert_existing explicitly"
        )


class PersistenceError(RuntimeError):
    """A write was rolled back; stored data is unchanged."""


def get_current_user_id() -> int:
    return 1


def convert_cents(cents: int, rate: Decimal) -> int:
    return int(
        (Decimal(cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


class UserStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_or_create(
        self, user_id: int, *, default_currency: Optional[str] = None
    ) -> User:
        user = self.session.get(User, user_id)
        if user:
            return user
        currency = normalize_currency(
            default_currency or get_settings().default_currency
        )
        user = User(id=user_id, currency=currency)
        self.session.add(user)
        try:
            self.session.flush()
        except IntegrityError:
            # Another request created the row between our read and insert.
            self.session.rollback()
            logger.info(f"user_create_raced: user_id={user_id}")
            user = self.session.get(User, user_id)
            if user is None:
                raise
        return user

    def get_currency(self, user_id: int) -> str:
        user = self.session.get(User, user_id)
        return user.currency if user else get_settings().default_currency

    def last_currency_change(self, user_id: int) -> Optional[CurrencyChange]:
        stmt = (
            select(CurrencyChange)
            .where(CurrencyChange.user_id == user_id)
            .order_by(CurrencyChange.changed_at.desc(), CurrencyChange.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)


class MonetaryStore:
    """Expenses and budgets of one user, reconverted as a single unit."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _count(self, model: MonetaryModel) -> int:
        return int(
            self.session.scalar(
                select(func.count()).select_from(model).where(
                    model.user_id == self.user_id
                )
            )
            or 0
        )

    def count_owned(self) -> tuple[int, int]:
        return self._count(Expense), self._count(Budget)

    def _reconvert_records(
        self,
        model: MonetaryModel,
        rate: Decimal,
        from_currency: str,
        to_currency: str,
        converted_at: datetime,
    ) -> int:
        records = self.session.scalars(
            select(model).where(model.user_id == self.user_id).order_by(model.id)
        ).all()
        for record in records:
            if record.amount_original_cents is None:
                record.amount_original_cents = record.amount_cents
            if record.currency_original is None:
                record.currency_original = from_currency
            record.amount_cents = convert_cents(record.amount_cents, rate)
            record.conversion_rate = rate
            record.converted_at = converted_at
            record.converted_from = from_currency
            record.converted_to = to_currency
        self.session.flush()
        return len(records)

    def bulk_reconvert(
        self,
        rate: Decimal,
        from_currency: str,
        to_currency: str,
        *,
        converted_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> tuple[int, int]:
        """Multiply every expense and budget amount of the user by ``rate``.

        Both tables change in the session's transaction or neither does. The
        original amount/currency of a record is recorded on its first
        conversion and left alone by every later one. With ``commit=False``
        the changes are only flushed so the caller can add writes to the same
        transaction before committing.
        """
        if not rate.is_finite() or quantize_rate(rate) <= 0:
            raise ValidationError("Conversion rate must be a positive number")
        rate = quantize_rate(rate)
        converted_at = converted_at or utcnow()
        try:
            budgets = self._reconvert_records(
                Budget, rate, from_currency, to_currency, converted_at
            )
            expenses = self._reconvert_records(
                Expense, rate, from_currency, to_currency, converted_at
            )
            if commit:
                self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.exception(
                f"reconvert_failed: user_id={self.user_id} "
                f"pair={from_currency}->{to_currency}"
            )
            raise PersistenceError(
                f"Currency conversion for user {self.user_id} was rolled back"
            ) from exc
        logger.info(
            f"reconvert_applied: user_id={self.user_id} pair={from_currency}->"
            f"{to_currency} rate={rate} expenses={expenses} budgets={budgets}"
        )
        return expenses, budgets


@dataclass(frozen=True)
class ConversionResult:
    previous_currency: str
    currency: str
    rate: Decimal
    changed: bool
    data_converted: bool = False
    expenses_converted: int = 0
    budgets_converted: int = 0
    changed_at: Optional[datetime] = None

    @property
    def currency_symbol(self) -> str:
        return symbol_for(self.currency)

    @property
    def message(self) -> str:
        if not self.changed:
            return f"Currency is already {self.currency}"
        if self.data_converted:
            return (
                f"Currency changed from {self.previous_currency} to {self.currency}; "
                f"converted {self.expenses_converted} expense(s) and "
                f"{self.budgets_converted} budget(s) at rate {self.rate}"
            )
        return (
            f"Currency changed from {self.previous_currency} to {self.currency}; "
            "existing data was not converted"
        )


class CurrencyService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        resolver: Optional[RateResolver] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        self._resolver = resolver

    @property
    def resolver(self) -> RateResolver:
        if self._resolver is None:
            self._resolver = build_rate_resolver()
        return self._resolver

    def change_currency(
        self, new_currency: str, convert_existing: Optional[bool] = None
    ) -> ConversionResult:
        try:
            target = normalize_currency(new_currency)
        except ValueError as exc:
            raise ValidationError(f"Invalid currency code: {new_currency!r}") from exc

        user = self.session.get(User, self.user_id)
        current = user.currency if user else get_settings().default_currency
        if target == current:
            return ConversionResult(
                previous_currency=current,
                currency=current,
                rate=Decimal("1"),
                changed=False,
            )

        store = MonetaryStore(self.session, self.user_id)
        expense_count, budget_count = store.count_owned()
        owns_records = expense_count > 0 or budget_count > 0
        if owns_records and convert_existing is None:
            raise ConfirmationRequired(
                expense_count=expense_count,
                budget_count=budget_count,
                current_currency=current,
                new_currency=target,
            )

        rate = self.resolver.resolve(current, target)

        changed_at = utcnow()
        expenses_converted = budgets_converted = 0
        data_converted = bool(convert_existing) and owns_records
        if data_converted:
            expenses_converted, budgets_converted = store.bulk_reconvert(
                rate, current, target, converted_at=changed_at, commit=False
            )

        try:
            if user is None:
                user = User(id=self.user_id, currency=target)
                self.session.add(user)
            else:
                user.currency = target
            self.session.add(
                CurrencyChange(
                    user_id=self.user_id,
                    from_currency=current,
                    to_currency=target,
                    rate=rate,
                    changed_at=changed_at,
                    data_converted=data_converted,
                    expenses_converted=expenses_converted,
                    budgets_converted=budgets_converted,
                )
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(
                f"currency_change_failed: user_id={self.user_id} pair={current}->{target}"
            )
            raise PersistenceError(
                f"Currency change for user {self.user_id} was rolled back"
            ) from exc

        logger.info(
            f"currency_changed: user_id={self.user_id} pair={current}->{target} "
            f"rate={rate} data_converted={data_converted}"
        )
        return ConversionResult(
            previous_currency=current,
            currency=target,
            rate=rate,
            changed=True,
            data_converted=data_converted,
            expenses_converted=expenses_converted,
            budgets_converted=budgets_converted,
            changed_at=changed_at,
        )


@dataclass(frozen=True)
class CategoryBudget:
    budget_id: int
    category_id: int
    category_name: str
    category_is_default: bool
    budget_cents: int
    spent_cents: int
    remaining_cents: int
    percentage_used: Decimal
    is_over_budget: bool
    is_near_limit: bool
    expense_count: int
    budget_original_cents: Optional[int] = None
    budget_original_currency: Optional[str] = None
    budget_conversion_rate: Optional[Decimal] = None
    budget_converted_at: Optional[datetime] = None


@dataclass(frozen=True)
class BudgetOverview:
    period: MonthPeriod
    currency: str
    total_budget_cents: int = 0
    total_spent_cents: int = 0
    total_remaining_cents: int = 0
    budget_count: int = 0
    over_budget_count: int = 0
    percentage_used: int = 0
    is_over_budget: bool = False
    near_limit_categories: int = 0
    categories: list[CategoryBudget] = field(default_factory=list)

    @property
    def currency_symbol(self) -> str:
        return symbol_for(self.currency)


@dataclass(frozen=True)
class BudgetAlerts:
    period: MonthPeriod
    over_budget: list[CategoryBudget]
    near_limit: list[CategoryBudget]

    @property
    def over_budget_count(self) -> int:
        return len(self.over_budget)

    @property
    def near_limit_count(self) -> int:
        return len(self.near_limit)

    @property
    def total_alerts(self) -> int:
        return self.over_budget_count + self.near_limit_count


@dataclass(frozen=True)
class TrendPoint:
    month: int
    year: int
    month_name: str
    total_budget_cents: int
    total_spent_cents: int
    percentage_used: int
    over_budget_count: int
    category_count: int


@dataclass(frozen=True)
class TrendSummary:
    periods_analyzed: int
    average_monthly_budget_cents: int
    average_spending_cents: int


def _round_int(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def _budgets_for(self, period: MonthPeriod) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self.user_id,
                Budget.month == period.month,
                Budget.year == period.year,
            )
        )
        budgets = []
        for budget in self.session.scalars(stmt).all():
            if budget.category is None:
                logger.warning(
                    f"budget_orphaned: user_id={self.user_id} budget_id={budget.id} "
                    f"category_id={budget.category_id}"
                )
                continue
            budgets.append(budget)
        return budgets

    def _spending_by_category(
        self, period: MonthPeriod, category_ids: list[int]
    ) -> dict[int, tuple[int, int]]:
        stmt = (
            select(
                Expense.category_id,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("spent"),
                func.count(Expense.id).label("expense_count"),
            )
            .where(
                Expense.user_id == self.user_id,
                Expense.category_id.in_(category_ids),
                Expense.date.between(period.start, period.end),
            )
            .group_by(Expense.category_id)
        )
        return {
            row.category_id: (int(row.spent or 0), int(row.expense_count or 0))
            for row in self.session.execute(stmt)
        }

    def overview(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> BudgetOverview:
        period = resolve_month(month, year, today=today)
        currency = UserStore(self.session).get_currency(self.user_id)
        budgets = self._budgets_for(period)
        if not budgets:
            return BudgetOverview(period=period, currency=currency)

        spending = self._spending_by_category(
            period, [budget.category_id for budget in budgets]
        )
        categories = []
        for budget in budgets:
            spent, expense_count = spending.get(budget.category_id, (0, 0))
            if budget.amount_cents > 0:
                percentage = Decimal(spent) * 100 / Decimal(budget.amount_cents)
            else:
                percentage = Decimal("0")
            is_over = spent > budget.amount_cents
            categories.append(
                CategoryBudget(
                    budget_id=budget.id,
                    category_id=budget.category_id,
                    category_name=budget.category.name,
                    category_is_default=budget.category.is_default,
                    budget_cents=budget.amount_cents,
                    spent_cents=spent,
                    remaining_cents=budget.amount_cents - spent,
                    percentage_used=percentage.quantize(
                        Decimal("0.01"), rounding=ROUND_HALF_UP
                    ),
                    is_over_budget=is_over,
                    is_near_limit=percentage >= NEAR_LIMIT_PERCENT and not is_over,
                    expense_count=expense_count,
                    budget_original_cents=budget.amount_original_cents,
                    budget_original_currency=budget.currency_original,
                    budget_conversion_rate=budget.conversion_rate,
                    budget_converted_at=budget.converted_at,
                )
            )
        # Ordinal comparison, so "Zoo" sorts before "apple".
        categories.sort(key=lambda c: c.category_name)

        total_budget = sum(b.amount_cents for b in budgets)
        total_spent = sum(c.spent_cents for c in categories)
        if total_budget > 0:
            overall = _round_int(Decimal(total_spent) * 100 / Decimal(total_budget))
        else:
            overall = 0
        return BudgetOverview(
            period=period,
            currency=currency,
            total_budget_cents=total_budget,
            total_spent_cents=total_spent,
            total_remaining_cents=total_budget - total_spent,
            budget_count=len(budgets),
            over_budget_count=sum(1 for c in categories if c.is_over_budget),
            percentage_used=overall,
            is_over_budget=total_spent > total_budget,
            near_limit_categories=sum(
                1 for c in categories if c.is_near_limit and not c.is_over_budget
            ),
            categories=categories,
        )

    def alerts(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> BudgetAlerts:
        overview = self.overview(month, year, today=today)
        return BudgetAlerts(
            period=overview.period,
            over_budget=[c for c in overview.categories if c.is_over_budget],
            near_limit=[
                c
                for c in overview.categories
                if c.is_near_limit and not c.is_over_budget
            ],
        )

    def trends(
        self, periods_back: int = 6, *, today: Optional[date] = None
    ) -> list[TrendPoint]:
        if (
            isinstance(periods_back, bool)
            or not isinstance(periods_back, int)
            or periods_back < 1
        ):
            raise ValidationError("periods_back must be a positive integer")
        points = []
        for period in trailing_months(periods_back, today=today):
            overview = self.overview(period.month, period.year)
            points.append(
                TrendPoint(
                    month=period.month,
                    year=period.year,
                    month_name=period.name,
                    total_budget_cents=overview.total_budget_cents,
                    total_spent_cents=overview.total_spent_cents,
                    percentage_used=overview.percentage_used,
                    over_budget_count=overview.over_budget_count,
                    category_count=overview.budget_count,
                )
            )
        return points

    @staticmethod
    def trends_summary(points: list[TrendPoint]) -> TrendSummary:
        if not points:
            return TrendSummary(0, 0, 0)
        count = Decimal(len(points))
        return TrendSummary(
            periods_analyzed=len(points),
            average_monthly_budget_cents=_round_int(
                sum(Decimal(p.total_budget_cents) for p in points) / count
            ),
            average_spending_cents=_round_int(
                sum(Decimal(p.total_spent_cents) for p in points) / count
            ),
        )

    def monthly_total(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        period = resolve_month(month, year, today=today)
        row = self.session.execute(
            select(
                func.coalesce(func.sum(Budget.amount_cents), 0).label("total"),
                func.count(Budget.id).label("category_count"),
            ).where(
                Budget.user_id == self.user_id,
                Budget.month == period.month,
                Budget.year == period.year,
            )
        ).one()
        return {
            "total_budget_cents": int(row.total or 0),
            "category_count": int(row.category_count or 0),
            "period": period,
        }


@dataclass(frozen=True)
class BackfillResult:
    user_id: int
    expenses_modified: int
    budgets_modified: int


def _backfill_model(session: Session, model: MonetaryModel, user: User) -> int:
    records = session.scalars(
        select(model).where(
            model.user_id == user.id,
            (model.amount_original_cents.is_(None))
            | (model.currency_original.is_(None)),
        )
    ).all()
    for record in records:
        if record.amount_original_cents is None:
            record.amount_original_cents = record.amount_cents
        if record.currency_original is None:
            record.currency_original = user.currency
    return len(records)


def backfill_originals(session: Session) -> list[BackfillResult]:
    """Record the current amount/currency as original where none is stored yet."""
    results = []
    try:
        for user in session.scalars(select(User).order_by(User.id)).all():
            expenses = _backfill_model(session, Expense, user)
            budgets = _backfill_model(session, Budget, user)
            logger.info(
                f"backfill_originals: user_id={user.id} expenses={expenses} "
                f"budgets={budgets}"
            )
            results.append(BackfillResult(user.id, expenses, budgets))
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("backfill_originals_failed")
        raise PersistenceError("Backfill of original amounts was rolled back") from exc
    return results
