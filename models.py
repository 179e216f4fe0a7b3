from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

# Wide enough for quotes such as VND->USD (0.0000393) and USD->VND (25000).
RATE_TYPE = Numeric(24, 12)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class MonetaryRecordMixin:
    """Amount plus the provenance of currency conversions applied to it.

    ``amount_original_cents``/``currency_original`` are written once, by the
    first conversion that touches the record, and never again. The remaining
    four columns describe only the most recent conversion.
    """

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_original_cents: Mapped[Optional[int]] = mapped_column(Integer)
    currency_original: Mapped[Optional[str]] = mapped_column(String(3))
    conversion_rate: Mapped[Optional[Decimal]] = mapped_column(RATE_TYPE)
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    converted_from: Mapped[Optional[str]] = mapped_column(String(3))
    converted_to: Mapped[Optional[str]] = mapped_column(String(3))


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    currency_changes: Mapped[list["CurrencyChange"]] = relationship(
        "CurrencyChange",
        back_populates="user",
        order_by="CurrencyChange.changed_at",
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class Expense(Base, TimestampMixin, MonetaryRecordMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="expenses"
    )

    __table_args__ = (
        Index("ix_expenses_user_date", "user_id", "date"),
        Index("ix_expenses_user_category_date", "user_id", "category_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_expenses_amount_positive"),
    )


class Budget(Base, TimestampMixin, MonetaryRecordMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        CheckConstraint("year >= 2020", name="ck_budget_year_min"),
        UniqueConstraint(
            "category_id",
            "user_id",
            "month",
            "year",
            name="uq_budget_category_user_month",
        ),
        Index("ix_budget_user_month", "user_id", "month", "year"),
    )


class CurrencyChange(Base):
    __tablename__ = "currency_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(RATE_TYPE, nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    data_converted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    expenses_converted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    budgets_converted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="currency_changes")

    __table_args__ = (
        Index("ix_currency_changes_user_changed", "user_id", "changed_at"),
    )
