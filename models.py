from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


RECURRING_TAG = "recurring"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Category(str, Enum):
    food = "Food"
    entertainment = "Entertainment"
    travel = "Travel"
    shopping = "Shopping"
    savings = "Savings"
    income = "Income"
    others = "Others"
    utilities = "Utilities"


CATEGORY_ENUM = SAEnum(
    Category,
    name="ledgercategory",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class RecurringRule(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Category] = mapped_column(
        CATEGORY_ENUM, nullable=False, default=Category.others
    )
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    # Sunday = 0, matching the weekday numbering exposed to clients.
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Processing cursor, written only by the scheduler.
    last_processed_date: Mapped[Optional[date]] = mapped_column(Date)
    next_process_date: Mapped[Optional[date]] = mapped_column(Date)
    cursor_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)",
            name="ck_rule_day_of_week_range",
        ),
        CheckConstraint(
            "day_of_month IS NULL OR (day_of_month >= 1 AND day_of_month <= 31)",
            name="ck_rule_day_of_month_range",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_rule_end_after_start",
        ),
        Index("ix_rules_active_next", "is_active", "next_process_date"),
        Index("ix_rules_user", "user_id"),
    )


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Category] = mapped_column(
        CATEGORY_ENUM, nullable=False, default=Category.others
    )
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Plain column, no FK: deleting a rule keeps the entries it produced.
    origin_rule_id: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        Index("ix_ledger_user_date", "user_id", "entry_date"),
        Index("ix_ledger_origin_rule", "origin_rule_id", "entry_date"),
    )
