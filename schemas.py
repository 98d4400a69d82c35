from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import Category, Frequency


class RecurringRuleIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    amount_cents: int
    category: Category = Category.others
    note: str = Field(default="", max_length=500)
    tags: list[str] = Field(default_factory=list)
    frequency: Frequency
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    start_date: date
    end_date: Optional[date] = None

    @field_validator("title", "note", mode="before")
    @classmethod
    def _strip(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for tag in value:
            tag = tag.strip()
            if tag and tag not in cleaned:
                cleaned.append(tag)
        return cleaned

    @model_validator(mode="after")
    def _check_schedule(self) -> "RecurringRuleIn":
        if self.frequency == Frequency.weekly and self.day_of_week is None:
            raise ValueError("day_of_week is required for weekly frequency")
        if self.frequency == Frequency.monthly and self.day_of_month is None:
            raise ValueError("day_of_month is required for monthly frequency")
        if self.frequency != Frequency.weekly:
            self.day_of_week = None
        if self.frequency != Frequency.monthly:
            self.day_of_month = None
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class RecurringRuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    amount_cents: Optional[int] = None
    category: Optional[Category] = None
    note: Optional[str] = None
    tags: Optional[list[str]] = None
    frequency: Optional[Frequency] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class RecurringRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    title: str
    amount_cents: int
    category: Category
    note: str
    tags: list[str]
    frequency: Frequency
    day_of_week: Optional[int]
    day_of_month: Optional[int]
    start_date: date
    end_date: Optional[date]
    is_active: bool
    last_processed_date: Optional[date]
    next_process_date: Optional[date]


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    amount_cents: int
    category: Category
    note: str
    tags: list[str]
    entry_date: date
    origin_rule_id: Optional[int]


class RuleResult(BaseModel):
    rule_id: int
    title: str
    processed: bool
    reason: Optional[str] = None
    entry_id: Optional[int] = None


class BatchResult(BaseModel):
    total: int
    processed: int
    results: list[RuleResult] = Field(default_factory=list)
    attempted: int = 0
    skipped: int = 0
    cancelled: bool = False
