from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import LedgerEntry, RecurringRule
from recurrence import RecurringEngine, calculate_next_date, first_occurrence
from schemas import BatchResult, RecurringRuleIn, RecurringRuleUpdate
from store import RecurringStore


logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = ("frequency", "day_of_week", "day_of_month", "start_date")
CURSOR_FIELDS = ("last_processed_date", "next_process_date", "cursor_version")


class RuleConflictError(ValueError):
    """The rule's cursor moved while a definition update was in progress."""


def get_current_user_id() -> int:
    return 1


def initial_next_process_date(
    data: RecurringRuleIn,
    last_processed_date: Optional[date] = None,
    first_run_on_start: Optional[bool] = None,
) -> date:
    """First date the scheduler should pick the rule up.

    By default this is one full period after ``start_date``. With
    ``first_run_on_start`` the start date itself fires when it matches.
    The result never lands on or before ``last_processed_date``.
    """
    if first_run_on_start is None:
        first_run_on_start = get_settings().first_run_on_start
    if first_run_on_start:
        next_date = first_occurrence(
            data.frequency, data.start_date, data.day_of_week, data.day_of_month
        )
    else:
        next_date = calculate_next_date(
            data.frequency, data.start_date, data.day_of_week, data.day_of_month
        )
    if last_processed_date is not None and next_date <= last_processed_date:
        next_date = calculate_next_date(
            data.frequency, last_processed_date, data.day_of_week, data.day_of_month
        )
    return next_date


class RecurringRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.store = RecurringStore(session)

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise ValueError("Recurring rule not found")
        return rule

    def list(self, is_active: Optional[bool] = None) -> list[RecurringRule]:
        stmt = select(RecurringRule).where(RecurringRule.user_id == self.user_id)
        if is_active is not None:
            stmt = stmt.where(RecurringRule.is_active.is_(is_active))
        stmt = stmt.order_by(RecurringRule.created_at.desc(), RecurringRule.id.desc())
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        rule = RecurringRule(
            user_id=self.user_id,
            title=data.title,
            amount_cents=data.amount_cents,
            category=data.category,
            note=data.note,
            tags=list(data.tags),
            frequency=data.frequency,
            day_of_week=data.day_of_week,
            day_of_month=data.day_of_month,
            start_date=data.start_date,
            end_date=data.end_date,
            is_active=True,
            next_process_date=initial_next_process_date(data),
        )
        self.store.save_rule_definition(rule)
        self.session.commit()
        self.session.refresh(rule)
        logger.info(
            f"recurring_rule_created: rule_id={rule.id} "
            f"next={rule.next_process_date.isoformat()}"
        )
        return rule

    def update(self, rule_id: int, changes: RecurringRuleUpdate) -> RecurringRule:
        rule = self.get(rule_id)
        updates = changes.model_dump(exclude_unset=True)
        merged = {
            "title": rule.title,
            "amount_cents": rule.amount_cents,
            "category": rule.category,
            "note": rule.note,
            "tags": list(rule.tags or []),
            "frequency": rule.frequency,
            "day_of_week": rule.day_of_week,
            "day_of_month": rule.day_of_month,
            "start_date": rule.start_date,
            "end_date": rule.end_date,
        }
        merged.update(updates)
        data = RecurringRuleIn(**merged)

        schedule_changed = any(
            getattr(data, field) != getattr(rule, field) for field in SCHEDULE_FIELDS
        )
        # A batch in another session may have advanced the cursor since load.
        self.session.refresh(rule, list(CURSOR_FIELDS))
        expected_version = rule.cursor_version
        next_date = None
        if schedule_changed:
            next_date = initial_next_process_date(data, rule.last_processed_date)

        for field, value in data.model_dump().items():
            setattr(rule, field, value)
        self.store.save_rule_definition(rule)
        # The cursor is only written through the guarded update, never the ORM.
        if next_date is not None and not self.store.conditional_reschedule(
            rule_id, expected_version, next_date
        ):
            self.session.rollback()
            logger.warning(f"recurring_rule_conflict: rule_id={rule_id}")
            raise RuleConflictError(
                "Recurring rule was processed during the update, retry"
            )
        self.session.commit()
        self.session.refresh(rule)
        if next_date is not None:
            logger.info(
                f"recurring_rule_rescheduled: rule_id={rule_id} "
                f"next={next_date.isoformat()}"
            )
        return rule

    def toggle_active(self, rule_id: int) -> RecurringRule:
        rule = self.get(rule_id)
        rule.is_active = not rule.is_active
        self.session.commit()
        self.session.refresh(rule)
        logger.info(f"recurring_rule_toggled: rule_id={rule_id} active={rule.is_active}")
        return rule

    def delete(self, rule_id: int) -> None:
        self.get(rule_id)
        self.store.delete_rule(rule_id)
        self.session.commit()

    def process_due(self, today: Optional[date] = None) -> BatchResult:
        engine = RecurringEngine(self.session, self.store)
        return engine.run_batch(today)


class LedgerService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self, origin_rule_id: Optional[int] = None) -> list[LedgerEntry]:
        return RecurringStore(self.session).list_ledger_entries(
            self.user_id, origin_rule_id=origin_rule_id
        )
