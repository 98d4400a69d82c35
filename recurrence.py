import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from config import get_settings
from models import RECURRING_TAG, Frequency, LedgerEntry, RecurringRule
from schemas import BatchResult, RuleResult
from store import RecurringStore


logger = logging.getLogger(__name__)

CONCURRENT_RUN_REASON = "Already processed by a concurrent run"


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def weekday_index(value: date) -> int:
    """Weekday with Sunday = 0 through Saturday = 6."""
    return (value.weekday() + 1) % 7


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def _coerce_frequency(frequency: Union[Frequency, str]) -> Optional[Frequency]:
    try:
        return Frequency(frequency)
    except ValueError:
        return None


def calculate_next_date(
    frequency: Union[Frequency, str],
    reference: Union[date, datetime],
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> date:
    """Next occurrence strictly after ``reference``.

    Weekly rules with a weekday land on the next matching day, a full week
    out when ``reference`` already falls on it. Monthly rules clamp the
    requested day to the target month's length.
    """
    reference = as_date(reference)
    freq = _coerce_frequency(frequency)

    if freq == Frequency.weekly:
        if day_of_week is None:
            return reference + timedelta(weeks=1)
        days_ahead = (day_of_week - weekday_index(reference)) % 7 or 7
        return reference + timedelta(days=days_ahead)
    if freq == Frequency.monthly:
        desired_day = day_of_month if day_of_month is not None else reference.day
        return _add_months(reference, 1, desired_day=desired_day)
    if freq == Frequency.yearly:
        return _add_months(reference, 12, desired_day=reference.day)
    if freq is None:
        logger.warning(f"unknown_frequency: frequency={frequency!r} using daily")
    return reference + timedelta(days=1)


def first_occurrence(
    frequency: Union[Frequency, str],
    start_date: Union[date, datetime],
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> date:
    """First firing date on or after ``start_date``."""
    start_date = as_date(start_date)
    freq = _coerce_frequency(frequency)
    if freq == Frequency.weekly and day_of_week is not None:
        return calculate_next_date(
            freq, start_date - timedelta(days=1), day_of_week=day_of_week
        )
    if freq == Frequency.monthly and day_of_month is not None:
        dim = days_in_month(start_date.year, start_date.month)
        candidate = start_date.replace(day=min(day_of_month, dim))
        if candidate >= start_date:
            return candidate
        return _add_months(start_date, 1, desired_day=day_of_month)
    return start_date


def eligibility_reason(rule: RecurringRule, today: date) -> Optional[str]:
    if not rule.is_active:
        return "Rule is inactive"
    if rule.start_date > today:
        return "Rule has not started yet"
    if rule.end_date is not None and rule.end_date < today:
        return "Rule has ended"
    if rule.last_processed_date == today:
        return "Already processed today"
    # A missing next_process_date is treated as due.
    if rule.next_process_date is not None and rule.next_process_date > today:
        return "Not due yet"
    return None


def build_ledger_entry(rule: RecurringRule, today: date) -> LedgerEntry:
    tags = list(rule.tags or [])
    if RECURRING_TAG not in tags:
        tags.append(RECURRING_TAG)
    frequency = getattr(rule.frequency, "value", rule.frequency)
    return LedgerEntry(
        user_id=rule.user_id,
        title=rule.title,
        amount_cents=rule.amount_cents,
        category=rule.category,
        note=rule.note or f"Recurring: {frequency}",
        tags=tags,
        entry_date=today,
        origin_rule_id=rule.id,
    )


@dataclass
class RuleOutcome:
    processed: bool
    reason: Optional[str] = None
    entry_id: Optional[int] = None


class RecurringEngine:
    def __init__(self, session: Session, store: Optional[RecurringStore] = None) -> None:
        self.session = session
        self.store = store or RecurringStore(session)

    def select_due_rules(self, today: Optional[date] = None) -> list[RecurringRule]:
        today = as_date(today or local_today())
        return self.store.find_due_rule_candidates(today)

    def process_rule(
        self, rule: RecurringRule, today: Optional[date] = None
    ) -> RuleOutcome:
        today = as_date(today or local_today())
        reason = eligibility_reason(rule, today)
        if reason:
            return RuleOutcome(processed=False, reason=reason)

        rule_id = rule.id
        expected_last = rule.last_processed_date
        expected_version = rule.cursor_version
        try:
            next_date = calculate_next_date(
                rule.frequency, today, rule.day_of_week, rule.day_of_month
            )
            entry_id = self.store.create_ledger_entry(build_ledger_entry(rule, today))
            advanced = self.store.conditional_advance_cursor(
                rule_id,
                expected_last,
                today,
                next_date,
                expected_version=expected_version,
            )
            if not advanced:
                # Drops the ledger entry written above.
                self.session.rollback()
                logger.info(f"recurring_rule_skipped: rule_id={rule_id} concurrent")
                return RuleOutcome(processed=False, reason=CONCURRENT_RUN_REASON)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.exception(f"recurring_rule_failed: rule_id={rule_id}")
            return RuleOutcome(processed=False, reason=str(exc))

        set_committed_value(rule, "last_processed_date", today)
        set_committed_value(rule, "next_process_date", next_date)
        set_committed_value(rule, "cursor_version", expected_version + 1)
        logger.info(
            f"recurring_rule_processed: rule_id={rule_id} entry_id={entry_id} "
            f"next={next_date.isoformat()}"
        )
        return RuleOutcome(processed=True, entry_id=entry_id)

    def run_batch(
        self,
        today: Optional[date] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        today = as_date(today or local_today())
        # Errors here propagate: without a due set there is nothing to isolate.
        rules = self.select_due_rules(today)
        logger.info(f"recurring_batch: date={today.isoformat()} candidates={len(rules)}")

        # Read before any per-rule rollback expires the loaded rows.
        candidates = [(rule, rule.id, rule.title) for rule in rules]
        results: list[RuleResult] = []
        cancelled = False
        for rule, rule_id, title in candidates:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info(
                    f"recurring_batch_cancelled: attempted={len(results)} "
                    f"remaining={len(rules) - len(results)}"
                )
                break
            try:
                outcome = self.process_rule(rule, today)
            except Exception as exc:
                self.session.rollback()
                logger.exception(f"recurring_rule_failed: rule_id={rule_id}")
                outcome = RuleOutcome(processed=False, reason=str(exc))
            results.append(
                RuleResult(
                    rule_id=rule_id,
                    title=title,
                    processed=outcome.processed,
                    reason=outcome.reason,
                    entry_id=outcome.entry_id,
                )
            )

        return BatchResult(
            total=len(rules),
            attempted=len(results),
            # Candidates left untouched after a cancellation.
            skipped=len(rules) - len(results),
            processed=sum(1 for r in results if r.processed),
            results=results,
            cancelled=cancelled,
        )
