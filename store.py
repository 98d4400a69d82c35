from datetime import date
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from models import LedgerEntry, RecurringRule


class RecurringStore:
    """Read/write contract the scheduler has with the durable store.

    Every write goes through the caller's session; committing or rolling
    back is left to the caller so a ledger insert and the cursor advance
    can share one transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_due_rule_candidates(self, today: date) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.is_active.is_(True),
                RecurringRule.start_date <= today,
                or_(
                    RecurringRule.end_date.is_(None),
                    RecurringRule.end_date >= today,
                ),
                or_(
                    RecurringRule.next_process_date <= today,
                    RecurringRule.last_processed_date.is_(None),
                    RecurringRule.next_process_date.is_(None),
                ),
            )
            .order_by(RecurringRule.next_process_date, RecurringRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def create_ledger_entry(self, entry: LedgerEntry) -> int:
        self.session.add(entry)
        self.session.flush()
        return entry.id

    def conditional_advance_cursor(
        self,
        rule_id: int,
        expected_last_processed_date: Optional[date],
        new_last_processed_date: date,
        new_next_process_date: date,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Advance the cursor only if nobody else advanced it since it was read.

        Returns False when the stored ``last_processed_date`` (or version)
        no longer matches, which means another run got there first.
        """
        if expected_last_processed_date is None:
            last_matches = RecurringRule.last_processed_date.is_(None)
        else:
            last_matches = (
                RecurringRule.last_processed_date == expected_last_processed_date
            )
        conditions = [RecurringRule.id == rule_id, last_matches]
        if expected_version is not None:
            conditions.append(RecurringRule.cursor_version == expected_version)

        stmt = (
            update(RecurringRule)
            .where(*conditions)
            .values(
                last_processed_date=new_last_processed_date,
                next_process_date=new_next_process_date,
                cursor_version=RecurringRule.cursor_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def conditional_reschedule(
        self, rule_id: int, expected_version: int, new_next_process_date: date
    ) -> bool:
        """Move ``next_process_date`` unless the cursor moved since it was read.

        Bumps ``cursor_version`` so a batch that loaded the old schedule
        fails its own conditional advance instead of overwriting this one.
        """
        stmt = (
            update(RecurringRule)
            .where(
                RecurringRule.id == rule_id,
                RecurringRule.cursor_version == expected_version,
            )
            .values(
                next_process_date=new_next_process_date,
                cursor_version=RecurringRule.cursor_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def save_rule_definition(self, rule: RecurringRule) -> RecurringRule:
        self.session.add(rule)
        self.session.flush()
        return rule

    def delete_rule(self, rule_id: int) -> bool:
        result = self.session.execute(
            delete(RecurringRule).where(RecurringRule.id == rule_id)
        )
        return result.rowcount == 1

    def list_ledger_entries(
        self, user_id: int, origin_rule_id: Optional[int] = None
    ) -> list[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.user_id == user_id)
        if origin_rule_id is not None:
            stmt = stmt.where(LedgerEntry.origin_rule_id == origin_rule_id)
        stmt = stmt.order_by(LedgerEntry.entry_date.desc(), LedgerEntry.id.desc())
        return list(self.session.scalars(stmt).all())
