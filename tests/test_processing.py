import threading
from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base, make_engine
from models import Category, Frequency, LedgerEntry, RecurringRule
from recurrence import CONCURRENT_RUN_REASON, RecurringEngine
from store import RecurringStore


MONDAY = date(2024, 3, 4)


def _rule(**overrides) -> RecurringRule:
    values = dict(
        user_id=1,
        title="Groceries",
        amount_cents=-5000,
        category=Category.food,
        note="",
        tags=["household"],
        frequency=Frequency.weekly,
        day_of_week=1,
        start_date=date(2024, 1, 1),
        end_date=None,
        is_active=True,
        last_processed_date=None,
        next_process_date=MONDAY,
    )
    values.update(overrides)
    return RecurringRule(**values)


def _memory_engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _file_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return engine


def _entries(engine) -> list[LedgerEntry]:
    with Session(engine) as session:
        return list(session.scalars(select(LedgerEntry)).all())


def test_processing_materializes_entry_and_advances_cursor():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add(_rule())
        session.commit()

    with Session(engine) as session:
        rule = session.scalars(select(RecurringRule)).one()
        outcome = RecurringEngine(session).process_rule(rule, MONDAY)

        assert outcome.processed is True
        assert outcome.entry_id is not None
        assert rule.last_processed_date == MONDAY
        assert rule.next_process_date == date(2024, 3, 11)

    entries = _entries(engine)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.title == "Groceries"
    assert entry.amount_cents == -5000
    assert entry.category == Category.food
    assert entry.entry_date == MONDAY
    assert entry.note == "Recurring: weekly"
    assert entry.tags == ["household", "recurring"]


def test_processing_keeps_rule_note_and_does_not_duplicate_tag():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add(_rule(note="Weekly shop", tags=["recurring"]))
        session.commit()
        rule = session.scalars(select(RecurringRule)).one()
        RecurringEngine(session).process_rule(rule, MONDAY)

    entry = _entries(engine)[0]
    assert entry.note == "Weekly shop"
    assert entry.tags == ["recurring"]


def test_second_attempt_same_day_is_rejected():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add(_rule(frequency=Frequency.daily, day_of_week=None))
        session.commit()
        rule = session.scalars(select(RecurringRule)).one()
        recurring = RecurringEngine(session)

        first = recurring.process_rule(rule, MONDAY)
        second = recurring.process_rule(rule, MONDAY)

    assert first.processed is True
    assert second.processed is False
    assert second.reason == "Already processed today"
    assert len(_entries(engine)) == 1


def test_eligibility_reasons_have_no_side_effects():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add_all(
            [
                _rule(title="Inactive", is_active=False),
                _rule(title="Future", start_date=date(2024, 4, 1)),
                _rule(
                    title="Ended",
                    start_date=date(2024, 1, 1),
                    end_date=date(2024, 3, 1),
                ),
                _rule(title="Later", next_process_date=date(2024, 3, 11)),
            ]
        )
        session.commit()
        rules = {r.title: r for r in session.scalars(select(RecurringRule)).all()}
        recurring = RecurringEngine(session)

        assert recurring.process_rule(rules["Inactive"], MONDAY).reason == "Rule is inactive"
        assert (
            recurring.process_rule(rules["Future"], MONDAY).reason
            == "Rule has not started yet"
        )
        assert recurring.process_rule(rules["Ended"], MONDAY).reason == "Rule has ended"
        assert recurring.process_rule(rules["Later"], MONDAY).reason == "Not due yet"

    assert _entries(engine) == []


def test_due_selection_applies_window_and_schedule():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add_all(
            [
                _rule(title="Due"),
                _rule(title="Inactive", is_active=False),
                _rule(
                    title="Future",
                    start_date=date(2024, 4, 1),
                    next_process_date=date(2024, 3, 1),
                ),
                _rule(
                    title="Ended",
                    end_date=date(2024, 3, 1),
                    next_process_date=date(2024, 3, 1),
                ),
                _rule(title="Ends today", end_date=MONDAY),
                _rule(
                    title="Not due",
                    last_processed_date=date(2024, 2, 26),
                    next_process_date=date(2024, 3, 11),
                ),
                _rule(title="Never run", next_process_date=date(2024, 3, 11)),
                _rule(
                    title="Unscheduled",
                    last_processed_date=date(2024, 2, 26),
                    next_process_date=None,
                ),
            ]
        )
        session.commit()

        due = RecurringEngine(session).select_due_rules(MONDAY)
        titles = {rule.title for rule in due}

    assert titles == {"Due", "Ends today", "Never run", "Unscheduled"}


def test_never_run_candidate_is_filtered_by_recheck():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add(_rule(next_process_date=date(2024, 3, 11)))
        session.commit()

        result = RecurringEngine(session).run_batch(MONDAY)

    assert result.total == 1
    assert result.processed == 0
    assert result.results[0].reason == "Not due yet"


def test_missing_next_process_date_is_processed():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add(
            _rule(last_processed_date=date(2024, 2, 26), next_process_date=None)
        )
        session.commit()
        rule = session.scalars(select(RecurringRule)).one()

        outcome = RecurringEngine(session).process_rule(rule, MONDAY)

        assert outcome.processed is True
        assert rule.next_process_date == date(2024, 3, 11)


def test_conditional_advance_only_matches_expected_cursor():
    engine = _memory_engine()
    with Session(engine) as session:
        session.add(_rule())
        session.commit()
        rule_id = session.scalars(select(RecurringRule.id)).one()
        store = RecurringStore(session)

        assert store.conditional_advance_cursor(rule_id, None, MONDAY, date(2024, 3, 11))
        assert not store.conditional_advance_cursor(
            rule_id, None, MONDAY, date(2024, 3, 11)
        )
        assert store.conditional_advance_cursor(
            rule_id, MONDAY, date(2024, 3, 11), date(2024, 3, 18), expected_version=1
        )
        assert not store.conditional_advance_cursor(
            rule_id, date(2024, 3, 11), date(2024, 3, 18), date(2024, 3, 25),
            expected_version=1,
        )
        session.commit()

        rule = session.get(RecurringRule, rule_id)
        session.refresh(rule)
        assert rule.last_processed_date == date(2024, 3, 11)
        assert rule.next_process_date == date(2024, 3, 18)
        assert rule.cursor_version == 2


def test_interleaved_runs_fire_exactly_once(tmp_path):
    engine = _file_engine(tmp_path)
    with Session(engine) as session:
        session.add(_rule())
        session.commit()
        rule_id = session.scalars(select(RecurringRule.id)).one()

    with Session(engine) as first_session, Session(engine) as second_session:
        # Both runs read the rule before either writes.
        first_rule = first_session.get(RecurringRule, rule_id)
        second_rule = second_session.get(RecurringRule, rule_id)
        assert first_rule.last_processed_date is None
        assert second_rule.last_processed_date is None

        first = RecurringEngine(first_session).process_rule(first_rule, MONDAY)
        second = RecurringEngine(second_session).process_rule(second_rule, MONDAY)

    assert first.processed is True
    assert second.processed is False
    assert second.reason == CONCURRENT_RUN_REASON
    assert len(_entries(engine)) == 1

    with Session(engine) as session:
        rule = session.get(RecurringRule, rule_id)
        assert rule.last_processed_date == MONDAY
        assert rule.next_process_date == date(2024, 3, 11)
        assert rule.cursor_version == 1


def test_concurrent_threads_fire_exactly_once(tmp_path):
    engine = _file_engine(tmp_path)
    with Session(engine) as session:
        session.add(_rule())
        session.commit()
        rule_id = session.scalars(select(RecurringRule.id)).one()

    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def worker():
        with Session(engine) as session:
            rule = session.get(RecurringRule, rule_id)
            barrier.wait(timeout=10)
            outcome = RecurringEngine(session).process_rule(rule, MONDAY)
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(outcomes) == 2
    assert sum(1 for outcome in outcomes if outcome.processed) == 1
    assert len(_entries(engine)) == 1
