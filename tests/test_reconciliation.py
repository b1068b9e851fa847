from datetime import date
import threading

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    NotFoundOrAccessDenied,
    StaleAggregateDetected,
    StoreUnavailable,
    ValidationError,
)
from models import MonthlyMetric, Property, Transaction, TransactionType
from schemas import PropertyIn
from services import (
    PropertyFailure,
    PropertyService,
    ReconciliationService,
    _period_locks,
    _PeriodLocks,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_property(session, name: str = "Elm Street", user_id: int = 1) -> Property:
    return PropertyService(session, user_id).create(
        PropertyIn(name=name, purchase_price_cents=10_000_000, rent_cents=120_000)
    )


def add_txn(session, prop, kind, cents, day) -> Transaction:
    txn = Transaction(
        user_id=prop.user_id,
        property_id=prop.id,
        type=kind,
        amount_cents=cents,
        transaction_date=day,
    )
    session.add(txn)
    session.commit()
    return txn


def stored(session, property_id: int, year: int, month: int):
    row = session.execute(
        select(
            MonthlyMetric.total_income_cents,
            MonthlyMetric.total_expenses_cents,
            MonthlyMetric.cash_flow_cents,
            MonthlyMetric.transaction_count,
        ).where(
            MonthlyMetric.property_id == property_id,
            MonthlyMetric.year == year,
            MonthlyMetric.month == month,
        )
    ).first()
    return tuple(row) if row else None


def metric_count(session) -> int:
    return session.execute(select(func.count()).select_from(MonthlyMetric)).scalar_one()


def test_reconcile_period_is_idempotent() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 100_000, date(2024, 3, 10))
    add_txn(session, prop, TransactionType.expense, 30_000, date(2024, 3, 20))
    service = ReconciliationService(session, 1)

    first = service.reconcile_period(prop.id, 2024, 3)
    after_first = stored(session, prop.id, 2024, 3)
    second = service.reconcile_period(prop.id, 2024, 3)

    assert first == second
    assert after_first == stored(session, prop.id, 2024, 3) == (100_000, 30_000, 70_000, 2)
    assert metric_count(session) == 1


def test_reconciled_period_validates_clean() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 55_000, date(2024, 6, 1))
    service = ReconciliationService(session, 1)
    service.reconcile_period(prop.id, 2024, 6)

    validation = service.validate(prop.id, 2024, 6)

    assert validation.is_valid
    assert validation.differences is None
    assert validation.stored == validation.calculated
    validation.raise_for_stale()


def test_validate_without_stored_row_is_invalid() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 55_000, date(2024, 6, 1))

    validation = ReconciliationService(session, 1).validate(prop.id, 2024, 6)

    assert not validation.is_valid
    assert validation.stored is None
    assert validation.calculated.total_income_cents == 55_000


def test_validate_reports_calculated_values_of_mismatched_fields() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 80_000, date(2024, 7, 4))
    service = ReconciliationService(session, 1)
    service.reconcile_period(prop.id, 2024, 7)
    add_txn(session, prop, TransactionType.expense, 20_000, date(2024, 7, 9))

    validation = service.validate(prop.id, 2024, 7)

    assert not validation.is_valid
    assert validation.differences == {
        "total_expenses_cents": 20_000,
        "cash_flow_cents": 60_000,
        "transaction_count": 2,
    }
    with pytest.raises(StaleAggregateDetected) as exc:
        validation.raise_for_stale()
    assert exc.value.differences == validation.differences


def test_validate_rejects_month_out_of_range() -> None:
    session = make_session()
    prop = add_property(session)
    with pytest.raises(ValidationError):
        ReconciliationService(session, 1).validate(prop.id, 2024, 13)


def test_reconcile_property_covers_every_month_in_span() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 10_000, date(2024, 1, 15))
    add_txn(session, prop, TransactionType.income, 40_000, date(2024, 4, 2))

    updated = ReconciliationService(session, 1).reconcile_property(prop.id)

    assert updated == 4
    assert stored(session, prop.id, 2024, 1) == (10_000, 0, 10_000, 1)
    assert stored(session, prop.id, 2024, 2) == (0, 0, 0, 0)
    assert stored(session, prop.id, 2024, 4) == (40_000, 0, 40_000, 1)


def test_reconcile_property_uses_requested_bounds() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 10_000, date(2024, 2, 15))
    service = ReconciliationService(session, 1)

    assert service.reconcile_property(prop.id, date(2024, 1, 1), date(2024, 3, 31)) == 3
    assert service.reconcile_property(prop.id, date(2023, 1, 1), date(2023, 12, 31)) == 0
    with pytest.raises(ValidationError):
        service.reconcile_property(prop.id, date(2024, 3, 1), date(2024, 1, 1))


def test_reconcile_with_no_properties_is_a_noop() -> None:
    session = make_session()
    summary = ReconciliationService(session, 1).reconcile_user()
    assert summary.updated_properties == 0
    assert summary.updated_months == 0
    assert summary.failures == []


def test_foreign_property_is_not_found() -> None:
    session = make_session()
    prop = add_property(session, user_id=1)
    intruder = ReconciliationService(session, 2)

    with pytest.raises(NotFoundOrAccessDenied):
        intruder.reconcile_period(prop.id, 2024, 3)
    with pytest.raises(NotFoundOrAccessDenied):
        intruder.validate(prop.id, 2024, 3)
    with pytest.raises(NotFoundOrAccessDenied):
        intruder.reconcile_property(999)


def test_reconcile_user_continues_after_property_failure(monkeypatch) -> None:
    session = make_session()
    broken = add_property(session, "Broken")
    healthy = add_property(session, "Healthy")
    add_txn(session, broken, TransactionType.income, 10_000, date(2024, 1, 10))
    add_txn(session, healthy, TransactionType.income, 20_000, date(2024, 1, 10))
    add_txn(session, healthy, TransactionType.expense, 5_000, date(2024, 2, 10))

    real_reconcile = ReconciliationService.reconcile_property

    def flaky(self, property_id, from_date=None, to_date=None):
        if property_id == broken.id:
            raise StoreUnavailable("database is locked")
        return real_reconcile(self, property_id, from_date, to_date)

    monkeypatch.setattr(ReconciliationService, "reconcile_property", flaky)

    summary = ReconciliationService(session, 1).reconcile_user()

    assert summary.updated_properties == 1
    assert summary.updated_months == 2
    assert summary.failures == [PropertyFailure(broken.id, "database is locked")]
    assert stored(session, healthy.id, 2024, 2) == (0, 5_000, -5_000, 1)
    assert stored(session, broken.id, 2024, 1) is None


def test_cleanup_removes_only_all_zero_rows() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 10_000, date(2024, 1, 10))
    add_txn(session, prop, TransactionType.income, 10_000, date(2024, 3, 10))
    service = ReconciliationService(session, 1)
    service.reconcile_property(prop.id)
    assert metric_count(session) == 3

    deleted = service.cleanup()

    assert deleted == 1
    assert stored(session, prop.id, 2024, 2) is None
    assert stored(session, prop.id, 2024, 1) == (10_000, 0, 10_000, 1)
    assert stored(session, prop.id, 2024, 3) is not None


def test_cleanup_keeps_rows_with_any_nonzero_field() -> None:
    session = make_session()
    prop = add_property(session)
    service = ReconciliationService(session, 1)
    service.reconcile_period(prop.id, 2024, 5)
    session.execute(
        update(MonthlyMetric)
        .where(MonthlyMetric.property_id == prop.id)
        .values(transaction_count=1)
    )
    session.commit()

    assert service.cleanup() == 0
    assert metric_count(session) == 1


def test_cleanup_is_scoped_to_the_user() -> None:
    session = make_session()
    mine = add_property(session, user_id=1)
    theirs = add_property(session, user_id=2)
    ReconciliationService(session, 1).reconcile_period(mine.id, 2024, 5)
    ReconciliationService(session, 2).reconcile_period(theirs.id, 2024, 5)

    assert ReconciliationService(session, 1).cleanup() == 1
    assert stored(session, theirs.id, 2024, 5) == (0, 0, 0, 0)


def test_status_summarises_metrics() -> None:
    session = make_session()
    prop = add_property(session)
    add_txn(session, prop, TransactionType.income, 10_000, date(2024, 1, 10))
    add_txn(session, prop, TransactionType.income, 10_000, date(2024, 3, 10))
    ReconciliationService(session, 1).reconcile_property(prop.id)

    status = ReconciliationService(session, 1).status()

    assert status["overview"] == {
        "total_monthly_metrics": 3,
        "properties_with_metrics": 1,
        "metrics_with_zero_values": 1,
        "total_transactions": 2,
    }
    assert status["date_range"]["earliest_metrics"] == "2024-01"
    assert status["date_range"]["latest_metrics"] == "2024-03"
    assert status["date_range"]["earliest_transaction"] == date(2024, 1, 10)
    assert status["recent_metrics"][0]["period"] == "2024-03"
    assert status["recent_metrics"][0]["property_name"] == "Elm Street"


def test_concurrent_reconciles_of_one_period_leave_a_single_valid_row(tmp_path) -> None:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    setup = SessionLocal()
    prop = add_property(setup)
    add_txn(setup, prop, TransactionType.income, 100_000, date(2024, 3, 10))
    add_txn(setup, prop, TransactionType.expense, 40_000, date(2024, 3, 15))
    setup.close()

    barrier = threading.Barrier(2)
    errors: list[Exception] = []

    def worker() -> None:
        session = SessionLocal()
        try:
            barrier.wait()
            for _ in range(10):
                ReconciliationService(session, 1).reconcile_period(prop.id, 2024, 3)
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    check = SessionLocal()
    assert ReconciliationService(check, 1).validate(prop.id, 2024, 3).is_valid
    assert metric_count(check) == 1
    assert stored(check, prop.id, 2024, 3) == (100_000, 40_000, 60_000, 2)
    check.close()
    assert len(_period_locks) == 0
    engine.dispose()


def test_period_lock_excludes_same_key_and_is_released() -> None:
    locks = _PeriodLocks()
    entered = threading.Event()

    def contender() -> None:
        with locks.hold((1, 2024, 3)):
            entered.set()

    thread = threading.Thread(target=contender)
    with locks.hold((1, 2024, 3)):
        thread.start()
        assert not entered.wait(0.2)
        with locks.hold((1, 2024, 4)):
            assert len(locks) == 2
    thread.join()

    assert entered.is_set()
    assert len(locks) == 0
