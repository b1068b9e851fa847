from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Iterator, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from errors import (
    CalculationFailed,
    NotFoundOrAccessDenied,
    StaleAggregateDetected,
    StoreUnavailable,
    ValidationError,
)
from models import (
    Category,
    MonthlyMetric,
    Property,
    Transaction,
    TransactionType,
    utcnow,
)
from periods import YearMonth, affected_periods, iter_months, local_today
from schemas import CategoryIn, PropertyIn, TransactionIn

logger = logging.getLogger(__name__)

METRIC_FIELDS = (
    "total_income_cents",
    "total_expenses_cents",
    "cash_flow_cents",
    "transaction_count",
)


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"Store unavailable while {action}") from exc


@dataclass(frozen=True)
class MonthlyMetricsCalculation:
    property_id: int
    year: int
    month: int
    total_income_cents: int
    total_expenses_cents: int
    cash_flow_cents: int
    transaction_count: int


@dataclass(frozen=True)
class MetricsValidation:
    is_valid: bool
    calculated: MonthlyMetricsCalculation
    stored: Optional[MonthlyMetricsCalculation] = None
    # Freshly calculated value of every field that disagrees with the stored row.
    differences: Optional[dict[str, int]] = None

    def raise_for_stale(self) -> None:
        if not self.is_valid:
            raise StaleAggregateDetected(self)


@dataclass(frozen=True)
class PropertyFailure:
    property_id: int
    error: str


@dataclass
class UserReconciliation:
    updated_properties: int = 0
    updated_months: int = 0
    failures: list[PropertyFailure] = field(default_factory=list)


def calculate_monthly_metrics(
    session: Session, user_id: int, property_id: int, year: int, month: int
) -> MonthlyMetricsCalculation:
    period = YearMonth(year, month)
    stmt = (
        select(
            Transaction.type,
            func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            func.count(Transaction.id).label("count"),
        )
        .where(
            Transaction.user_id == user_id,
            Transaction.property_id == property_id,
            Transaction.deleted_at.is_(None),
            Transaction.transaction_date.between(period.start, period.end),
        )
        .group_by(Transaction.type)
    )
    try:
        rows = session.execute(stmt).all()
    except SQLAlchemyError as exc:
        raise CalculationFailed(
            f"Failed to calculate monthly metrics for property {property_id} "
            f"{period.label}"
        ) from exc

    income = 0
    expenses = 0
    count = 0
    for row in rows:
        if row.type == TransactionType.income:
            income += int(row.total or 0)
        else:
            expenses += int(row.total or 0)
        count += int(row.count or 0)

    return MonthlyMetricsCalculation(
        property_id=property_id,
        year=period.year,
        month=period.month,
        total_income_cents=income,
        total_expenses_cents=expenses,
        cash_flow_cents=income - expenses,
        transaction_count=count,
    )


def upsert_monthly_metrics(
    session: Session, user_id: int, metrics: MonthlyMetricsCalculation
) -> None:
    """Insert or update one aggregate row in a single statement.

    SQLite and PostgreSQL get a native ``ON CONFLICT DO UPDATE`` on the
    (property_id, year, month) key. Other dialects read and write in the
    current transaction and rely on the caller's per-period lock.
    """
    now = utcnow()
    totals = {name: getattr(metrics, name) for name in METRIC_FIELDS}
    dialect = session.get_bind().dialect.name

    insert = None
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert

    if insert is not None:
        stmt = insert(MonthlyMetric).values(
            property_id=metrics.property_id,
            year=metrics.year,
            month=metrics.month,
            user_id=user_id,
            created_at=now,
            updated_at=now,
            **totals,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["property_id", "year", "month"],
            set_={**totals, "updated_at": now},
        )
        session.execute(stmt)
        return

    row = session.get(
        MonthlyMetric,
        (metrics.property_id, metrics.year, metrics.month),
        populate_existing=True,
    )
    if row is None:
        row = MonthlyMetric(
            property_id=metrics.property_id,
            year=metrics.year,
            month=metrics.month,
            user_id=user_id,
        )
        session.add(row)
    for name, value in totals.items():
        setattr(row, name, value)
    row.updated_at = now
    session.flush()


class _PeriodLocks:
    """One lock per (property_id, year, month) so that a calculation and its
    write are never interleaved with another writer of the same period."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, number of threads holding or waiting on it]
        self._locks: dict[tuple[int, int, int], list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: tuple[int, int, int]) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[key]


_period_locks = _PeriodLocks()


class ReconciliationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _get_property(self, property_id: int) -> Property:
        with store_errors("loading property"):
            prop = self.session.scalar(
                select(Property).where(
                    Property.id == property_id,
                    Property.user_id == self.user_id,
                    Property.deleted_at.is_(None),
                )
            )
        if not prop:
            raise NotFoundOrAccessDenied("Property")
        return prop

    def _reconcile_period(
        self, property_id: int, period: YearMonth
    ) -> MonthlyMetricsCalculation:
        with _period_locks.hold((property_id, period.year, period.month)):
            try:
                metrics = calculate_monthly_metrics(
                    self.session,
                    self.user_id,
                    property_id,
                    period.year,
                    period.month,
                )
                upsert_monthly_metrics(self.session, self.user_id, metrics)
                self.session.commit()
            except CalculationFailed:
                self.session.rollback()
                raise
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise StoreUnavailable(
                    f"Failed to upsert monthly metrics for property {property_id} "
                    f"{period.label}"
                ) from exc
        logger.debug(
            f"reconcile_period: user_id={self.user_id} property_id={property_id} "
            f"period={period.label} count={metrics.transaction_count}"
        )
        return metrics

    def reconcile_period(
        self, property_id: int, year: int, month: int
    ) -> MonthlyMetricsCalculation:
        period = YearMonth(year, month)
        self._get_property(property_id)
        return self._reconcile_period(property_id, period)

    def reconcile_property(
        self,
        property_id: int,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> int:
        if from_date and to_date and from_date > to_date:
            raise ValidationError("from_date must not be after to_date")
        self._get_property(property_id)

        stmt = select(
            func.min(Transaction.transaction_date),
            func.max(Transaction.transaction_date),
            func.count(Transaction.id),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.property_id == property_id,
            Transaction.deleted_at.is_(None),
        )
        if from_date:
            stmt = stmt.where(Transaction.transaction_date >= from_date)
        if to_date:
            stmt = stmt.where(Transaction.transaction_date <= to_date)
        with store_errors("reading transaction date range"):
            earliest, latest, count = self.session.execute(stmt).one()

        if not count:
            logger.info(
                f"reconcile_property: user_id={self.user_id} "
                f"property_id={property_id} no transactions in range"
            )
            return 0

        months = list(iter_months(from_date or earliest, to_date or latest))
        for period in months:
            self._reconcile_period(property_id, period)

        logger.info(
            f"reconcile_property: user_id={self.user_id} property_id={property_id} "
            f"from={months[0].label} to={months[-1].label} months={len(months)}"
        )
        return len(months)

    def reconcile_user(
        self, from_date: Optional[date] = None, to_date: Optional[date] = None
    ) -> UserReconciliation:
        if from_date and to_date and from_date > to_date:
            raise ValidationError("from_date must not be after to_date")
        with store_errors("listing properties"):
            property_ids = self.session.scalars(
                select(Property.id)
                .where(
                    Property.user_id == self.user_id,
                    Property.deleted_at.is_(None),
                )
                .order_by(Property.id)
            ).all()

        summary = UserReconciliation()
        for property_id in property_ids:
            try:
                months = self.reconcile_property(property_id, from_date, to_date)
            except (StoreUnavailable, NotFoundOrAccessDenied) as exc:
                self.session.rollback()
                logger.exception(
                    f"reconcile_user: user_id={self.user_id} "
                    f"property_id={property_id} failed"
                )
                summary.failures.append(PropertyFailure(property_id, str(exc)))
                continue
            summary.updated_properties += 1
            summary.updated_months += months

        logger.info(
            f"reconcile_user: user_id={self.user_id} "
            f"properties={summary.updated_properties} "
            f"months={summary.updated_months} failures={len(summary.failures)}"
        )
        return summary

    def validate(self, property_id: int, year: int, month: int) -> MetricsValidation:
        period = YearMonth(year, month)
        self._get_property(property_id)

        with store_errors("reading monthly metrics"):
            row = self.session.execute(
                select(
                    MonthlyMetric.total_income_cents,
                    MonthlyMetric.total_expenses_cents,
                    MonthlyMetric.cash_flow_cents,
                    MonthlyMetric.transaction_count,
                ).where(
                    MonthlyMetric.user_id == self.user_id,
                    MonthlyMetric.property_id == property_id,
                    MonthlyMetric.year == period.year,
                    MonthlyMetric.month == period.month,
                )
            ).first()
        calculated = calculate_monthly_metrics(
            self.session, self.user_id, property_id, period.year, period.month
        )
        if row is None:
            return MetricsValidation(is_valid=False, calculated=calculated)

        stored = MonthlyMetricsCalculation(
            property_id=property_id,
            year=period.year,
            month=period.month,
            **{name: int(row._mapping[name]) for name in METRIC_FIELDS},
        )
        differences = {
            name: getattr(calculated, name)
            for name in METRIC_FIELDS
            if getattr(stored, name) != getattr(calculated, name)
        }
        return MetricsValidation(
            is_valid=not differences,
            calculated=calculated,
            stored=stored,
            differences=differences or None,
        )

    def cleanup(self) -> int:
        stmt = (
            delete(MonthlyMetric)
            .where(
                MonthlyMetric.user_id == self.user_id,
                MonthlyMetric.total_income_cents == 0,
                MonthlyMetric.total_expenses_cents == 0,
                MonthlyMetric.transaction_count == 0,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailable("Failed to clean up empty monthly metrics") from exc
        deleted = int(result.rowcount or 0)
        logger.info(f"cleanup: user_id={self.user_id} deleted={deleted}")
        return deleted

    def status(self, property_id: Optional[int] = None) -> dict[str, object]:
        if property_id is not None:
            self._get_property(property_id)

        metric_filters = [MonthlyMetric.user_id == self.user_id]
        txn_filters = [
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
        ]
        if property_id is not None:
            metric_filters.append(MonthlyMetric.property_id == property_id)
            txn_filters.append(Transaction.property_id == property_id)

        with store_errors("reading monthly metrics status"):
            total_metrics = int(
                self.session.execute(
                    select(func.count()).select_from(MonthlyMetric).where(*metric_filters)
                ).scalar_one()
            )
            per_property = self.session.execute(
                select(MonthlyMetric.property_id, func.count().label("count"))
                .where(*metric_filters)
                .group_by(MonthlyMetric.property_id)
                .order_by(MonthlyMetric.property_id)
            ).all()
            zero_metrics = int(
                self.session.execute(
                    select(func.count())
                    .select_from(MonthlyMetric)
                    .where(
                        *metric_filters,
                        MonthlyMetric.total_income_cents == 0,
                        MonthlyMetric.total_expenses_cents == 0,
                        MonthlyMetric.transaction_count == 0,
                    )
                ).scalar_one()
            )
            earliest = self.session.execute(
                select(MonthlyMetric.year, MonthlyMetric.month)
                .where(*metric_filters)
                .order_by(MonthlyMetric.year.asc(), MonthlyMetric.month.asc())
                .limit(1)
            ).first()
            latest = self.session.execute(
                select(MonthlyMetric.year, MonthlyMetric.month)
                .where(*metric_filters)
                .order_by(MonthlyMetric.year.desc(), MonthlyMetric.month.desc())
                .limit(1)
            ).first()
            last_updated = self.session.execute(
                select(func.max(MonthlyMetric.updated_at)).where(*metric_filters)
            ).scalar_one()
            txn_count, first_txn, last_txn = self.session.execute(
                select(
                    func.count(Transaction.id),
                    func.min(Transaction.transaction_date),
                    func.max(Transaction.transaction_date),
                ).where(*txn_filters)
            ).one()
            recent = self.session.execute(
                select(
                    MonthlyMetric.property_id,
                    Property.name,
                    MonthlyMetric.year,
                    MonthlyMetric.month,
                    MonthlyMetric.total_income_cents,
                    MonthlyMetric.total_expenses_cents,
                    MonthlyMetric.cash_flow_cents,
                    MonthlyMetric.transaction_count,
                    MonthlyMetric.updated_at,
                )
                .join(Property, Property.id == MonthlyMetric.property_id)
                .where(*metric_filters)
                .order_by(
                    MonthlyMetric.year.desc(),
                    MonthlyMetric.month.desc(),
                    MonthlyMetric.updated_at.desc(),
                )
                .limit(5)
            ).all()

        def label(row) -> Optional[str]:
            return YearMonth(row.year, row.month).label if row else None

        return {
            "overview": {
                "total_monthly_metrics": total_metrics,
                "properties_with_metrics": len(per_property),
                "metrics_with_zero_values": zero_metrics,
                "total_transactions": int(txn_count or 0),
            },
            "date_range": {
                "earliest_metrics": label(earliest),
                "latest_metrics": label(latest),
                "earliest_transaction": first_txn,
                "latest_transaction": last_txn,
                "last_updated": last_updated,
            },
            "recent_metrics": [
                {
                    "property_id": row.property_id,
                    "property_name": row.name,
                    "period": label(row),
                    "total_income_cents": row.total_income_cents,
                    "total_expenses_cents": row.total_expenses_cents,
                    "cash_flow_cents": row.cash_flow_cents,
                    "transaction_count": row.transaction_count,
                    "updated_at": row.updated_at,
                }
                for row in recent
            ],
            "properties": [
                {"property_id": row.property_id, "metrics_count": int(row.count)}
                for row in per_property
            ],
        }


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(
        self,
        transaction_type: Optional[TransactionType] = None,
        include_inactive: bool = False,
    ) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        if transaction_type:
            stmt = stmt.where(Category.type == transaction_type)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        category = Category(name=data.name.strip(), type=data.type, is_active=data.is_active)
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValidationError("Category with this name already exists") from exc
        self.session.refresh(category)
        return category


class PropertyService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, property_id: int) -> Property:
        prop = self.session.scalar(
            select(Property).where(
                Property.id == property_id,
                Property.user_id == self.user_id,
                Property.deleted_at.is_(None),
            )
        )
        if not prop:
            raise NotFoundOrAccessDenied("Property")
        return prop

    def list_all(self) -> list[Property]:
        stmt = (
            select(Property)
            .where(Property.user_id == self.user_id, Property.deleted_at.is_(None))
            .order_by(Property.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: PropertyIn) -> Property:
        prop = Property(
            user_id=self.user_id,
            name=data.name.strip(),
            address=data.address,
            purchase_price_cents=data.purchase_price_cents,
            market_value_cents=data.market_value_cents,
            rent_cents=data.rent_cents,
        )
        self.session.add(prop)
        with store_errors("creating property"):
            self.session.commit()
        self.session.refresh(prop)
        logger.info(f"property_created: user_id={self.user_id} property_id={prop.id}")
        return prop

    def update(self, property_id: int, data: PropertyIn) -> Property:
        prop = self.get(property_id)
        prop.name = data.name.strip()
        prop.address = data.address
        prop.purchase_price_cents = data.purchase_price_cents
        prop.market_value_cents = data.market_value_cents
        prop.rent_cents = data.rent_cents
        with store_errors("updating property"):
            self.session.commit()
        return prop

    def soft_delete(self, property_id: int) -> int:
        """Tombstone the property and its live transactions.

        The property's aggregates are reconciled down to zero rows so that
        cleanup prunes them. Returns the number of transactions deleted.
        """
        prop = self.get(property_id)
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.property_id == prop.id,
                Transaction.deleted_at.is_(None),
            )
        ).all()
        now = utcnow()
        periods: set[YearMonth] = set()
        for txn in txns:
            txn.deleted_at = now
            periods |= affected_periods(txn.transaction_date)
        prop.deleted_at = now
        with store_errors("deleting property"):
            self.session.commit()

        reconciler = ReconciliationService(self.session, self.user_id)
        for period in sorted(periods):
            reconciler._reconcile_period(prop.id, period)
        logger.info(
            f"property_deleted: user_id={self.user_id} property_id={prop.id} "
            f"transactions={len(txns)} periods={len(periods)}"
        )
        return len(txns)


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check(self, data: TransactionIn) -> None:
        if data.transaction_date > local_today():
            raise ValidationError("Transaction date cannot be in the future")
        PropertyService(self.session, self.user_id).get(data.property_id)
        if data.category_id is not None:
            category = self.session.get(Category, data.category_id)
            if not category or not category.is_active:
                raise ValidationError("Category not found")
            if category.type != data.type:
                raise ValidationError("Category type mismatch")

    def _reconcile(self, property_id: int, periods: Iterable[YearMonth]) -> None:
        reconciler = ReconciliationService(self.session, self.user_id)
        for period in sorted(periods):
            reconciler._reconcile_period(property_id, period)

    def _commit(self, action: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailable(f"Store unavailable while {action}") from exc

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundOrAccessDenied("Transaction")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        self._check(data)
        txn = Transaction(
            user_id=self.user_id,
            property_id=data.property_id,
            category_id=data.category_id,
            type=data.type,
            amount_cents=data.amount_cents,
            transaction_date=data.transaction_date,
            is_recurring=data.is_recurring,
            description=data.description,
        )
        self.session.add(txn)
        self._commit("creating transaction")
        self.session.refresh(txn)

        periods = affected_periods(txn.transaction_date)
        self._reconcile(txn.property_id, periods)
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"property_id={txn.property_id} periods={sorted(p.label for p in periods)}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._check(data)

        old_date = txn.transaction_date
        old_property_id = txn.property_id

        txn.property_id = data.property_id
        txn.category_id = data.category_id
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.transaction_date = data.transaction_date
        txn.is_recurring = data.is_recurring
        txn.description = data.description
        self._commit("updating transaction")
        self.session.refresh(txn)

        if old_property_id != txn.property_id:
            self._reconcile(old_property_id, affected_periods(old_date))
            self._reconcile(txn.property_id, affected_periods(txn.transaction_date))
        else:
            self._reconcile(
                txn.property_id, affected_periods(txn.transaction_date, old_date)
            )
        logger.info(
            f"transaction_updated: user_id={self.user_id} id={txn.id} "
            f"old_date={old_date.isoformat()} new_date={txn.transaction_date.isoformat()}"
        )
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is not None:
            return
        txn.deleted_at = utcnow()
        self._commit("deleting transaction")
        self._reconcile(txn.property_id, affected_periods(txn.transaction_date))
        logger.info(f"transaction_deleted: user_id={self.user_id} id={txn.id}")

    def restore(self, transaction_id: int) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is None:
            return
        PropertyService(self.session, self.user_id).get(txn.property_id)
        txn.deleted_at = None
        self._commit("restoring transaction")
        self._reconcile(txn.property_id, affected_periods(txn.transaction_date))
        logger.info(f"transaction_restored: user_id={self.user_id} id={txn.id}")

    def bulk_soft_delete(self, transaction_ids: list[int]) -> int:
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.id.in_(transaction_ids),
                Transaction.deleted_at.is_(None),
            )
        ).all()
        if not txns:
            return 0
        now = utcnow()
        touched: dict[int, set[YearMonth]] = {}
        for txn in txns:
            txn.deleted_at = now
            touched.setdefault(txn.property_id, set()).update(
                affected_periods(txn.transaction_date)
            )
        self._commit("deleting transactions")
        for property_id in sorted(touched):
            self._reconcile(property_id, touched[property_id])
        logger.info(
            f"transactions_bulk_deleted: user_id={self.user_id} count={len(txns)}"
        )
        return len(txns)
