from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from operator import attrgetter
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import ValidationError
from granularity import (
    DISPLAY_TARGETS,
    Granularity,
    TimeWindow,
    TrendBucket,
    accumulate,
    bucket_count,
    bucket_start,
    build_trend,
    select_granularity,
    validate_granularity,
)
from models import Category, MonthlyMetric, Property, Transaction, TransactionType
from periods import month_end
from services import PropertyService, store_errors

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"

SORT_KEYS = {
    "net_income": "net_income_cents",
    "total_income": "total_income_cents",
    "total_expenses": "total_expenses_cents",
    "roi": "roi",
}

_CENT = Decimal("0.01")


def percent(numerator: int, denominator: int) -> float:
    """``numerator / denominator * 100`` rounded half up to two places; 0 for a zero denominator."""
    if not denominator:
        return 0.0
    value = Decimal(numerator) * 100 / Decimal(denominator)
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def cap_rate(rent_cents: int, market_value_cents: int) -> Optional[Decimal]:
    if not market_value_cents:
        return None
    return Decimal(rent_cents) * 12 * 100 / Decimal(market_value_cents)


def mean_rate(rates: Iterable[Optional[Decimal]]) -> float:
    values = [rate for rate in rates if rate is not None]
    if not values:
        return 0.0
    average = sum(values, Decimal(0)) / len(values)
    return float(average.quantize(_CENT, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class AnalyticsFilters:
    property_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def __post_init__(self) -> None:
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("date_from must not be after date_to")


@dataclass(frozen=True)
class PortfolioKPIs:
    total_properties: int
    total_income_cents: int
    total_expenses_cents: int
    net_income_cents: int
    cash_on_cash_return: float
    expense_to_income_ratio: float
    average_roi: float
    average_cap_rate: float
    total_portfolio_value_cents: int
    total_investment_cents: int


@dataclass(frozen=True)
class PropertyKPIs:
    property_id: int
    property_name: str
    total_income_cents: int
    total_expenses_cents: int
    net_income_cents: int
    cash_on_cash_return: float
    expense_to_income_ratio: float
    roi: float
    cap_rate: float
    purchase_price_cents: int
    market_value_cents: int
    rent_cents: int


@dataclass(frozen=True)
class ExpenseBreakdownItem:
    category_name: str
    amount_cents: int
    percentage: float
    transaction_count: int


@dataclass(frozen=True)
class PropertyRanking:
    property_id: int
    property_name: str
    net_income_cents: int
    total_income_cents: int
    total_expenses_cents: int
    roi: float


def rank(items: list, sort_by: str) -> list:
    """Descending by ``sort_by``; ties keep their incoming order."""
    return sorted(items, key=attrgetter(SORT_KEYS[sort_by]), reverse=True)


class AnalyticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _properties(self, filters: AnalyticsFilters) -> list[Property]:
        if filters.property_id is not None:
            with store_errors("loading property"):
                return [PropertyService(self.session, self.user_id).get(filters.property_id)]
        with store_errors("listing properties"):
            return PropertyService(self.session, self.user_id).list_all()

    def _ledger_filters(self, filters: AnalyticsFilters) -> list:
        clauses = [
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
            Transaction.property.has(Property.deleted_at.is_(None)),
        ]
        if filters.property_id is not None:
            clauses.append(Transaction.property_id == filters.property_id)
        if filters.date_from:
            clauses.append(Transaction.transaction_date >= filters.date_from)
        if filters.date_to:
            clauses.append(Transaction.transaction_date <= filters.date_to)
        return clauses

    def _totals_by_property(self, filters: AnalyticsFilters) -> dict[int, list[int]]:
        stmt = (
            select(
                Transaction.property_id,
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(*self._ledger_filters(filters))
            .group_by(Transaction.property_id, Transaction.type)
        )
        with store_errors("summing transactions"):
            rows = self.session.execute(stmt).all()
        totals: dict[int, list[int]] = {}
        for row in rows:
            bucket = totals.setdefault(row.property_id, [0, 0])
            if row.type == TransactionType.income:
                bucket[0] += int(row.total or 0)
            else:
                bucket[1] += int(row.total or 0)
        return totals

    def portfolio_kpis(self, filters: AnalyticsFilters) -> PortfolioKPIs:
        properties = self._properties(filters)
        totals = self._totals_by_property(filters)

        income = sum(values[0] for values in totals.values())
        expenses = sum(values[1] for values in totals.values())
        net = income - expenses
        investment = sum(prop.purchase_price_cents or 0 for prop in properties)
        portfolio_value = sum(prop.effective_market_value_cents for prop in properties)

        return PortfolioKPIs(
            total_properties=len(properties),
            total_income_cents=income,
            total_expenses_cents=expenses,
            net_income_cents=net,
            cash_on_cash_return=percent(net, investment),
            expense_to_income_ratio=percent(expenses, income),
            average_roi=percent(portfolio_value - investment, investment),
            average_cap_rate=mean_rate(
                cap_rate(prop.rent_cents or 0, prop.effective_market_value_cents)
                for prop in properties
            ),
            total_portfolio_value_cents=portfolio_value,
            total_investment_cents=investment,
        )

    def property_kpis(self, filters: AnalyticsFilters) -> list[PropertyKPIs]:
        properties = self._properties(filters)
        totals = self._totals_by_property(filters)

        out: list[PropertyKPIs] = []
        for prop in properties:
            income, expenses = totals.get(prop.id, (0, 0))
            net = income - expenses
            purchase_price = prop.purchase_price_cents or 0
            market_value = prop.effective_market_value_cents
            out.append(
                PropertyKPIs(
                    property_id=prop.id,
                    property_name=prop.name,
                    total_income_cents=income,
                    total_expenses_cents=expenses,
                    net_income_cents=net,
                    cash_on_cash_return=percent(net, purchase_price),
                    expense_to_income_ratio=percent(expenses, income),
                    roi=percent(market_value - purchase_price, purchase_price),
                    cap_rate=mean_rate([cap_rate(prop.rent_cents or 0, market_value)]),
                    purchase_price_cents=purchase_price,
                    market_value_cents=market_value,
                    rent_cents=prop.rent_cents or 0,
                )
            )
        return out

    def cash_flow_trend(
        self,
        filters: AnalyticsFilters,
        granularity: Optional[Granularity] = None,
    ) -> list[TrendBucket]:
        if granularity is not None and filters.date_from and filters.date_to:
            validate_granularity(
                granularity, TimeWindow(filters.date_from, filters.date_to)
            )
        if filters.property_id is not None:
            self._properties(filters)

        stmt = (
            select(
                Transaction.transaction_date,
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(*self._ledger_filters(filters))
            .group_by(Transaction.transaction_date, Transaction.type)
        )
        with store_errors("reading cash flow trend"):
            rows = self.session.execute(stmt).all()

        if not rows and (filters.date_from is None or filters.date_to is None):
            return []
        start = filters.date_from or min(row.transaction_date for row in rows)
        end = filters.date_to or max(row.transaction_date for row in rows)

        if granularity is None:
            granularity = select_granularity(TimeWindow(filters.date_from, end))
        else:
            validate_granularity(granularity, TimeWindow(start, end))

        totals = accumulate(
            (
                (row.transaction_date, row.type == TransactionType.income, row.total)
                for row in rows
            ),
            granularity,
        )
        trend = build_trend(totals, start, end, granularity)
        logger.debug(
            f"cash_flow_trend: user_id={self.user_id} granularity={granularity.value} "
            f"buckets={len(trend)}"
        )
        return trend

    def portfolio_trend(
        self,
        filters: AnalyticsFilters,
        granularity: Optional[Granularity] = None,
    ) -> list[TrendBucket]:
        """Trend read from the stored monthly aggregates instead of the ledger.

        Only month-aligned granularities are available. Without an explicit
        granularity, monthly buckets are used until they exceed the display
        target and yearly ones after that.
        """
        if granularity not in (None, Granularity.monthly, Granularity.yearly):
            raise ValidationError(
                "Portfolio trend supports monthly or yearly granularity only"
            )
        if filters.property_id is not None:
            self._properties(filters)

        period_key = MonthlyMetric.year * 12 + MonthlyMetric.month
        stmt = (
            select(
                MonthlyMetric.year,
                MonthlyMetric.month,
                func.sum(MonthlyMetric.total_income_cents).label("income"),
                func.sum(MonthlyMetric.total_expenses_cents).label("expenses"),
            )
            .join(Property, Property.id == MonthlyMetric.property_id)
            .where(
                MonthlyMetric.user_id == self.user_id,
                Property.deleted_at.is_(None),
            )
            .group_by(MonthlyMetric.year, MonthlyMetric.month)
        )
        if filters.property_id is not None:
            stmt = stmt.where(MonthlyMetric.property_id == filters.property_id)
        if filters.date_from:
            stmt = stmt.where(
                period_key >= filters.date_from.year * 12 + filters.date_from.month
            )
        if filters.date_to:
            stmt = stmt.where(
                period_key <= filters.date_to.year * 12 + filters.date_to.month
            )
        with store_errors("reading monthly metrics"):
            rows = self.session.execute(stmt).all()

        if not rows and (filters.date_from is None or filters.date_to is None):
            return []
        months = [date(row.year, row.month, 1) for row in rows]
        start = filters.date_from or min(months)
        end = filters.date_to or month_end(max(months))

        if granularity is None:
            fits = bucket_count(start, end, Granularity.monthly) <= DISPLAY_TARGETS[
                Granularity.monthly
            ]
            granularity = Granularity.monthly if fits else Granularity.yearly
        validate_granularity(granularity, TimeWindow(start, end))

        totals: dict[date, list[int]] = {}
        for row in rows:
            key = bucket_start(date(row.year, row.month, 1), granularity)
            bucket = totals.setdefault(key, [0, 0])
            bucket[0] += int(row.income or 0)
            bucket[1] += int(row.expenses or 0)
        return build_trend(totals, start, end, granularity)

    def expense_breakdown(self, filters: AnalyticsFilters) -> list[ExpenseBreakdownItem]:
        if filters.property_id is not None:
            self._properties(filters)
        stmt = (
            select(
                Category.name.label("name"),
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .select_from(Transaction)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(
                *self._ledger_filters(filters),
                Transaction.type == TransactionType.expense,
            )
            .group_by(Category.name)
        )
        with store_errors("reading expense breakdown"):
            rows = self.session.execute(stmt).all()

        grouped: dict[str, list[int]] = {}
        for row in rows:
            entry = grouped.setdefault(row.name or UNCATEGORIZED, [0, 0])
            entry[0] += int(row.total or 0)
            entry[1] += int(row.count or 0)

        total = sum(amount for amount, _ in grouped.values())
        items = [
            ExpenseBreakdownItem(
                category_name=name,
                amount_cents=amount,
                percentage=percent(amount, total),
                transaction_count=count,
            )
            for name, (amount, count) in sorted(grouped.items())
        ]
        return sorted(items, key=attrgetter("amount_cents"), reverse=True)

    def property_ranking(
        self, filters: AnalyticsFilters, sort_by: str = "net_income"
    ) -> list[PropertyRanking]:
        if sort_by not in SORT_KEYS:
            allowed = ", ".join(SORT_KEYS)
            raise ValidationError(f"sort_by must be one of: {allowed}")
        rankings = [
            PropertyRanking(
                property_id=kpi.property_id,
                property_name=kpi.property_name,
                net_income_cents=kpi.net_income_cents,
                total_income_cents=kpi.total_income_cents,
                total_expenses_cents=kpi.total_expenses_cents,
                roi=kpi.roi,
            )
            for kpi in self.property_kpis(filters)
        ]
        return rank(rankings, sort_by)
