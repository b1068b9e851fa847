from datetime import date
from typing import ClassVar, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

import errors
from granularity import Granularity
from models import TransactionType
from periods import TIME_RANGE_MONTHS

SortField = Literal["net_income", "total_income", "total_expenses", "roi"]
ChartType = Literal["cashflow", "expenses", "portfolio"]


class PropertyIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    address: Optional[str] = Field(default=None, max_length=255)
    purchase_price_cents: int = Field(..., ge=0)
    market_value_cents: Optional[int] = Field(default=None, ge=0)
    rent_cents: int = Field(default=0, ge=0)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    is_active: bool = True


class TransactionIn(BaseModel):
    property_id: int
    category_id: Optional[int] = None
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    transaction_date: date
    is_recurring: bool = False
    description: Optional[str] = Field(default=None, max_length=500)


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1, max_length=500)


class _DateRange(BaseModel):
    range_fields: ClassVar[tuple[str, str]] = ("date_from", "date_to")

    @model_validator(mode="after")
    def _check_order(self):
        first, last = self.range_fields
        start = getattr(self, first)
        end = getattr(self, last)
        if start and end and start > end:
            raise ValueError(f"{first} must not be after {last}")
        return self


class ReconcileIn(_DateRange):
    property_id: Optional[int] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    cleanup: bool = False
    validate_current_month: bool = Field(default=False, alias="validate")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    range_fields: ClassVar[tuple[str, str]] = ("from_date", "to_date")


class ValidatePeriodQuery(BaseModel):
    property_id: int
    year: int = Field(..., ge=1900, le=3000)
    month: int = Field(..., ge=1, le=12)
    strict: bool = False


class StatusQuery(BaseModel):
    property_id: Optional[int] = None


class AnalyticsQuery(_DateRange):
    property_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    time_range: Optional[str] = None

    @model_validator(mode="after")
    def _check_time_range(self):
        if self.time_range is not None and self.time_range not in TIME_RANGE_MONTHS:
            allowed = ", ".join(TIME_RANGE_MONTHS)
            raise ValueError(f"time_range must be one of: {allowed}")
        return self


class KPIQuery(AnalyticsQuery):
    include_property_details: bool = False
    include_previous: bool = False


class ChartsQuery(AnalyticsQuery):
    granularity: Optional[Granularity] = None
    chart_type: Optional[ChartType] = None


class ComparisonQuery(_DateRange):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sort_by: SortField = "net_income"
    include_kpis: bool = False


QueryModel = TypeVar("QueryModel", bound=BaseModel)


def parse_query(model: type[QueryModel], params: Mapping[str, object]) -> QueryModel:
    """Build ``model`` from raw request values, raising our ValidationError."""
    try:
        return model.model_validate(dict(params))
    except ValidationError as exc:
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()))
            message = err.get("msg", "invalid value")
            messages.append(f"{location}: {message}" if location else message)
        raise errors.ValidationError("; ".join(messages)) from exc
