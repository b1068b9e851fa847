import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from analytics import AnalyticsFilters, AnalyticsService
from config import get_settings
from database import SessionLocal
from errors import NotFoundOrAccessDenied, StaleAggregateDetected, StoreUnavailable
from granularity import (
    Granularity,
    TimeWindow,
    preset_granularity,
    select_granularity,
)
from models import Category, Property, Transaction, TransactionType, utcnow
from periods import local_today, previous_period, resolve_time_range
from schemas import (
    AnalyticsQuery,
    BulkDeleteIn,
    ChartsQuery,
    ComparisonQuery,
    KPIQuery,
    PropertyIn,
    ReconcileIn,
    StatusQuery,
    TransactionIn,
    ValidatePeriodQuery,
    parse_query,
)
from services import (
    CategoryService,
    PropertyService,
    ReconciliationService,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()
app = FastAPI(title="Property Ledger", version=APP_VERSION)

RETRY_AFTER_SECS = 5


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        message = err.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages)})


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundOrAccessDenied):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StaleAggregateDetected):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "validation": jsonable_encoder(exc.validation)},
        )
    if isinstance(exc, StoreUnavailable):
        return HTTPException(
            status_code=503,
            detail=str(exc),
            headers={"Retry-After": str(RETRY_AFTER_SECS)},
        )
    return HTTPException(status_code=400, detail=str(exc))


def filters_from_query(query: AnalyticsQuery) -> AnalyticsFilters:
    """Explicit dates win; a time range fills whichever bound is missing."""
    date_from = query.date_from
    date_to = query.date_to
    if query.time_range:
        period = resolve_time_range(query.time_range)
        date_from = date_from or period.start
        date_to = date_to or period.end
    return AnalyticsFilters(
        property_id=query.property_id,
        date_from=date_from,
        date_to=date_to,
    )


def property_out(prop: Property) -> dict:
    return {
        "id": prop.id,
        "name": prop.name,
        "address": prop.address,
        "purchase_price_cents": prop.purchase_price_cents,
        "market_value_cents": prop.market_value_cents,
        "effective_market_value_cents": prop.effective_market_value_cents,
        "rent_cents": prop.rent_cents,
        "created_at": prop.created_at,
        "updated_at": prop.updated_at,
    }


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "property_id": txn.property_id,
        "category_id": txn.category_id,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "transaction_date": txn.transaction_date,
        "is_recurring": txn.is_recurring,
        "description": txn.description,
        "deleted_at": txn.deleted_at,
    }


def category_out(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "is_active": category.is_active,
    }


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/admin/monthly-metrics/reconcile")
def reconcile_monthly_metrics(
    payload: ReconcileIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    service = ReconciliationService(db, user_id)
    result: dict[str, object] = {}
    try:
        if payload.validate_current_month and payload.property_id is not None:
            today = local_today()
            try:
                result["validation"] = service.validate(
                    payload.property_id, today.year, today.month
                )
            except StoreUnavailable as exc:
                db.rollback()
                result["validation"] = {"error": str(exc)}

        if payload.property_id is not None:
            updated = service.reconcile_property(
                payload.property_id, payload.from_date, payload.to_date
            )
            result["recalculation"] = {
                "type": "property",
                "property_id": payload.property_id,
                "updated": updated,
            }
        else:
            summary = service.reconcile_user(payload.from_date, payload.to_date)
            result["recalculation"] = {
                "type": "user",
                "updated_properties": summary.updated_properties,
                "updated_months": summary.updated_months,
                "failures": summary.failures,
            }
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc

    if payload.cleanup:
        try:
            result["cleanup"] = {"deleted": service.cleanup()}
        except StoreUnavailable as exc:
            logger.exception(f"reconcile_cleanup_failed: user_id={user_id}")
            result["cleanup"] = {"error": str(exc)}

    return jsonable_encoder(
        {
            "message": "Monthly metrics reconciliation completed",
            "result": result,
            "timestamp": utcnow(),
        }
    )


@app.get("/api/admin/monthly-metrics/validate")
def validate_monthly_metrics(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        query = parse_query(ValidatePeriodQuery, request.query_params)
        validation = ReconciliationService(db, user_id).validate(
            query.property_id, query.year, query.month
        )
        if query.strict:
            validation.raise_for_stale()
    except (ValueError, StoreUnavailable, StaleAggregateDetected) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder({"validation": validation, "timestamp": utcnow()})


@app.get("/api/admin/monthly-metrics/status")
def monthly_metrics_status(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        query = parse_query(StatusQuery, request.query_params)
        status = ReconciliationService(db, user_id).status(query.property_id)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder({"status": status, "timestamp": utcnow()})


@app.get("/api/analytics/kpis")
def analytics_kpis(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        query = parse_query(KPIQuery, request.query_params)
        filters = filters_from_query(query)
        service = AnalyticsService(db, user_id)
        payload: dict[str, object] = {
            "kpis": service.portfolio_kpis(filters),
            "filters": filters,
            "time_range": query.time_range,
        }
        if query.include_property_details:
            payload["property_kpis"] = service.property_kpis(filters)
        if query.include_previous and query.time_range:
            previous = previous_period(query.time_range)
            if previous is not None:
                payload["previous"] = {
                    "date_from": previous.start,
                    "date_to": previous.end,
                    "kpis": service.portfolio_kpis(
                        AnalyticsFilters(
                            property_id=query.property_id,
                            date_from=previous.start,
                            date_to=previous.end,
                        )
                    ),
                }
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(payload)


@app.get("/api/analytics/charts")
def analytics_charts(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        query = parse_query(ChartsQuery, request.query_params)
        filters = filters_from_query(query)
        service = AnalyticsService(db, user_id)
        chart_types = [query.chart_type] if query.chart_type else ["cashflow", "expenses"]
        granularity = query.granularity
        if granularity is None and query.date_from is None and query.date_to is None:
            granularity = preset_granularity(query.time_range)
        payload: dict[str, object] = {"filters": filters}
        if "cashflow" in chart_types:
            trend = service.cash_flow_trend(filters, granularity)
            payload["cash_flow_trend"] = trend
            if trend:
                payload["granularity"] = trend[0].granularity
            elif granularity is not None:
                payload["granularity"] = granularity
            else:
                end = filters.date_to or local_today()
                if filters.date_from and filters.date_from > end:
                    end = filters.date_from
                payload["granularity"] = select_granularity(
                    TimeWindow(filters.date_from, end)
                )
        if "expenses" in chart_types:
            payload["expense_breakdown"] = service.expense_breakdown(filters)
        if "portfolio" in chart_types:
            if granularity not in (Granularity.monthly, Granularity.yearly):
                granularity = query.granularity
            payload["portfolio_trend"] = service.portfolio_trend(filters, granularity)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(payload)


@app.get("/api/analytics/property-comparison")
def property_comparison(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        query = parse_query(ComparisonQuery, request.query_params)
        filters = AnalyticsFilters(date_from=query.date_from, date_to=query.date_to)
        service = AnalyticsService(db, user_id)
        payload: dict[str, object] = {
            "properties": service.property_ranking(filters, query.sort_by),
            "sort_by": query.sort_by,
        }
        if query.include_kpis:
            payload["kpis"] = service.portfolio_kpis(filters)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(payload)


@app.get("/api/categories")
def list_categories(
    type: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    txn_type = None
    if type:
        try:
            txn_type = TransactionType(type)
        except ValueError as exc:
            raise HTTPException(
                status_code=400, detail="type must be one of: income, expense"
            ) from exc
    categories = CategoryService(db).list_all(txn_type, include_inactive)
    return [category_out(category) for category in categories]


@app.get("/api/properties")
def list_properties(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return jsonable_encoder(
        [property_out(prop) for prop in PropertyService(db, user_id).list_all()]
    )


@app.post("/api/properties", status_code=201)
def create_property(
    payload: PropertyIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        prop = PropertyService(db, user_id).create(payload)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(property_out(prop))


@app.get("/api/properties/{property_id}")
def get_property(
    property_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        prop = PropertyService(db, user_id).get(property_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(property_out(prop))


@app.put("/api/properties/{property_id}")
def update_property(
    property_id: int,
    payload: PropertyIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        prop = PropertyService(db, user_id).update(property_id, payload)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(property_out(prop))


@app.delete("/api/properties/{property_id}")
def delete_property(
    property_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        deleted = PropertyService(db, user_id).soft_delete(property_id)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return {"status": "deleted", "transactions_deleted": deleted}


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        txn = TransactionService(db, user_id).create(payload)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(transaction_out(txn))


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    payload: BulkDeleteIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        deleted = TransactionService(db, user_id).bulk_soft_delete(
            payload.transaction_ids
        )
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return {"status": "deleted", "deleted": deleted}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(transaction_out(txn))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, payload)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(transaction_out(txn))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        TransactionService(db, user_id).soft_delete(transaction_id)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/api/transactions/{transaction_id}/restore")
def restore_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        TransactionService(db, user_id).restore(transaction_id)
    except (ValueError, StoreUnavailable) as exc:
        raise http_error(exc) from exc
    return {"status": "restored"}
