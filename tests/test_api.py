from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import services
from database import Base
from errors import CalculationFailed
from main import app, get_db
from models import MonthlyMetric

HEADERS = {"X-User-Id": "1"}


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_property(client, name: str = "Elm Street") -> int:
    resp = client.post(
        "/api/properties",
        json={"name": name, "purchase_price_cents": 10_000_000, "rent_cents": 100_000},
        headers=HEADERS,
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def create_txn(client, property_id: int, kind: str, cents: int, day: str) -> int:
    resp = client.post(
        "/api/transactions",
        json={
            "property_id": property_id,
            "type": kind,
            "amount_cents": cents,
            "transaction_date": day,
        },
        headers=HEADERS,
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def test_missing_user_header_is_unauthorized(client) -> None:
    assert client.get("/api/properties").status_code == 401


def test_validate_rejects_month_thirteen(client) -> None:
    property_id = create_property(client)
    resp = client.get(
        "/api/admin/monthly-metrics/validate",
        params={"property_id": property_id, "year": 2024, "month": 13},
        headers=HEADERS,
    )
    assert resp.status_code == 400
    assert "month" in resp.json()["detail"]


@pytest.mark.parametrize(
    "path,params",
    [
        ("/api/analytics/kpis", {"date_from": "2024-03-01", "date_to": "2024-02-01"}),
        ("/api/analytics/kpis", {"date_from": "not-a-date"}),
        ("/api/analytics/kpis", {"time_range": "decade"}),
        ("/api/analytics/charts", {"granularity": "hourly"}),
        ("/api/analytics/charts", {"chart_type": "pie"}),
        ("/api/analytics/property-comparison", {"sort_by": "name"}),
    ],
)
def test_bad_query_parameters_are_rejected(client, path, params) -> None:
    resp = client.get(path, params=params, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"]


def test_reconcile_rejects_inverted_range(client) -> None:
    resp = client.post(
        "/api/admin/monthly-metrics/reconcile",
        json={"from_date": "2024-03-01", "to_date": "2024-01-01"},
        headers=HEADERS,
    )
    assert resp.status_code == 400


def test_validate_strict_reports_stale_aggregate(client, session_factory) -> None:
    property_id = create_property(client)
    create_txn(client, property_id, "income", 100_000, "2024-03-10")
    params = {"property_id": property_id, "year": 2024, "month": 3}

    resp = client.get(
        "/api/admin/monthly-metrics/validate",
        params={**params, "strict": "true"},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json()["validation"]["is_valid"] is True

    with session_factory() as db:
        db.execute(
            update(MonthlyMetric)
            .where(MonthlyMetric.property_id == property_id)
            .values(total_income_cents=1)
        )
        db.commit()

    lenient = client.get(
        "/api/admin/monthly-metrics/validate", params=params, headers=HEADERS
    )
    assert lenient.status_code == 200
    assert lenient.json()["validation"]["differences"] == {"total_income_cents": 100_000}

    strict = client.get(
        "/api/admin/monthly-metrics/validate",
        params={**params, "strict": "true"},
        headers=HEADERS,
    )
    assert strict.status_code == 409


def test_reconcile_endpoint_repairs_and_cleans_up(client, session_factory) -> None:
    property_id = create_property(client)
    create_txn(client, property_id, "income", 100_000, "2024-01-10")
    create_txn(client, property_id, "income", 100_000, "2024-03-10")

    resp = client.post(
        "/api/admin/monthly-metrics/reconcile",
        json={"property_id": property_id, "cleanup": True, "validate": True},
        headers=HEADERS,
    )

    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["recalculation"] == {
        "type": "property",
        "property_id": property_id,
        "updated": 3,
    }
    assert result["cleanup"] == {"deleted": 1}
    assert "validation" in result

    user_wide = client.post(
        "/api/admin/monthly-metrics/reconcile", json={}, headers=HEADERS
    )
    assert user_wide.json()["result"]["recalculation"] == {
        "type": "user",
        "updated_properties": 1,
        "updated_months": 3,
        "failures": [],
    }


def test_foreign_property_is_not_found(client) -> None:
    property_id = create_property(client)
    resp = client.get(f"/api/properties/{property_id}", headers={"X-User-Id": "2"})
    assert resp.status_code == 404
    resp = client.post(
        "/api/admin/monthly-metrics/reconcile",
        json={"property_id": property_id},
        headers={"X-User-Id": "2"},
    )
    assert resp.status_code == 404


def test_store_failure_is_retryable(client, monkeypatch) -> None:
    property_id = create_property(client)

    def unavailable(*args, **kwargs):
        raise CalculationFailed("database is locked")

    monkeypatch.setattr(services, "calculate_monthly_metrics", unavailable)

    resp = client.get(
        "/api/admin/monthly-metrics/validate",
        params={"property_id": property_id, "year": 2024, "month": 3},
        headers=HEADERS,
    )
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "5"


def test_analytics_endpoints(client) -> None:
    first = create_property(client, "First")
    create_property(client, "Second")
    create_txn(client, first, "income", 150_000, "2024-03-10")
    create_txn(client, first, "expense", 50_000, "2024-03-12")

    kpis = client.get(
        "/api/analytics/kpis",
        params={"include_property_details": "true"},
        headers=HEADERS,
    ).json()
    assert kpis["kpis"]["net_income_cents"] == 100_000
    assert kpis["kpis"]["cash_on_cash_return"] == 0.5
    assert len(kpis["property_kpis"]) == 2

    charts = client.get(
        "/api/analytics/charts",
        params={"date_from": "2024-03-08", "date_to": "2024-03-14"},
        headers=HEADERS,
    ).json()
    assert charts["granularity"] == "daily"
    assert len(charts["cash_flow_trend"]) == 7
    assert charts["expense_breakdown"][0]["category_name"] == "Uncategorized"

    ranking = client.get(
        "/api/analytics/property-comparison",
        params={"sort_by": "total_income", "include_kpis": "true"},
        headers=HEADERS,
    ).json()
    assert [p["property_name"] for p in ranking["properties"]] == ["First", "Second"]
    assert ranking["kpis"]["total_properties"] == 2


def test_transaction_lifecycle(client) -> None:
    property_id = create_property(client)
    txn_id = create_txn(client, property_id, "expense", 20_000, "2024-02-01")

    resp = client.put(
        f"/api/transactions/{txn_id}",
        json={
            "property_id": property_id,
            "type": "expense",
            "amount_cents": 25_000,
            "transaction_date": "2024-02-02",
        },
        headers=HEADERS,
    )
    assert resp.json()["amount_cents"] == 25_000

    assert client.delete(f"/api/transactions/{txn_id}", headers=HEADERS).status_code == 200
    assert client.get(f"/api/transactions/{txn_id}", headers=HEADERS).status_code == 404
    restored = client.post(f"/api/transactions/{txn_id}/restore", headers=HEADERS)
    assert restored.json() == {"status": "restored"}

    bulk = client.post(
        "/api/transactions/bulk-delete",
        json={"transaction_ids": [txn_id]},
        headers=HEADERS,
    )
    assert bulk.json() == {"status": "deleted", "deleted": 1}

    bad = client.post(
        "/api/transactions",
        json={
            "property_id": property_id,
            "type": "expense",
            "amount_cents": 0,
            "transaction_date": str(date(2024, 2, 1)),
        },
        headers=HEADERS,
    )
    assert bad.status_code == 400


def test_charts_time_range_presets_pick_weekly(client) -> None:
    prop = create_property(client)
    create_txn(client, prop, "income", 90_000, (date.today() - timedelta(days=3)).isoformat())

    semester = client.get(
        "/api/analytics/charts",
        params={"time_range": "semester", "granularity": "weekly"},
        headers=HEADERS,
    )
    assert semester.status_code == 200
    assert semester.json()["granularity"] == "weekly"

    quarter = client.get(
        "/api/analytics/charts", params={"time_range": "quarter"}, headers=HEADERS
    ).json()
    assert quarter["granularity"] == "weekly"
    assert sum(b["income_cents"] for b in quarter["cash_flow_trend"]) == 90_000

    full = client.get(
        "/api/analytics/charts",
        params={"time_range": "full", "chart_type": "portfolio"},
        headers=HEADERS,
    )
    assert full.status_code == 200
    assert full.json()["portfolio_trend"][-1]["granularity"] == "yearly"


def test_charts_with_future_start_and_no_end(client) -> None:
    create_property(client)
    resp = client.get(
        "/api/analytics/charts",
        params={"date_from": (date.today() + timedelta(days=30)).isoformat()},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["cash_flow_trend"] == []
    assert "granularity" in body
