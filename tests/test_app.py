from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from folioledger.app import db as app_db
from folioledger.app.main import create_app


@pytest.fixture()
def client(session_factory):
    app = create_app(init_database=False)

    def _session():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[app_db.db_session] = _session
    app.dependency_overrides[app_db.session_factory] = lambda: session_factory
    return TestClient(app)


def _setup(client) -> tuple[int, int]:
    pid = client.post("/api/portfolios", json={"name": "Core"}).json()["id"]
    aid = client.post("/api/assets", json={"symbol": "ACME", "asset_type": "STOCK"}).json()["id"]
    r = client.post(
        f"/api/portfolios/{pid}/cash-flows",
        json={"flow_date": "2024-03-04", "flow_type": "DEPOSIT", "amount": "1000"},
    )
    assert r.status_code == 201
    r = client.post(f"/api/assets/{aid}/prices", json={"price_date": "2024-03-04", "price": "100"})
    assert r.status_code == 201
    return pid, aid


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_trade_and_positions(client):
    pid, aid = _setup(client)
    r = client.post(
        f"/api/portfolios/{pid}/trades",
        json={"asset_id": aid, "side": "BUY", "quantity": "10", "price": "100", "trade_date": "2024-03-04"},
        headers={"X-Actor": "tester"},
    )
    assert r.status_code == 201
    assert r.json()["status"] == "OPEN"

    r = client.post(
        f"/api/portfolios/{pid}/trades",
        json={"asset_id": aid, "side": "SELL", "quantity": "4", "price": "110", "trade_date": "2024-03-04"},
    )
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "CLOSED"
    assert body["realized_pl"] == "40.00"

    (pos,) = client.get(f"/api/portfolios/{pid}/positions", params={"as_of": "2024-03-04"}).json()
    assert pos["asset_id"] == aid
    assert pos["quantity"] == "6.00000000"
    assert pos["price_source"] == "MARKET"

    matches = client.get(f"/api/portfolios/{pid}/matches").json()
    assert len(matches) == 1
    assert client.get(f"/api/portfolios/{pid}/assets/{aid}/verify").json()["ok"] is True


def test_errors_map_to_status_codes(client):
    pid, aid = _setup(client)
    r = client.post(
        f"/api/portfolios/{pid}/trades",
        json={"asset_id": aid, "side": "BUY", "quantity": "0", "price": "100", "trade_date": "2024-03-04"},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"

    r = client.post(
        f"/api/portfolios/{pid}/trades",
        json={"asset_id": aid, "side": "SELL", "quantity": "1", "price": "100", "trade_date": "2024-03-04"},
    )
    assert r.status_code == 400

    r = client.get("/api/portfolios/999")
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"

    r = client.get(f"/api/portfolios/{pid}/snapshots/2024-03-04")
    assert r.status_code == 404


def test_snapshot_endpoints(client):
    pid, aid = _setup(client)
    client.post(
        f"/api/portfolios/{pid}/trades",
        json={"asset_id": aid, "side": "BUY", "quantity": "5", "price": "100", "trade_date": "2024-03-04"},
    )
    r = client.post(f"/api/portfolios/{pid}/snapshots", json={"snapshot_date": "2024-03-04"})
    assert r.status_code == 200
    assert r.json()["portfolio_snapshot"]["total_value"] == "1000.00"

    snap = client.get(f"/api/portfolios/{pid}/snapshots/2024-03-04").json()
    assert snap["cash_balance"] == "500.00"
    assert [a["asset_symbol"] for a in snap["assets"]] == ["ACME"]
    assert [g["asset_type"] for g in snap["groups"]] == ["STOCK"]
    assert snap["twr_daily"] is None

    run = client.post("/api/snapshots/run", json={"snapshot_date": "2024-03-05"}).json()
    assert run["status"] == "completed"
    assert run["successful"] == 1

    rows = client.get(f"/api/portfolios/{pid}/snapshots").json()
    assert [x["snapshot_date"] for x in rows] == ["2024-03-04", "2024-03-05"]

    executions = client.get("/api/executions", params={"kind": "BULK"}).json()
    assert [e["execution_id"] for e in executions] == [run["execution_id"]]
    assert client.get(f"/api/executions/{run['execution_id']}").json()["status"] == "completed"
    stats = client.get("/api/executions/stats").json()
    assert stats["by_status"]["completed"] >= 2


def test_fund_endpoints(client):
    pid = client.post("/api/portfolios", json={"name": "Fund"}).json()["id"]
    acct = client.post("/api/accounts", json={"name": "alice"}).json()["id"]

    r = client.post(f"/api/funds/{pid}/convert", json={"seed_nav_per_unit": "10"})
    assert r.json()["is_fund"] is True

    r = client.post(
        f"/api/funds/{pid}/subscribe",
        json={"account_id": acct, "amount": "250", "effective_date": "2024-03-04"},
    )
    assert r.status_code == 201
    assert r.json()["units"] == "25.000000"

    nav = client.get(f"/api/funds/{pid}/nav", params={"as_of": "2024-03-04"}).json()
    assert nav["source"] == "LIVE"
    assert nav["nav_per_unit"] == "10.000000"

    investors = client.get(f"/api/funds/{pid}/investors").json()
    assert [i["account_name"] for i in investors] == ["alice"]

    r = client.post(
        f"/api/funds/{pid}/redeem",
        json={"account_id": acct, "units": "30", "effective_date": "2024-03-04"},
    )
    assert r.status_code == 400
