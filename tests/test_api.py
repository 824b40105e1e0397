import pytest
from fastapi.testclient import TestClient

import database
import main
from conftest import API, future


def test_root(client):
    assert client.get("/").json() == {"message": "Waste Collection Backend Running"}


def test_database_diagnostics(client, resident):
    body = client.get("/test").json()
    assert body["database"] == "✅ Connected"
    assert "account" in body["collections"]


def test_startup_requires_database(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    with pytest.raises(RuntimeError):
        with TestClient(main.app):
            pass


def test_shutdown_detaches_bus_subscribers(db, monkeypatch):
    monkeypatch.setattr(database, "db", db)
    with TestClient(main.app) as c:
        bus = c.app.state.bus
        assert any(bus._handlers.values())
    assert not any(bus._handlers.values())
    assert main.app.state.hub.session_count == 0


@pytest.mark.parametrize("method, path", [
    ("get", "/waste-requests"),
    ("post", "/waste-requests"),
    ("get", "/business/bulk-requests"),
    ("get", "/expenses"),
    ("get", "/collector/profile"),
    ("post", "/waste-tips"),
])
def test_protected_routes_need_a_token(client, method, path):
    res = getattr(client, method)(f"{API}{path}")
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_waste_request_round_trip(client, resident, waste_request):
    headers = resident["headers"]
    assert waste_request["status"] == "pending"

    res = client.get(f"{API}/waste-requests/{waste_request['id']}", headers=headers)
    stored = res.json()["data"]
    assert {k: stored[k] for k in ("date", "time", "waste_type", "address")} == {
        "date": future(), "time": "morning", "waste_type": "recyclable", "address": "12 Elm Street",
    }
    assert stored["owner_id"] == resident["id"]

    res = client.get(f"{API}/waste-requests/status-counts", headers=headers)
    assert res.json()["data"]["pending"] == 1

    res = client.put(f"{API}/waste-requests/{waste_request['id']}/cancel", headers=headers)
    assert res.json()["data"]["status"] == "cancelled"

    res = client.get(f"{API}/waste-requests", headers=headers)
    assert [r["status"] for r in res.json()["data"]] == ["cancelled"]


def test_owner_cannot_accept_own_request(client, resident, waste_request):
    res = client.patch(f"{API}/waste-requests/{waste_request['id']}/status", json={"status": "accepted"},
                       headers=resident["headers"])
    assert res.status_code == 403


def test_malformed_id_is_not_found(client, resident):
    res = client.get(f"{API}/waste-requests/not-an-object-id", headers=resident["headers"])
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Request not found"}


def test_validation_envelope(client, resident):
    res = client.post(f"{API}/waste-requests", json={"date": "2001-01-01", "time": "morning",
                                                     "wasteType": "glass", "address": "x"},
                      headers=resident["headers"])
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["message"] == "Invalid or missing fields"
    assert set(body["fields"]) == {"date", "wasteType"}


def test_waste_tips(client, resident, collector):
    res = client.post(f"{API}/waste-tips", json={"category": "recyclable", "content": "Rinse containers"},
                      headers=resident["headers"])
    assert res.status_code == 403

    res = client.post(f"{API}/waste-tips", json={"category": "recyclable", "content": "Rinse containers"},
                      headers=collector["headers"])
    assert res.status_code == 201

    tips = client.get(f"{API}/waste-tips").json()["data"]
    assert set(tips) == {"biodegradable", "non-biodegradable", "recyclable"}
    assert [t["content"] for t in tips["recyclable"]] == ["Rinse containers"]
    assert tips["biodegradable"] == []


def test_rating_requires_completion(client, resident, waste_request):
    res = client.post(f"{API}/waste-requests/{waste_request['id']}/rating", json={"rating": 4},
                      headers=resident["headers"])
    assert res.status_code == 400

