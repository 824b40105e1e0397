from datetime import date, timedelta

import pytest

from conftest import API, future, register

BULK = {"date": future(5), "time": "afternoon", "wasteType": "non-biodegradable",
        "address": "Unit 7, Harbour Park", "quantity": 12, "description": "Pallets"}


@pytest.fixture
def bulk_request(client, business):
    res = client.post(f"{API}/business/bulk-requests", json=BULK, headers=business["headers"])
    assert res.status_code == 201, res.text
    return res.json()["data"]


def test_bulk_request_flow(client, business, bulk_request):
    assert bulk_request["status"] == "pending"
    assert bulk_request["quantity"] == 12
    assert bulk_request["kind"] == "bulk"

    res = client.get(f"{API}/business/bulk-requests", headers=business["headers"])
    assert [r["id"] for r in res.json()["data"]] == [bulk_request["id"]]

    res = client.get(f"{API}/business/bulk-requests/{bulk_request['id']}", headers=business["headers"])
    assert res.json()["data"]["description"] == "Pallets"

    res = client.put(f"{API}/business/bulk-requests/{bulk_request['id']}/cancel", headers=business["headers"])
    assert res.json()["data"]["status"] == "cancelled"

    res = client.put(f"{API}/business/bulk-requests/{bulk_request['id']}/cancel", headers=business["headers"])
    assert res.status_code == 400
    assert res.json()["current"] == "cancelled"

    res = client.get(f"{API}/business/bulk-requests/status-counts", headers=business["headers"])
    assert res.json()["data"]["cancelled"] == 1


def test_bulk_request_validation(client, business, resident):
    res = client.post(f"{API}/business/bulk-requests", json={**BULK, "quantity": 0}, headers=business["headers"])
    assert res.status_code == 400
    assert res.json()["fields"] == ["quantity"]

    res = client.post(f"{API}/business/bulk-requests", json=BULK, headers=resident["headers"])
    assert res.status_code == 403


def test_bulk_request_of_another_business_is_not_found(client, bulk_request):
    other = register(client, "business")
    res = client.get(f"{API}/business/bulk-requests/{bulk_request['id']}", headers=other["headers"])
    assert res.status_code == 404


def test_business_can_file_regular_requests(client, business):
    body = {"date": future(), "time": "morning", "wasteType": "biodegradable", "address": "Canteen"}
    res = client.post(f"{API}/waste-requests", json=body, headers=business["headers"])
    assert res.status_code == 201
    assert res.json()["data"]["owner_role"] == "business"


# ------------------ Scheduled pickups ------------------

def test_weekly_schedule(client, business):
    body = {"frequency": "weekly", "dayOfWeek": "tuesday", "time": "morning",
            "wasteType": "recyclable", "address": "Warehouse 2", "startDate": future()}
    res = client.post(f"{API}/business/scheduled-pickups", json=body, headers=business["headers"])
    assert res.status_code == 201
    schedule = res.json()["data"]
    assert schedule["is_active"] is True
    assert schedule["day_of_month"] is None
    assert schedule["start_date"] == future()

    res = client.patch(f"{API}/business/scheduled-pickups/{schedule['id']}/active",
                       json={"isActive": False}, headers=business["headers"])
    assert res.json()["data"]["is_active"] is False

    res = client.get(f"{API}/business/scheduled-pickups", headers=business["headers"])
    assert [s["id"] for s in res.json()["data"]] == [schedule["id"]]


def test_schedule_day_must_match_frequency(client, business):
    base = {"time": "morning", "wasteType": "recyclable", "address": "Warehouse 2", "startDate": future()}
    res = client.post(f"{API}/business/scheduled-pickups", json={**base, "frequency": "weekly"},
                      headers=business["headers"])
    assert res.status_code == 400
    assert set(res.json()["fields"]) & {"dayOfWeek", "day_of_week"}

    res = client.post(f"{API}/business/scheduled-pickups",
                      json={**base, "frequency": "monthly", "dayOfMonth": 10, "dayOfWeek": "friday"},
                      headers=business["headers"])
    assert res.status_code == 400

    res = client.post(f"{API}/business/scheduled-pickups", json={**base, "frequency": "monthly", "dayOfMonth": 10},
                      headers=business["headers"])
    assert res.status_code == 201
    assert res.json()["data"]["day_of_month"] == 10


def test_toggle_someone_elses_schedule(client, business):
    body = {"frequency": "monthly", "dayOfMonth": 1, "time": "evening",
            "wasteType": "recyclable", "address": "Depot", "startDate": future()}
    schedule = client.post(f"{API}/business/scheduled-pickups", json=body, headers=business["headers"]).json()["data"]
    other = register(client, "business")
    res = client.patch(f"{API}/business/scheduled-pickups/{schedule['id']}/active",
                       json={"isActive": False}, headers=other["headers"])
    assert res.status_code == 404
    assert res.json()["message"] == "Scheduled pickup not found"


# ------------------ Expenses ------------------

def test_expense_crud(client, business, bulk_request):
    headers = business["headers"]
    res = client.post(f"{API}/expenses", json={"requestId": bulk_request["id"], "amount": 120.5,
                                               "category": "disposal", "date": date.today().isoformat()},
                      headers=headers)
    assert res.status_code == 201, res.text
    expense = res.json()["data"]
    assert expense["request"] == {"id": bulk_request["id"], "waste_type": "non-biodegradable", "quantity": 12}

    res = client.put(f"{API}/expenses/{expense['id']}", json={"amount": 99, "description": "Landfill fee"},
                     headers=headers)
    assert res.json()["data"]["amount"] == 99
    assert res.json()["data"]["category"] == "disposal"

    res = client.get(f"{API}/expenses/{expense['id']}", headers=headers)
    assert res.json()["data"]["description"] == "Landfill fee"

    res = client.get(f"{API}/expenses", headers=headers)
    assert len(res.json()["data"]) == 1

    res = client.delete(f"{API}/expenses/{expense['id']}", headers=headers)
    assert res.json() == {"success": True, "data": None, "message": "Expense deleted"}
    assert client.get(f"{API}/expenses/{expense['id']}", headers=headers).status_code == 404


def test_expense_must_reference_own_bulk_request(client, bulk_request):
    other = register(client, "business")
    res = client.post(f"{API}/expenses", json={"requestId": bulk_request["id"], "amount": 10,
                                               "category": "other"}, headers=other["headers"])
    assert res.status_code == 404


def test_expense_date_filter_and_analytics(client, business, bulk_request):
    headers = business["headers"]
    today = date.today()
    old = today - timedelta(days=60)
    for day, amount, category in ((today, 40, "collection"), (today, 10, "recycling"), (old, 25, "collection")):
        res = client.post(f"{API}/expenses", json={"requestId": bulk_request["id"], "amount": amount,
                                                   "category": category, "date": day.isoformat()},
                          headers=headers)
        assert res.status_code == 201

    res = client.get(f"{API}/expenses", params={"start_date": today.isoformat(), "end_date": today.isoformat()},
                     headers=headers)
    assert sorted(e["amount"] for e in res.json()["data"]) == [10, 40]

    res = client.get(f"{API}/expenses/analytics", headers=headers)
    data = res.json()["data"]
    assert data["monthly_totals"][-1]["month"] == f"{today.year}-{today.month}"
    assert data["monthly_totals"][-1]["total_amount"] == 50
    assert {c["category"]: c["total_amount"] for c in data["category_totals"]} == {"collection": 65, "recycling": 10}


def test_expense_rejects_negative_amount(client, business, bulk_request):
    res = client.post(f"{API}/expenses", json={"requestId": bulk_request["id"], "amount": -1, "category": "other"},
                      headers=business["headers"])
    assert res.status_code == 400
    assert res.json()["fields"] == ["amount"]
