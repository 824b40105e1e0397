from datetime import date, timedelta
from uuid import uuid4

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main

API = "/api/v1"


def future(days=3):
    return (date.today() + timedelta(days=days)).isoformat()


def register(client, role, email=None, password="secret123"):
    body = {
        "name": f"Test {role}",
        "email": email or f"{role}-{uuid4().hex[:8]}@example.com",
        "password": password,
        "phone": "555-0100",
        "role": role,
    }
    res = client.post(f"{API}/auth/register", json=body)
    assert res.status_code == 201, res.text
    data = res.json()["data"]
    return {
        "id": data["user"]["id"],
        "email": body["email"],
        "token": data["token"],
        "headers": {"Authorization": f"Bearer {data['token']}"},
    }


PROFILE = {
    "vehicleType": "truck",
    "vehicleNumber": "KA-01-1234",
    "workingHours": {"start": "08:00", "end": "17:00"},
}


@pytest.fixture
def db():
    return mongomock.MongoClient()["waste_test"]


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(database, "db", db)
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def resident(client):
    return register(client, "resident")


@pytest.fixture
def business(client):
    return register(client, "business")


@pytest.fixture
def collector(client):
    user = register(client, "collector")
    res = client.post(f"{API}/collector/profile", json=PROFILE, headers=user["headers"])
    assert res.status_code == 201, res.text
    return user


@pytest.fixture
def waste_request(client, resident):
    body = {"date": future(), "time": "morning", "wasteType": "recyclable", "address": "12 Elm Street"}
    res = client.post(f"{API}/waste-requests", json=body, headers=resident["headers"])
    assert res.status_code == 201, res.text
    return res.json()["data"]
