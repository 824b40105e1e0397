from datetime import timedelta

import pytest

import errors
from auth import create_access_token, decode_token
from conftest import API, register


def test_register_returns_token_and_public_user(client):
    res = client.post(f"{API}/auth/register", json={
        "name": "Asha", "email": "Asha@Example.com", "password": "secret123",
        "phone": "555-0101", "role": "resident",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    user = body["data"]["user"]
    assert user["email"] == "asha@example.com"
    assert user["role"] == "resident"
    assert "password_hash" not in user
    assert body["data"]["token"]


def test_duplicate_email_is_rejected_case_insensitively(client):
    register(client, "resident", email="dup@example.com")
    res = client.post(f"{API}/auth/register", json={
        "name": "Other", "email": "DUP@example.com", "password": "secret123",
        "phone": "555-0102", "role": "business",
    })
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "Email already registered", "fields": ["email"]}


def test_register_reports_invalid_fields(client):
    res = client.post(f"{API}/auth/register", json={
        "name": "Short", "email": "not-an-email", "password": "123", "phone": "1", "role": "admin",
    })
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert {"email", "password", "role"} <= set(body["fields"])


def test_login(client):
    user = register(client, "business", email="biz@example.com")
    res = client.post(f"{API}/auth/login", json={"email": "biz@example.com", "password": "secret123"})
    assert res.status_code == 200
    assert res.json()["data"]["user"]["id"] == user["id"]

    res = client.post(f"{API}/auth/login", json={"email": "biz@example.com", "password": "wrong-pass"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid credentials"


def test_me(client, resident):
    res = client.get(f"{API}/auth/me", headers=resident["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["id"] == resident["id"]


def test_missing_token_returns_no_data(client):
    res = client.get(f"{API}/auth/me")
    assert res.status_code == 401
    body = res.json()
    assert body["success"] is False
    assert "data" not in body


def test_garbage_token(client):
    res = client.get(f"{API}/waste-requests", headers={"Authorization": "Bearer not.a.token"})
    assert res.status_code == 401
    assert res.json()["message"] == "Token is invalid or expired"


def test_token_for_deleted_account(client, db, resident):
    db["account"].delete_many({})
    res = client.get(f"{API}/auth/me", headers=resident["headers"])
    assert res.status_code == 401
    assert res.json()["message"] == "Account no longer exists"


def test_expired_token_is_invalid():
    token = create_access_token({"sub": "abc", "role": "resident"}, expires_delta=timedelta(minutes=-1))
    with pytest.raises(errors.InvalidCredential):
        decode_token(token)


def test_token_with_unknown_role_is_invalid():
    token = create_access_token({"sub": "abc", "role": "admin"})
    with pytest.raises(errors.InvalidCredential):
        decode_token(token)


def test_wrong_role_is_forbidden(client, resident):
    res = client.get(f"{API}/business/bulk-requests", headers=resident["headers"])
    assert res.status_code == 403
    assert res.json()["success"] is False


def test_collector_without_profile(client):
    user = register(client, "collector")
    res = client.get(f"{API}/collector/assigned-requests", headers=user["headers"])
    assert res.status_code == 404
    assert res.json()["message"] == "Collector profile not found"
