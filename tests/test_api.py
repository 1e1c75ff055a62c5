import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

import main


@pytest.fixture
def welcome(client, admin_headers):
    resp = client.post(
        "/promo-codes",
        json={"code": "WELCOME10", "description": "10% off"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    return resp.json()["promoCode"]


@pytest.fixture
def lenient_client(services):
    """Client that returns 500 responses instead of re-raising the error."""
    main.app.dependency_overrides[main.get_services] = lambda: services
    yield TestClient(main.app, raise_server_exceptions=False)
    main.app.dependency_overrides.clear()


def _generate(client, admin_headers, promo_code_id):
    resp = client.post("/tokens/generate", json={"promoCodeId": promo_code_id}, headers=admin_headers)
    assert resp.status_code == 200
    return resp.json()["token"]


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_admin_endpoints_require_token(client):
    resp = client.get("/promo-codes")
    assert resp.status_code == 403
    assert resp.json() == {"success": False, "message": "forbidden"}

    resp = client.get("/promo-codes", headers={"X-Admin-Token": "wrong"})
    assert resp.status_code == 403


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"


def test_unhandled_error_keeps_request_id(lenient_client, admin_headers, services, monkeypatch):
    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(services.registry, "list", explode)

    resp = lenient_client.get("/promo-codes", headers={**admin_headers, "X-Request-ID": "rid-1"})

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "message": "Internal server error"}
    assert resp.headers["X-Request-ID"] == "rid-1"


def test_durable_read_failure_is_a_500(client, admin_headers, store, monkeypatch):
    def unreachable():
        raise OperationalError("SELECT", {}, Exception("unable to open database file"))

    monkeypatch.setattr(store, "_session_factory", unreachable)

    resp = client.get("/promo-codes", headers={**admin_headers, "X-Request-ID": "rid-2"})

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "message": "Failed to fetch promo codes"}
    assert resp.headers["X-Request-ID"] == "rid-2"


def test_create_and_list_promo_codes(client, admin_headers, welcome):
    assert welcome["code"] == "WELCOME10"

    resp = client.get("/promo-codes", headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "promoCodes": [welcome]}


def test_create_requires_code_and_description(client, admin_headers):
    resp = client.post("/promo-codes", json={"code": "ONLYCODE"}, headers=admin_headers)

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "Code and description are required"}


def test_create_duplicate_code(client, admin_headers, welcome):
    resp = client.post(
        "/promo-codes",
        json={"code": "WELCOME10", "description": "again"},
        headers=admin_headers,
    )

    assert resp.status_code == 409
    assert resp.json() == {"success": False, "message": "Promo code already exists"}


def test_malformed_json_body(client, admin_headers):
    resp = client.post(
        "/promo-codes",
        content=b"{not json",
        headers={**admin_headers, "Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_delete_promo_code(client, admin_headers, welcome):
    resp = client.delete(f"/promo-codes?id={welcome['id']}", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    assert client.get("/promo-codes", headers=admin_headers).json()["promoCodes"] == []

    resp = client.delete(f"/promo-codes?id={welcome['id']}", headers=admin_headers)
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Promo code not found"}


def test_delete_requires_integer_id(client, admin_headers):
    resp = client.delete("/promo-codes", headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Promo code ID is required"

    resp = client.delete("/promo-codes?id=abc", headers=admin_headers)
    assert resp.status_code == 400


def test_generate_for_missing_code(client, admin_headers):
    resp = client.post("/tokens/generate", json={"promoCodeId": 999999}, headers=admin_headers)

    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Promo code not found"}


def test_generate_requires_promo_code_id(client, admin_headers):
    resp = client.post("/tokens/generate", json={}, headers=admin_headers)

    assert resp.status_code == 400
    assert resp.json()["message"] == "Promo code ID is required"


def test_token_lifecycle_over_http(client, admin_headers, welcome):
    resp = client.post("/tokens/generate", json={"promoCodeId": welcome["id"]}, headers=admin_headers)
    assert resp.json()["promoCode"] == "WELCOME10"
    token = resp.json()["token"]

    # public validation needs no admin token and does not consume
    for _ in range(2):
        resp = client.post("/tokens/validate", json={"token": token})
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "isValid": True,
            "promoCode": {"code": "WELCOME10", "description": "10% off"},
        }

    resp = client.post("/tokens/verify", json={"token": token}, headers=admin_headers)
    assert resp.json() == {"success": True, "promoCode": "WELCOME10"}

    resp = client.post(
        "/tokens/mark-used",
        json={"token": token, "result": {"success": True}},
        headers=admin_headers,
    )
    assert resp.json() == {"success": True}

    resp = client.post("/tokens/verify", json={"token": token}, headers=admin_headers)
    assert resp.status_code == 400
    assert "already been used" in resp.json()["message"]

    resp = client.post("/tokens/validate", json={"token": token})
    assert resp.status_code == 400
    assert "already been used" in resp.json()["message"]

    # repeat submissions are tolerated at this boundary
    resp = client.post(
        "/tokens/mark-used",
        json={"token": token, "result": {"success": True}},
        headers=admin_headers,
    )
    assert resp.json() == {"success": True}


def test_mark_used_with_failed_result_keeps_token(client, admin_headers, welcome):
    token = _generate(client, admin_headers, welcome["id"])

    client.post(
        "/tokens/mark-used",
        json={"token": token, "result": {"success": False}},
        headers=admin_headers,
    )

    assert client.post("/tokens/validate", json={"token": token}).json()["isValid"] is True


def test_validate_unknown_token(client):
    resp = client.post("/tokens/validate", json={"token": "0" * 32})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "isValid": False}


def test_public_alias(client, admin_headers, welcome):
    token = _generate(client, admin_headers, welcome["id"])

    assert client.post("/public/validate-token", json={"token": token}).json()["isValid"] is True


def test_validate_requires_string_token(client):
    assert client.post("/tokens/validate", json={}).status_code == 400
    assert client.post("/tokens/validate", json={"token": 123}).status_code == 400


def test_verify_unknown_token(client, admin_headers):
    resp = client.post("/tokens/verify", json={"token": "0" * 32}, headers=admin_headers)

    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Invalid token"}


def test_list_tokens(client, admin_headers, welcome):
    first = _generate(client, admin_headers, welcome["id"])
    second = _generate(client, admin_headers, welcome["id"])

    resp = client.get("/tokens", headers=admin_headers)

    tokens = resp.json()["tokens"]
    assert [t["token"] for t in tokens] == [second, first]
    assert tokens[0]["promo_code"] == "WELCOME10"
    assert tokens[0]["used"] is False


def test_reset_promo_codes(client, admin_headers, welcome):
    resp = client.post("/promo-codes/reset", headers=admin_headers)

    body = resp.json()
    assert body["success"] is True
    codes = [p["code"] for p in body["promoCodes"]]
    assert "WELCOME10" in codes
    assert "FREELIST1" in codes


def test_read_only_deployment(client, admin_headers, store):
    store.writable = False

    resp = client.post(
        "/promo-codes",
        json={"code": "EPHEMERAL", "description": "memory only"},
        headers=admin_headers,
    )
    promo = resp.json()["promoCode"]
    assert promo["id"] < 0

    token = _generate(client, admin_headers, promo["id"])
    assert client.post("/tokens/validate", json={"token": token}).json()["isValid"] is True


def test_mark_used_when_commit_fails(client, admin_headers, welcome, store, break_commits):
    token = _generate(client, admin_headers, welcome["id"])
    break_commits()

    resp = client.post(
        "/tokens/mark-used",
        json={"token": token, "result": {"success": True}},
        headers=admin_headers,
    )

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "message": "Failed to mark token as used"}
    assert store.get_token(token).used is False
    assert client.post("/tokens/validate", json={"token": token}).json()["isValid"] is True


def test_run_serves_the_app(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("PORT", "9001")

    main.run()

    assert calls == [(("main:app",), {"host": "127.0.0.1", "port": 9001})]
