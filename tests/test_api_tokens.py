"""HTTP binding tests for the /v1/tokens routes."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import seed_token
from tokenward.app import create_app
from tokenward.config import Settings
from tokenward.service.runtime import Runtime
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.memory import MemoryStore, MemoryTokenIndex

ALICE = {"Authorization": "Bearer token-1:abc123"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        shared_fs_root=str(tmp_path),
        index_resync_seconds=0,
    )


@pytest.fixture
def api_store():
    store = MemoryStore()
    seed_token(store, name="token-1", secret="abc123")
    seed_token(store, name="token-3", secret="ghi789", user_id="u-bob")
    return store


@pytest.fixture
def client(settings, api_store):
    index = MemoryTokenIndex()
    index.follow(api_store)
    runtime = Runtime(settings, store=api_store, index=index)
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    assert "request_id" in body
    return body["error"]


def test_create_derived_token_returns_secret_once(client, api_store):
    response = client.post(
        "/v1/tokens", json={"ttl_millis": 60000, "description": " ci "}, headers=ALICE
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["is_derived"] is True
    assert data["ttl_millis"] == 60000
    assert data["description"] == "ci"
    assert data["user_id"] == "u-alice"
    assert data["expires_at"] is not None
    assert data["token"].startswith(data["id"] + ":")

    listed = client.get("/v1/tokens", headers={"Authorization": f"Bearer {data['token']}"})
    assert listed.status_code == 200
    assert all(item["token"] is None for item in listed.json()["data"]["items"])


def test_create_without_body_uses_defaults(client):
    response = client.post("/v1/tokens", headers=ALICE)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["ttl_millis"] == 0
    assert data["expires_at"] is None


def test_create_rejects_absurd_ttl(client):
    response = client.post("/v1/tokens", json={"ttl_millis": 10**15}, headers=ALICE)

    assert response.status_code == 400
    assert _error(response)["code"] == "validation_error"


def test_list_returns_only_callers_tokens(client):
    response = client.get("/v1/tokens", headers=ALICE)

    assert response.status_code == 200
    ids = [item["id"] for item in response.json()["data"]["items"]]
    assert ids == ["token-1"]


def test_get_by_id(client):
    response = client.get("/v1/tokens/token-1", headers=ALICE)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["id"] == "token-1"
    assert data["user_principal"]["name"] == "local://u-alice"
    assert data["group_principals"][0]["principal_type"] == "group"
    assert data["expired"] is False


def test_get_other_users_token_is_404(client):
    response = client.get("/v1/tokens/token-3", headers=ALICE)

    assert response.status_code == 404
    assert _error(response)["code"] == "not_found"


def test_missing_authorization_is_401(client):
    response = client.get("/v1/tokens")

    assert response.status_code == 401
    assert _error(response)["code"] == "malformed_token"


@pytest.mark.parametrize(
    "header, code",
    [
        ("Basic dXNlcjpwYXNz", "malformed_token"),
        ("Bearer no-separator", "malformed_token"),
        ("Bearer token-1:wrong", "invalid_token"),
        ("Bearer token-2:abc123", "unauthorized"),
    ],
)
def test_bad_credentials_are_401(client, header, code):
    response = client.get("/v1/tokens", headers={"Authorization": header})

    assert response.status_code == 401
    assert _error(response)["code"] == code


def test_expired_token_is_410(client, api_store):
    seed_token(
        api_store,
        name="token-old",
        secret="expired-secret",
        ttl_millis=1000,
        created_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )

    response = client.get("/v1/tokens", headers={"Authorization": "Bearer token-old:expired-secret"})

    assert response.status_code == 410
    assert _error(response)["code"] == "token_expired"


def test_delete_current_is_idempotent(client, api_store):
    first = client.delete("/v1/tokens/current", headers=ALICE)
    second = client.delete("/v1/tokens/current", headers=ALICE)

    assert first.status_code == 200
    assert first.json()["data"] == {"deleted": True}
    assert second.status_code == 200
    assert api_store.get_token("token-1") is None


def test_delete_with_wrong_secret_is_401(client, api_store):
    response = client.delete("/v1/tokens/current", headers={"Authorization": "Bearer token-1:nope"})

    assert response.status_code == 401
    error = _error(response)
    assert error["code"] == "unauthorized"
    assert error["details"] == {"reason": "invalid_token"}
    assert api_store.get_token("token-1") is not None


def test_store_failure_is_opaque_500(settings):
    class BrokenStore(MemoryStore):
        def get_token(self, name):
            raise StoreUnavailable("password=hunter2 host=db")

    runtime = Runtime(settings, store=BrokenStore(), index=MemoryTokenIndex())
    with TestClient(create_app(runtime)) as client:
        response = client.get("/v1/tokens", headers=ALICE)

    assert response.status_code == 500
    error = _error(response)
    assert error["code"] == "store_failure"
    assert error["message"] == "internal server error"
    assert "hunter2" not in response.text


def test_response_headers(client):
    response = client.get("/v1/tokens", headers={**ALICE, "X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "no-store" in response.headers["Cache-Control"]


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["checks"]["store"]["status"] == "ok"


def test_healthz_reports_store_failure(settings):
    class UnhealthyStore(MemoryStore):
        def verify_connection(self):
            raise StoreUnavailable("down")

    runtime = Runtime(settings, store=UnhealthyStore(), index=MemoryTokenIndex())
    with TestClient(create_app(runtime)) as client:
        response = client.get("/healthz")

    assert response.status_code == 503
    assert response.json()["checks"]["store"]["status"] == "error"


def test_app_builds_its_own_runtime_from_environment():
    with TestClient(create_app()) as client:
        response = client.get("/v1/tokens", headers=ALICE)

    assert response.status_code == 401
