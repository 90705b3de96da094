from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest

from cradlelog.common.remote import AuthError, RemoteApiError, RemoteBackend, RemoteError


BASE = "https://db.example.test"


def _backend(handler, *, sleeps: List[float] | None = None, **kwargs) -> RemoteBackend:
    client = httpx.Client(base_url=BASE, transport=httpx.MockTransport(handler), timeout=5.0)
    recorder = sleeps if sleeps is not None else []
    return RemoteBackend(BASE, "anon-key", client=client, sleep=recorder.append, **kwargs)


def _session_payload() -> Dict[str, Any]:
    return {
        "access_token": "user-token",
        "refresh_token": "refresh",
        "user": {"id": "user-1", "email": "a@example.com"},
    }


def test_sign_in_stores_session_and_authorizes_later_calls():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/auth/v1/token":
            assert request.url.params.get("grant_type") == "password"
            assert json.loads(request.content) == {"email": "a@example.com", "password": "pw"}
            return httpx.Response(200, json=_session_payload())
        return httpx.Response(200, json=[])

    with _backend(handler) as remote:
        assert remote.get_session() is None
        session = remote.sign_in_with_password("a@example.com", "pw")
        assert session.user_id == "user-1"
        assert remote.get_session() == session
        remote.list("diaper_logs")

    assert seen[0].headers["Authorization"] == "Bearer anon-key"
    assert seen[0].headers["apikey"] == "anon-key"
    assert seen[1].headers["Authorization"] == "Bearer user-token"


def test_sign_in_rejected_raises_auth_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error_description": "Invalid login credentials"})

    with _backend(handler) as remote:
        with pytest.raises(AuthError, match="Invalid login credentials"):
            remote.sign_in_with_password("a@example.com", "bad")
        assert remote.get_session() is None


def test_sign_up_without_session_returns_none():
    bodies: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "user-2", "email": "b@example.com"})

    with _backend(handler) as remote:
        assert remote.sign_up("b@example.com", "pw", {"firstName": "Bea"}) is None
        assert remote.get_session() is None
    assert bodies[0]["data"] == {"firstName": "Bea"}


def test_sign_out_clears_session():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v1/logout":
            return httpx.Response(204)
        return httpx.Response(200, json=_session_payload())

    with _backend(handler) as remote:
        remote.sign_in_with_password("a@example.com", "pw")
        remote.sign_out()
        assert remote.get_session() is None


def test_table_operations_use_postgrest_conventions():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST":
            row = json.loads(request.content)[0]
            return httpx.Response(201, json=[{"id": "r1", "created_at": "2024-01-01T00:00:00+00:00", **row}])
        if request.method == "GET":
            return httpx.Response(200, json=[{"id": "r1", "child_id": "c1"}])
        if request.method == "PATCH":
            return httpx.Response(200, json=[{"id": "r1"}])
        return httpx.Response(200, json=[])

    with _backend(handler) as remote:
        row = remote.insert("diaper_logs", {"child_id": "c1", "amount": "env"})
        assert row["id"] == "r1"
        assert row["amount"] == "env"
        assert remote.list("diaper_logs", eq={"child_id": "c1"}, order="change_time", descending=True) == [
            {"id": "r1", "child_id": "c1"}
        ]
        assert remote.update("diaper_logs", "r1", {"amount": "new"}) is True
        assert remote.delete("diaper_logs", "missing") is False

    post, get, patch, delete = seen
    assert post.url.path == "/rest/v1/diaper_logs"
    assert post.headers["Prefer"] == "return=representation"
    assert get.url.params["child_id"] == "eq.c1"
    assert get.url.params["order"] == "change_time.desc"
    assert get.url.params["select"] == "*"
    assert patch.url.params["id"] == "eq.r1"
    assert delete.url.params["id"] == "eq.missing"


def test_retries_transient_statuses_with_backoff():
    calls = {"n": 0}
    sleeps: List[float] = []

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json=[])

    with _backend(handler, sleeps=sleeps) as remote:
        assert remote.list("sleep_logs") == []
    assert calls["n"] == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_max_attempts_on_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    with _backend(handler, max_attempts=2) as remote:
        with pytest.raises(RemoteError):
            remote.list("sleep_logs")


def test_non_retryable_error_raises_api_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "relation does not exist"})

    with _backend(handler) as remote:
        with pytest.raises(RemoteApiError, match="relation does not exist"):
            remote.list("nope")


def test_from_env_requires_url_and_key(monkeypatch):
    monkeypatch.delenv("CRADLELOG_REMOTE_URL", raising=False)
    monkeypatch.setenv("CRADLELOG_REMOTE_ANON_KEY", "k")
    with pytest.raises(RuntimeError, match="CRADLELOG_REMOTE_URL"):
        RemoteBackend.from_env()
