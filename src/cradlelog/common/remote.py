from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger(__name__)

ENV_REMOTE_URL = "CRADLELOG_REMOTE_URL"
ENV_REMOTE_ANON_KEY = "CRADLELOG_REMOTE_ANON_KEY"

_RETRY_STATUSES = (429, 500, 502, 503, 504)


class RemoteError(RuntimeError):
    """Base error for the remote backend client."""


class RemoteApiError(RemoteError):
    """The backend answered with an error or an unexpected payload."""


class AuthError(RemoteError):
    """Sign-in, sign-up or sign-out was rejected."""


class RemoteSession(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    user_id: str = Field(..., min_length=1)
    email: Optional[str] = None


class RemoteBackend:
    """
    Minimal client for a hosted relational backend (GoTrue auth + PostgREST tables).

    Notes
    - Table operations take the same table names and field payloads as the
      local table store, so callers can send either path the same row.
    - The session lives in memory only; `get_session()` returns None until a
      sign-in or sign-up produced one.
    - Retries transport errors, 429 and 5xx with capped exponential backoff.
    """

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        timeout: float = 15.0,
        max_attempts: int = 4,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if not anon_key:
            raise ValueError("anon_key is required")
        self._anon_key = anon_key
        self._max_attempts = max(1, max_attempts)
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)
        self._sleep = sleep
        self._session: Optional[RemoteSession] = None

    @classmethod
    def from_env(cls) -> "RemoteBackend":
        url = os.environ.get(ENV_REMOTE_URL)
        key = os.environ.get(ENV_REMOTE_ANON_KEY)
        if not url or not key:
            missing = [name for name, val in [(ENV_REMOTE_URL, url), (ENV_REMOTE_ANON_KEY, key)] if not val]
            raise RuntimeError(f"Missing required environment variables for remote backend: {', '.join(missing)}")
        return cls(url, key)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RemoteBackend":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Auth ---------------
    def get_session(self) -> Optional[RemoteSession]:
        return self._session

    def sign_in_with_password(self, email: str, password: str) -> RemoteSession:
        data = self._auth_call("POST", "/auth/v1/token", params={"grant_type": "password"},
                               json_body={"email": email, "password": password})
        self._session = self._parse_session(data)
        return self._session

    def sign_up(self, email: str, password: str, metadata: Optional[Mapping[str, Any]] = None) -> Optional[RemoteSession]:
        """Register a user. Returns None when the backend withholds a session
        (e.g. email confirmation pending)."""
        body: Dict[str, Any] = {"email": email, "password": password}
        if metadata:
            body["data"] = dict(metadata)
        data = self._auth_call("POST", "/auth/v1/signup", json_body=body)
        if not data.get("access_token"):
            return None
        self._session = self._parse_session(data)
        return self._session

    def sign_out(self) -> None:
        if self._session is None:
            return
        try:
            self._auth_call("POST", "/auth/v1/logout", json_body={})
        finally:
            self._session = None

    # --------------- Tables ---------------
    def insert(self, table: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        rows = self._rest("POST", table, json_body=[dict(fields)], prefer="return=representation")
        if not rows:
            raise RemoteApiError(f"Insert into {table} returned no row")
        return rows[0]

    def list(self, table: str, *, eq: Optional[Mapping[str, Any]] = None, order: Optional[str] = None,
             descending: bool = False) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"select": "*"}
        for col, val in (eq or {}).items():
            params[col] = f"eq.{val}"
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        return self._rest("GET", table, params=params)

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> bool:
        rows = self._rest("PATCH", table, params={"id": f"eq.{row_id}"}, json_body=dict(patch),
                          prefer="return=representation")
        return len(rows) > 0

    def delete(self, table: str, row_id: str) -> bool:
        rows = self._rest("DELETE", table, params={"id": f"eq.{row_id}"}, prefer="return=representation")
        return len(rows) > 0

    # --------------- Internal ---------------
    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        token = self._session.access_token if self._session else self._anon_key
        headers = {"apikey": self._anon_key, "Authorization": f"Bearer {token}"}
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _parse_session(data: Dict[str, Any]) -> RemoteSession:
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        try:
            return RemoteSession(
                access_token=data.get("access_token") or "",
                refresh_token=data.get("refresh_token"),
                user_id=str(user.get("id") or ""),
                email=user.get("email"),
            )
        except ValidationError as exc:
            raise RemoteApiError("Malformed session payload from auth endpoint") from exc

    def _auth_call(self, method: str, path: str, *, params: Optional[Dict[str, str]] = None,
                   json_body: Any = None) -> Dict[str, Any]:
        resp = self._send(method, path, params=params, json_body=json_body, headers=self._headers())
        if resp.status_code in (400, 401, 403, 422):
            raise AuthError(_error_message(resp))
        data = self._decode(resp)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise RemoteApiError(f"Unexpected auth payload from {path}")
        return data

    def _rest(self, method: str, table: str, *, params: Optional[Dict[str, str]] = None, json_body: Any = None,
              prefer: Optional[str] = None) -> List[Dict[str, Any]]:
        resp = self._send(method, f"/rest/v1/{table}", params=params, json_body=json_body,
                          headers=self._headers(prefer))
        data = self._decode(resp)
        if data is None:
            return []
        if not isinstance(data, list):
            raise RemoteApiError(f"Expected a list of rows from {table}")
        return [r for r in data if isinstance(r, dict)]

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if resp.status_code >= 400:
            raise RemoteApiError(f"HTTP {resp.status_code}: {_error_message(resp)}")
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteApiError("Failed to parse JSON from backend") from exc

    def _send(self, method: str, path: str, *, params: Optional[Dict[str, str]], json_body: Any,
              headers: Dict[str, str]) -> httpx.Response:
        backoff = 0.5
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                resp = self._client.request(method, path, params=params, json=json_body, headers=headers)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                logger.warning("%s %s failed (attempt %d): %s", method, path, attempt, exc)
            else:
                if resp.status_code not in _RETRY_STATUSES or attempt == self._max_attempts:
                    return resp
                logger.warning("%s %s returned %d (attempt %d)", method, path, resp.status_code, attempt)
            if attempt < self._max_attempts:
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)
        raise RemoteError(f"{method} {path} failed after {self._max_attempts} attempts") from last_exc


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            val = body.get(key)
            if isinstance(val, str) and val:
                return val
    return resp.text[:200]


__all__ = [
    "AuthError",
    "RemoteApiError",
    "RemoteBackend",
    "RemoteError",
    "RemoteSession",
]
