from __future__ import annotations

import io
import json
from typing import Any, Optional
from urllib.error import HTTPError, URLError

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app

PROVIDER_URL = "http://provider.test"
PROVIDER_KEY = "provider-secret-key"
WEBHOOK_SECRET = "hook-secret"


class FakeProviderResponse:
    def __init__(self, status: int, body: Any) -> None:
        self.status = status
        if isinstance(body, bytes):
            self._raw = body
        elif isinstance(body, str):
            self._raw = body.encode("utf-8")
        else:
            self._raw = json.dumps(body).encode("utf-8")
        self.headers = {"Content-Type": "application/json"}

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> "FakeProviderResponse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None


class FakeProvider:
    """Stands in for urllib's opener; answers by URL path."""

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, Any]] = {}
        self.requests: list[Any] = []
        self.unreachable = False

    def reply(self, path: str, status: int, body: Any) -> None:
        self.routes[path] = (status, body)

    def last_request(self) -> Optional[Any]:
        return self.requests[-1] if self.requests else None

    def __call__(self, req: Any, timeout: Optional[float] = None) -> FakeProviderResponse:
        self.requests.append(req)
        if self.unreachable:
            raise URLError("connection refused")
        path = req.full_url[len(PROVIDER_URL):]
        status, body = self.routes.get(path, (200, {"success": True}))
        response = FakeProviderResponse(status, body)
        if status >= 400:
            raise HTTPError(
                req.full_url, status, "provider error", response.headers, io.BytesIO(response.read())
            )
        return response


def _configure_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("REMOTE_URL_API", PROVIDER_URL)
    monkeypatch.setenv("REMOTE_API_KEY", PROVIDER_KEY)
    monkeypatch.setenv("WHATSAPP_WEBHOOK_AUTH", WEBHOOK_SECRET)
    monkeypatch.setenv("CONTACTS_RESPONSE_LIMIT", "10")


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, provider: FakeProvider) -> TestClient:
    _configure_env(monkeypatch)
    app = create_app(provider_opener=provider)
    return TestClient(app)


@pytest.fixture()
def api_key(client: TestClient) -> str:
    response = client.post("/apikeys", json={"description": "test operator"})
    assert response.status_code == 201
    return response.json()["data"]["token"]


@pytest.fixture()
def auth_headers(api_key: str) -> dict[str, str]:
    return {"x-api-key": api_key}


@pytest.fixture()
def webhook_headers() -> dict[str, str]:
    return {"x-webhook-secret": WEBHOOK_SECRET}
