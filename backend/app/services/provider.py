from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib import parse, request
from urllib.error import HTTPError, URLError

from backend.app.settings import Settings

logger = logging.getLogger("wa_gateway.provider")

Opener = Callable[..., Any]


class ProviderConfigurationError(Exception):
    pass


class ProviderConnectivityError(Exception):
    pass


@dataclass(frozen=True)
class ProviderResponse:
    status_code: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def reported_success(self) -> bool:
        return self.status_code == 200 and isinstance(self.data, dict) and (
            self.data.get("success") is True
        )


def decode_body(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text}


class ProviderClient:
    """Relays session commands to the remote messaging provider over HTTP.

    The provider credential comes from configuration and is never the operator's
    key. Transport failures and timeouts raise ProviderConnectivityError; any HTTP
    status the provider answers with is returned as-is.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float,
        opener: Optional[Opener] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._opener = opener or request.urlopen

    @classmethod
    def from_settings(cls, settings: Settings, opener: Optional[Opener] = None) -> "ProviderClient":
        return cls(
            base_url=settings.remote_url_api,
            api_key=settings.remote_api_key,
            timeout_seconds=settings.remote_timeout_seconds,
            opener=opener,
        )

    def ensure_configured(self) -> None:
        if not self.api_key:
            raise ProviderConfigurationError("Configuration error: REMOTE_API_KEY is not set")
        if not self.base_url:
            raise ProviderConfigurationError("Configuration error: REMOTE_URL_API is not set")

    def build_url(self, *segments: str) -> str:
        path = "/".join(parse.quote(segment, safe="") for segment in segments)
        return f"{self.base_url}/{path}"

    def get(self, *segments: str) -> ProviderResponse:
        return self._send("GET", self.build_url(*segments))

    def post(self, *segments: str, payload: dict[str, Any]) -> ProviderResponse:
        return self._send("POST", self.build_url(*segments), payload=payload)

    def _send(
        self, method: str, url: str, payload: Optional[dict[str, Any]] = None
    ) -> ProviderResponse:
        self.ensure_configured()
        headers = {"accept": "application/json", "x-api-key": self.api_key}
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = request.Request(url, data=data, method=method, headers=headers)
        logger.info("relay_forward method=%s url=%s", method, url)
        try:
            with self._opener(req, timeout=self.timeout_seconds) as response:
                status_code = response.status
                body = response.read()
                response_headers = dict(response.headers.items()) if response.headers else {}
        except HTTPError as exc:
            status_code = exc.code
            body = exc.read() if exc.fp is not None else b""
            response_headers = dict(exc.headers.items()) if exc.headers else {}
        except (URLError, TimeoutError, OSError) as exc:
            logger.error("relay_connectivity_error method=%s url=%s error=%s", method, url, exc)
            raise ProviderConnectivityError("Failed to connect to remote API") from exc

        decoded = decode_body(body)
        logger.info("relay_response method=%s url=%s status=%s", method, url, status_code)
        return ProviderResponse(status_code=status_code, data=decoded, headers=response_headers)
