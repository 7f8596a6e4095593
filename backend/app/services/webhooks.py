from __future__ import annotations

import hmac
from typing import Optional

from starlette.datastructures import Headers

WEBHOOK_SECRET_HEADERS = ["x-webhook-secret", "x-api-key"]


class WebhookAuthorizationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def verify_webhook_secret(headers: Headers, secret: str) -> None:
    if not secret:
        return
    provided = _header_value(headers, WEBHOOK_SECRET_HEADERS)
    if not provided:
        raise WebhookAuthorizationError("Unauthorized: missing webhook secret")
    if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise WebhookAuthorizationError("Unauthorized: Invalid authorization or API key")
