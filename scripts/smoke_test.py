from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def request_json(
    *,
    url: str,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    payload: dict | None = None,
) -> tuple[int, dict | list | None, str]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Accept", "application/json")
    if data is not None:
        request.add_header("Content-Type", "application/json")
    for key, value in (headers or {}).items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            body = response.read().decode("utf-8")
            parsed = json.loads(body) if body.startswith("{") or body.startswith("[") else None
            return response.status, parsed, body
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        return exc.code, parsed, body


def request_text(*, url: str) -> tuple[int, str]:
    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for the WhatsApp session gateway.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--token", default="", help="JWT used to issue an operator API key.")
    parser.add_argument("--api-key", default="", help="Existing operator API key.")
    parser.add_argument("--webhook-secret", default="")
    parser.add_argument("--session-id", default="")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")

    status, data, _ = request_json(url=f"{base_url}/health")
    assert_true(status == 200, f"/health expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("status") == "ok", "/health invalid payload")
    print("OK /health")

    status, data, _ = request_json(url=f"{base_url}/health/ready")
    assert_true(status == 200, f"/health/ready expected 200, got {status}")
    print("OK /health/ready")

    status, body = request_text(url=f"{base_url}/metrics")
    assert_true(status == 200, f"/metrics expected 200, got {status}")
    assert_true("wa_gateway_requests_total" in body, "/metrics missing requests counter")
    print("OK /metrics")

    status, _, _ = request_json(url=f"{base_url}/devices")
    assert_true(status == 401, f"/devices without key expected 401, got {status}")
    print("OK /devices unauthorized")

    api_key = args.api_key.strip()
    if not api_key:
        headers = {"Authorization": f"Bearer {args.token.strip()}"} if args.token.strip() else {}
        status, data, body = request_json(
            url=f"{base_url}/apikeys",
            method="POST",
            headers=headers,
            payload={"description": "smoke test"},
        )
        assert_true(status == 201, f"/apikeys expected 201, got {status}: {body}")
        api_key = data["data"]["token"]
        print("OK /apikeys issued key")

    status, data, _ = request_json(url=f"{base_url}/devices", headers={"x-api-key": api_key})
    assert_true(status == 200, f"/devices expected 200, got {status}")
    print("OK /devices")

    webhook_headers = (
        {"x-webhook-secret": args.webhook_secret} if args.webhook_secret else {}
    )
    status, data, _ = request_json(
        url=f"{base_url}/webhook",
        method="POST",
        headers=webhook_headers,
        payload={"sessionId": "smoke-test", "dataType": "qr", "data": {}},
    )
    assert_true(status == 200, f"/webhook expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("receivedType") == "qr", "/webhook bad ack")
    print("OK /webhook")

    if args.session_id:
        status, data, body = request_json(
            url=f"{base_url}/session/status/{args.session_id}",
            headers={"x-api-key": api_key},
        )
        assert_true(status < 500, f"/session/status relay failed with {status}: {body}")
        print(f"OK /session/status relayed {status}")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
