from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime, timedelta

import jwt


def operator_token(
    secret: str, subject: str, roles: list[str], hours: int, algorithm: str
) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=hours),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def issue_api_key(base_url: str, token: str, description: str) -> tuple[int, dict]:
    """Exchange an operator JWT for a gateway API key via POST /apikeys."""
    request = urllib.request.Request(
        f"{base_url.rstrip('/')}/apikeys",
        data=json.dumps({"description": description}).encode("utf-8"),
        method="POST",
    )
    request.add_header("Content-Type", "application/json")
    request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            return exc.code, json.loads(body)
        except json.JSONDecodeError:
            return exc.code, {"message": body}


def main() -> int:
    parser = argparse.ArgumentParser(
        description=(
            "Mint an operator JWT for the WhatsApp gateway and optionally exchange it "
            "for an x-api-key token."
        )
    )
    parser.add_argument("--secret", required=True, help="JWT_SECRET of the gateway.")
    parser.add_argument("--subject", required=True, help="Operator user id.")
    parser.add_argument("--roles", default="operator", help="Comma-separated roles.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    parser.add_argument(
        "--base-url",
        default="",
        help="Gateway URL. When set, the JWT is used to issue an API key.",
    )
    parser.add_argument("--description", default="Issued via generate_jwt")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    token = operator_token(args.secret, args.subject, roles, args.hours, args.algorithm)
    if not args.base_url:
        print(token)
        return 0

    status, body = issue_api_key(args.base_url, token, args.description)
    if status != 201:
        message = body.get("message")
        print(f"api key issuance failed status={status} message={message}", file=sys.stderr)
        return 1
    data = body.get("data") or {}
    print(f"api_key={data.get('token')}")
    print(f"api_key_id={data.get('id')}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
