from __future__ import annotations

import argparse
import json
import sys
import time
import urllib.error
import urllib.request

LIFECYCLE = ["qr", "authenticated", "ready"]


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def lifecycle_event(session_id: str, data_type: str) -> dict:
    data: dict = {}
    if data_type == "qr":
        data = {"qr": f"2@mock-{session_id}"}
    return {"sessionId": session_id, "dataType": data_type, "data": data}


def message_event(session_id: str, index: int) -> dict:
    sender = f"5511{index:07d}"
    return {
        "sessionId": session_id,
        "dataType": "message",
        "data": {
            "message": {
                "_data": {
                    "id": {"_serialized": f"false_{sender}@c.us_MOCK{index}"},
                    "from": {"user": sender, "_serialized": f"{sender}@c.us"},
                    "to": {"user": "5511999999999", "_serialized": "5511999999999@c.us"},
                    "body": f"mock message {index}",
                    "type": "chat",
                    "t": int(time.time()),
                    "ack": 1,
                }
            }
        },
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock provider webhooks to a local gateway.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--session-id", default="mock-session")
    parser.add_argument("--messages", type=int, default=3)
    parser.add_argument("--skip-lifecycle", action="store_true")
    parser.add_argument("--secret", default="")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhook"
    headers = {"x-webhook-secret": args.secret} if args.secret else {}

    events = []
    if not args.skip_lifecycle:
        events.extend(lifecycle_event(args.session_id, data_type) for data_type in LIFECYCLE)
    events.extend(message_event(args.session_id, index) for index in range(1, args.messages + 1))

    for event in events:
        body = json.dumps(event, separators=(",", ":")).encode("utf-8")
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {event['dataType']} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
