from __future__ import annotations

import secrets
import string
from uuid import uuid4

DEVICE_KEY_ALPHABET = string.ascii_uppercase + string.digits
DEVICE_KEY_LENGTH = 8
API_TOKEN_PREFIX = "wapi_"


def generate_device_key() -> str:
    return "".join(secrets.choice(DEVICE_KEY_ALPHABET) for _ in range(DEVICE_KEY_LENGTH))


def is_device_key(value: str) -> bool:
    return len(value) == DEVICE_KEY_LENGTH and all(char in DEVICE_KEY_ALPHABET for char in value)


def new_uuid() -> str:
    return str(uuid4())


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


def generate_api_token() -> str:
    # 256 bits of entropy, hex encoded
    return f"{API_TOKEN_PREFIX}{secrets.token_hex(32)}"


def token_preview(token: str) -> str:
    return f"{token[:8]}..."
