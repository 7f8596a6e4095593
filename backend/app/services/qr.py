from __future__ import annotations

import io
from typing import Any, Optional

import segno

QR_IMAGE_MEDIA_TYPE = "image/png"


def extract_qr_payload(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    value = data.get("qr")
    if isinstance(value, str) and value:
        return value
    return None


def render_qr_png(payload: str, *, scale: int = 5, border: int = 4) -> bytes:
    buffer = io.BytesIO()
    segno.make(payload, error="m").save(buffer, kind="png", scale=scale, border=border)
    return buffer.getvalue()
