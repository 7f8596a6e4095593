from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Optional

from backend.app.models import MessageRecord, utc_now
from backend.app.observability import MetricsRegistry
from backend.app.services.lifecycle import LifecycleOutcome, apply_event
from backend.app.services.normalizer import locate_message_payload, normalize_message
from backend.app.services.side_effects import run_side_effect
from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_gateway.webhook")


@dataclass(frozen=True)
class WebhookEvent:
    session_id: Optional[str]
    data_type: Optional[str]
    data: Any
    message_payload: Optional[dict[str, Any]]
    received_at_utc: datetime = field(default_factory=utc_now)

    def as_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "dataType": self.data_type,
            "data": self.data,
            "receivedAt": self.received_at_utc.isoformat(),
        }


@dataclass
class IngestReport:
    lifecycle: Optional[LifecycleOutcome] = None
    message: Optional[MessageRecord] = None
    message_dropped: bool = False


def _optional_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_webhook_event(body: Any) -> WebhookEvent:
    if not isinstance(body, dict):
        return WebhookEvent(session_id=None, data_type=None, data=None, message_payload=None)
    return WebhookEvent(
        session_id=_optional_text(body.get("sessionId")),
        data_type=_optional_text(body.get("dataType")),
        data=body.get("data"),
        message_payload=locate_message_payload(body),
    )


def save_event_message(
    store: InMemoryStore, event: WebhookEvent
) -> tuple[Optional[MessageRecord], bool]:
    """Persist the message carried by an event. Returns (record, dropped)."""
    if event.message_payload is None or not event.session_id:
        return None, False
    device = store.get_device_by_session_id(event.session_id)
    if not device:
        logger.warning("message_dropped reason=device_not_found session_id=%s", event.session_id)
        return None, True
    record = store.save_message(device.key, normalize_message(event.message_payload))
    logger.info(
        "message_saved device_key=%s session_id=%s message_id=%s",
        device.key,
        event.session_id,
        record.message_id,
    )
    return record, False


def ingest_webhook_event(
    store: InMemoryStore,
    event: WebhookEvent,
    *,
    metrics: Optional[MetricsRegistry] = None,
) -> IngestReport:
    """Apply a webhook event to local state.

    Lifecycle and message persistence are isolated from each other and from the
    caller: failures are logged and reported as missing results.
    """
    report = IngestReport()
    report.lifecycle = run_side_effect(
        "device_status_update",
        lambda: apply_event(
            store,
            session_id=event.session_id,
            raw_data_type=event.data_type,
            data=event.data,
        ),
        metrics=metrics,
        session_id=event.session_id,
        data_type=event.data_type,
    )
    if metrics and report.lifecycle == LifecycleOutcome.status_updated:
        metrics.incr("device_status_updated")

    saved = run_side_effect(
        "message_save",
        lambda: save_event_message(store, event),
        metrics=metrics,
        session_id=event.session_id,
    )
    if saved:
        report.message, report.message_dropped = saved
    if metrics:
        if report.message:
            metrics.incr("message_saved")
        if report.message_dropped:
            metrics.incr("message_dropped")
    return report


class LastWebhookHolder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._event: Optional[WebhookEvent] = None

    def remember(self, event: WebhookEvent) -> None:
        with self._lock:
            self._event = event

    def snapshot(self) -> Optional[dict[str, Any]]:
        with self._lock:
            return self._event.as_dict() if self._event else None
