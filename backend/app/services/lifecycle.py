from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from backend.app.models import DeviceStatus, WebhookDataType
from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_gateway.lifecycle")

STATUS_EVENTS: dict[WebhookDataType, DeviceStatus] = {
    WebhookDataType.qr: DeviceStatus.qr,
    WebhookDataType.authenticated: DeviceStatus.authenticated,
    WebhookDataType.ready: DeviceStatus.ready,
    WebhookDataType.connecting: DeviceStatus.connecting,
    WebhookDataType.connected: DeviceStatus.connected,
    WebhookDataType.disconnected: DeviceStatus.disconnected,
}

OBSERVED_EVENTS = frozenset(
    {
        WebhookDataType.device_linked,
        WebhookDataType.device_unlinked,
        WebhookDataType.message,
    }
)

READY_STATUSES = frozenset({DeviceStatus.ready, DeviceStatus.connected})


class LifecycleOutcome(str, Enum):
    status_updated = "status_updated"
    observed = "observed"
    ignored = "ignored"
    missing_fields = "missing_fields"
    device_not_found = "device_not_found"


def parse_data_type(raw: Any) -> Optional[WebhookDataType]:
    if not isinstance(raw, str):
        return None
    try:
        return WebhookDataType(raw.strip())
    except ValueError:
        return None


def status_for_event(data_type: Optional[WebhookDataType]) -> Optional[DeviceStatus]:
    if data_type is None:
        return None
    return STATUS_EVENTS.get(data_type)


def apply_event(
    store: InMemoryStore,
    *,
    session_id: Optional[str],
    raw_data_type: Any,
    data: Any = None,
) -> LifecycleOutcome:
    """Apply one webhook event to the device it names.

    Status-bearing events overwrite the stored status in arrival order; there is no
    timestamp comparison, so a late duplicate can move a device backwards.
    """
    if not session_id or not raw_data_type:
        logger.warning(
            "webhook_missing_fields session_id=%s data_type=%s", session_id, raw_data_type
        )
        return LifecycleOutcome.missing_fields

    data_type = parse_data_type(raw_data_type)
    status = status_for_event(data_type)
    if status is None:
        if data_type in OBSERVED_EVENTS:
            device_ref = data.get("device") if isinstance(data, dict) else None
            logger.info(
                "webhook_observed session_id=%s data_type=%s device=%s",
                session_id,
                data_type.value,
                device_ref,
            )
            return LifecycleOutcome.observed
        logger.info(
            "webhook_ignored_data_type session_id=%s data_type=%s", session_id, raw_data_type
        )
        return LifecycleOutcome.ignored

    if not store.get_device_by_session_id(session_id):
        logger.warning(
            "device_not_found session_id=%s data_type=%s", session_id, data_type.value
        )
        return LifecycleOutcome.device_not_found

    device = store.update_device_status(
        session_id, status, ready=status in READY_STATUSES
    )
    logger.info(
        "device_status_updated session_id=%s data_type=%s status=%s",
        session_id,
        data_type.value,
        device.status.value,
    )
    return LifecycleOutcome.status_updated
