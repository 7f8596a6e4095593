from __future__ import annotations

import pytest

from backend.app.models import DeviceStatus, WebhookDataType
from backend.app.services.lifecycle import (
    LifecycleOutcome,
    apply_event,
    parse_data_type,
    status_for_event,
)
from backend.app.store import InMemoryStore


@pytest.mark.parametrize(
    ("data_type", "expected"),
    [
        ("qr", DeviceStatus.qr),
        ("authenticated", DeviceStatus.authenticated),
        ("ready", DeviceStatus.ready),
        ("connecting", DeviceStatus.connecting),
        ("connected", DeviceStatus.connected),
        ("disconnected", DeviceStatus.disconnected),
    ],
)
def test_status_events_map_to_device_status(data_type: str, expected: DeviceStatus) -> None:
    assert status_for_event(parse_data_type(data_type)) == expected


def test_observed_and_unknown_events_carry_no_status() -> None:
    assert status_for_event(WebhookDataType.device_linked) is None
    assert status_for_event(WebhookDataType.message) is None
    assert parse_data_type("change_battery") is None
    assert parse_data_type(42) is None


def test_apply_event_outcomes() -> None:
    store = InMemoryStore()
    store.create_device("s1", "op-1")

    assert apply_event(store, session_id=None, raw_data_type="ready") == (
        LifecycleOutcome.missing_fields
    )
    assert apply_event(store, session_id="s1", raw_data_type="") == (
        LifecycleOutcome.missing_fields
    )
    assert apply_event(store, session_id="s1", raw_data_type="device_linked") == (
        LifecycleOutcome.observed
    )
    assert apply_event(store, session_id="s1", raw_data_type="battery") == (
        LifecycleOutcome.ignored
    )
    assert apply_event(store, session_id="s9", raw_data_type="ready") == (
        LifecycleOutcome.device_not_found
    )
    assert apply_event(store, session_id="s1", raw_data_type="connected") == (
        LifecycleOutcome.status_updated
    )
    device = store.get_device_by_session_id("s1")
    assert device.status == DeviceStatus.connected
    assert device.ready is True


def test_late_event_can_move_status_backwards() -> None:
    store = InMemoryStore()
    store.create_device("s1", "op-1")
    apply_event(store, session_id="s1", raw_data_type="ready")
    apply_event(store, session_id="s1", raw_data_type="authenticated")
    device = store.get_device_by_session_id("s1")
    assert device.status == DeviceStatus.authenticated
    assert device.ready is False
