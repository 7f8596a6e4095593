from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import DeviceStatus, NormalizedContact, NormalizedMessage
from backend.app.services.keys import is_device_key
from backend.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError


def test_device_create_is_insert_if_absent_under_concurrency() -> None:
    store = InMemoryStore()

    def starter(_: int):
        device, _created = store.create_device("s1", "op-1", status=DeviceStatus.connecting)
        return device.key

    with ThreadPoolExecutor(max_workers=10) as executor:
        keys = list(executor.map(starter, range(50)))

    assert len(set(keys)) == 1
    assert len(store.list_devices()) == 1


def test_device_keys_are_unique_and_well_formed() -> None:
    store = InMemoryStore()

    def writer(index: int) -> str:
        device, created = store.create_device(f"session-{index}", "op-1")
        assert created
        return device.key

    with ThreadPoolExecutor(max_workers=10) as executor:
        keys = list(executor.map(writer, range(300)))

    assert len(set(keys)) == 300
    assert all(is_device_key(key) for key in keys)


def test_session_bound_to_other_operator_conflicts() -> None:
    store = InMemoryStore()
    store.create_device("s1", "op-1")
    with pytest.raises(StoreConflictError):
        store.create_device("s1", "op-2")


def test_update_device_rejects_immutable_fields() -> None:
    store = InMemoryStore()
    store.create_device("s1", "op-1")
    with pytest.raises(ValueError):
        store.update_device("s1", key="ABCDEFGH")
    with pytest.raises(StoreNotFoundError):
        store.update_device("missing", status=DeviceStatus.ready)


def test_message_and_contact_reads_during_writes() -> None:
    store = InMemoryStore()
    device, _ = store.create_device("s1", "op-1")
    read_errors: list[Exception] = []

    def writer(index: int) -> None:
        store.save_message(
            device.key, NormalizedMessage(message_id=f"m{index}", text="x", timestamp=index)
        )
        store.upsert_contact(
            device.key, NormalizedContact(contact_id=f"{index % 20}@c.us", name=f"c{index}")
        )

    def reader() -> None:
        for _ in range(300):
            try:
                store.list_messages_by_device(device.key)
                store.list_contacts_by_device(device.key)
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, i) for i in range(300)]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    messages = store.list_messages_by_device(device.key)
    assert len(messages) == 300
    assert messages[0].timestamp == 299
    assert len(store.list_contacts_by_device(device.key)) == 20


def test_contact_upsert_overwrites_fields_and_keeps_identity() -> None:
    store = InMemoryStore()
    device, _ = store.create_device("s1", "op-1")
    first, created = store.upsert_contact(
        device.key, NormalizedContact(contact_id="1@c.us", name="Old", email="a@example.com")
    )
    assert created
    second, created = store.upsert_contact(
        device.key, NormalizedContact(contact_id="1@c.us", name="New")
    )
    assert not created
    assert second.uuid == first.uuid
    assert second.created_at_utc == first.created_at_utc
    assert second.name == "New"
    assert second.email is None


def test_device_and_contact_lookups() -> None:
    store = InMemoryStore()
    device, _ = store.create_device("s1", "op-1")
    assert store.get_device_by_key(device.key).session_id == "s1"
    assert store.get_device_by_key("ZZZZZZZZ") is None
    assert store.verify_device_ownership("s1", "op-1")
    assert not store.verify_device_ownership("s1", "op-2")

    assert store.update_device_ready_state("s1", True).ready is True
    store.upsert_contact(device.key, NormalizedContact(contact_id="1@c.us", name="Ana"))
    assert store.get_contact("1@c.us").device_key == device.key
    assert store.get_contact("2@c.us") is None


def test_bulk_contact_save_isolates_failed_writes() -> None:
    class FlakyPersistence:
        def __init__(self) -> None:
            self.written: list[str] = []

        def upsert_contact(self, record) -> None:
            if record.contact_id == "222@c.us":
                raise SQLAlchemyError("disk I/O error")
            self.written.append(record.contact_id)

    store = InMemoryStore()
    device, _ = store.create_device("s1", "op-1")
    store.persistence = FlakyPersistence()

    saved = store.save_contacts(
        device.key,
        [
            NormalizedContact(contact_id="111@c.us", name="Good"),
            NormalizedContact(contact_id="222@c.us", name="Unlucky"),
            NormalizedContact(contact_id="333@c.us", name="Also good"),
        ],
    )
    assert [item.contact_id for item in saved] == ["111@c.us", "333@c.us"]
    assert store.persistence.written == ["111@c.us", "333@c.us"]
