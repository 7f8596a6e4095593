from __future__ import annotations

from backend.app.models import DeviceStatus, NormalizedContact, NormalizedMessage


def test_devices_are_scoped_to_key_owner(client, auth_headers) -> None:
    store = client.app.state.store
    store.create_device("mine", "dev-local", status=DeviceStatus.qr)
    store.create_device("theirs", "someone-else")

    listed = client.get("/devices", headers=auth_headers)
    assert listed.status_code == 200
    sessions = [item["sessionId"] for item in listed.json()["data"]]
    assert sessions == ["mine"]
    assert listed.json()["data"][0]["status"] == "qr"

    hidden = client.get("/devices/theirs", headers=auth_headers)
    assert hidden.status_code == 404
    assert hidden.json()["message"] == "Device not found or does not belong to you"
    assert client.get("/devices/theirs/messages", headers=auth_headers).status_code == 404
    assert client.delete("/devices/theirs", headers=auth_headers).status_code == 404
    assert store.get_device_by_session_id("theirs") is not None


def test_device_messages_newest_first(client, auth_headers) -> None:
    store = client.app.state.store
    device, _ = store.create_device("s1", "dev-local")
    store.save_message(device.key, NormalizedMessage(message_id="old", timestamp=10))
    store.save_message(device.key, NormalizedMessage(message_id="new", timestamp=20))

    response = client.get("/devices/s1/messages", headers=auth_headers)
    assert response.status_code == 200
    assert [item["messageId"] for item in response.json()["data"]] == ["new", "old"]


def test_device_contacts_sorted_by_name(client, auth_headers) -> None:
    store = client.app.state.store
    device, _ = store.create_device("s1", "dev-local")
    store.upsert_contact(device.key, NormalizedContact(contact_id="2@c.us", name="beta"))
    store.upsert_contact(device.key, NormalizedContact(contact_id="1@c.us", name="Alpha"))
    store.upsert_contact(device.key, NormalizedContact(contact_id="3@c.us"))

    response = client.get("/devices/s1/contacts", headers=auth_headers)
    assert [item["contactId"] for item in response.json()["data"]] == [
        "1@c.us",
        "2@c.us",
        "3@c.us",
    ]


def test_delete_device(client, auth_headers) -> None:
    client.app.state.store.create_device("s1", "dev-local")
    deleted = client.delete("/devices/s1", headers=auth_headers)
    assert deleted.status_code == 200
    assert deleted.json()["data"]["sessionId"] == "s1"
    assert client.get("/devices/s1", headers=auth_headers).status_code == 404


def test_devices_require_api_key(client) -> None:
    assert client.get("/devices").status_code == 401
