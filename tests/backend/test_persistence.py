from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import DeviceStatus
from backend.app.persistence import SqlitePersistence


def _new_client(monkeypatch, db_path: Path, provider) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("REMOTE_URL_API", "http://provider.test")
    monkeypatch.setenv("REMOTE_API_KEY", "provider-secret-key")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_AUTH", "")
    return TestClient(create_app(provider_opener=provider))


def test_devices_messages_and_keys_survive_restart(monkeypatch, tmp_path, provider) -> None:
    db_path = tmp_path / "wa_gateway.sqlite3"
    first_client = _new_client(monkeypatch, db_path, provider)
    token = first_client.post("/apikeys", json={"description": "persist"}).json()["data"]["token"]
    headers = {"x-api-key": token}

    assert first_client.get("/session/start/s1", headers=headers).status_code == 200
    first_client.post("/webhook", json={"sessionId": "s1", "dataType": "ready"})
    first_client.post(
        "/webhook",
        json={
            "sessionId": "s1",
            "dataType": "message",
            "data": {"message": {"id": "m1", "from": "1@c.us", "to": "2@c.us", "body": "hi"}},
        },
    )
    key = first_client.app.state.store.get_device_by_session_id("s1").key

    restarted_client = _new_client(monkeypatch, db_path, provider)
    device = restarted_client.get("/devices/s1", headers=headers)
    assert device.status_code == 200
    assert device.json()["data"]["key"] == key
    assert device.json()["data"]["status"] == DeviceStatus.ready.value
    assert device.json()["data"]["ready"] is True

    messages = restarted_client.get("/devices/s1/messages", headers=headers)
    assert messages.status_code == 200
    assert messages.json()["data"][0]["messageId"] == "m1"
    assert messages.json()["data"][0]["from"] == "1"


def test_contacts_survive_restart(monkeypatch, tmp_path, provider) -> None:
    db_path = tmp_path / "wa_gateway.sqlite3"
    first_client = _new_client(monkeypatch, db_path, provider)
    token = first_client.post("/apikeys", json={}).json()["data"]["token"]
    headers = {"x-api-key": token}
    first_client.get("/session/start/s1", headers=headers)
    provider.reply(
        "/client/getContacts/s1",
        200,
        [
            {
                "id": {"user": "1", "_serialized": "1@c.us"},
                "name": "Ana",
                "businessProfile": {"categories": [{"id": "7"}]},
            }
        ],
    )
    first_client.get("/client/getContacts/s1", headers=headers)

    restarted_client = _new_client(monkeypatch, db_path, provider)
    contacts = restarted_client.get("/devices/s1/contacts", headers=headers)
    assert contacts.status_code == 200
    assert contacts.json()["data"][0]["contactId"] == "1@c.us"
    assert contacts.json()["data"][0]["categories"] == [{"id": "7"}]


def test_deleted_device_stays_deleted(monkeypatch, tmp_path, provider) -> None:
    db_path = tmp_path / "wa_gateway.sqlite3"
    first_client = _new_client(monkeypatch, db_path, provider)
    token = first_client.post("/apikeys", json={}).json()["data"]["token"]
    headers = {"x-api-key": token}
    first_client.get("/session/start/s1", headers=headers)
    assert first_client.delete("/devices/s1", headers=headers).status_code == 200

    restarted_client = _new_client(monkeypatch, db_path, provider)
    assert restarted_client.get("/devices/s1", headers=headers).status_code == 404


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "wa_gateway.sqlite3"
    persistence = SqlitePersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()
