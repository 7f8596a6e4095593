from __future__ import annotations

import logging
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    ApiKeyRecord,
    ContactRecord,
    DeviceRecord,
    DeviceStatus,
    MessageRecord,
    NormalizedContact,
    NormalizedMessage,
    utc_now,
)
from backend.app.services.keys import generate_api_token, generate_device_key, new_id, new_uuid

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence

logger = logging.getLogger("wa_gateway.store")

MAX_KEY_ATTEMPTS = 32
DEVICE_MUTABLE_FIELDS = {"number", "status", "ready", "user_id"}


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class StorePersistenceError(Exception):
    pass


class InMemoryStore:
    """Canonical record store for devices, messages, contacts and operator API keys.

    All mutations go through this class. Devices are keyed by provider session id,
    messages and contacts are scoped to a device through its locally generated key.
    When a persistence backend is attached every mutation is written through and the
    store hydrates from it on startup.
    """

    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.devices: dict[str, DeviceRecord] = {}
        self.messages: list[MessageRecord] = []
        self.contacts: dict[str, ContactRecord] = {}
        self.api_keys: dict[str, ApiKeyRecord] = {}
        self._issued_device_keys: set[str] = set()

        if self.persistence:
            for device in self.persistence.list_devices():
                self.devices[device.session_id] = device
                self._issued_device_keys.add(device.key)
            self.messages.extend(self.persistence.list_messages())
            for contact in self.persistence.list_contacts():
                self.contacts[contact.contact_id] = contact
            # keys of deleted devices live on in their messages and contacts
            self._issued_device_keys.update(item.device_key for item in self.messages)
            self._issued_device_keys.update(item.device_key for item in self.contacts.values())
            for api_key in self.persistence.list_api_keys():
                self.api_keys[api_key.id] = api_key

    # Devices

    def create_device(
        self,
        session_id: str,
        user_id: str,
        number: str = "",
        status: DeviceStatus = DeviceStatus.unknown,
    ) -> tuple[DeviceRecord, bool]:
        with self._lock:
            existing = self.devices.get(session_id)
            if existing:
                if existing.user_id != user_id:
                    raise StoreConflictError(
                        f"session {session_id} is already bound to another operator"
                    )
                updated = existing.model_copy(
                    update={
                        "status": status,
                        "ready": False,
                        "updated_at_utc": utc_now(),
                    }
                )
                self.devices[session_id] = updated
                self._persist(self._persist_device, updated)
                return updated, False

            now = utc_now()
            device = DeviceRecord(
                uuid=new_uuid(),
                key=self._next_device_key(),
                session_id=session_id,
                user_id=user_id,
                number=number,
                status=status,
                ready=False,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.devices[session_id] = device
            self._issued_device_keys.add(device.key)
            self._persist(self._persist_device, device)
            logger.info(
                "device_created session_id=%s key=%s user_id=%s status=%s",
                session_id,
                device.key,
                user_id,
                status.value,
            )
            return device, True

    def get_device_by_session_id(self, session_id: str) -> Optional[DeviceRecord]:
        with self._lock:
            return self.devices.get(session_id)

    def get_device_by_key(self, device_key: str) -> Optional[DeviceRecord]:
        with self._lock:
            for device in self.devices.values():
                if device.key == device_key:
                    return device
        return None

    def require_device(self, session_id: str) -> DeviceRecord:
        device = self.get_device_by_session_id(session_id)
        if not device:
            raise StoreNotFoundError(f"device not found: {session_id}")
        return device

    def update_device(self, session_id: str, **fields: Any) -> DeviceRecord:
        unknown = set(fields) - DEVICE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"device fields are not mutable: {sorted(unknown)}")
        with self._lock:
            device = self.require_device(session_id)
            fields["updated_at_utc"] = utc_now()
            updated = device.model_copy(update=fields)
            self.devices[session_id] = updated
            self._persist(self._persist_device, updated)
            return updated

    def update_device_status(
        self, session_id: str, status: DeviceStatus, ready: Optional[bool] = None
    ) -> DeviceRecord:
        fields: dict[str, Any] = {"status": status}
        if ready is not None:
            fields["ready"] = ready
        return self.update_device(session_id, **fields)

    def update_device_ready_state(self, session_id: str, ready: bool) -> DeviceRecord:
        return self.update_device(session_id, ready=ready)

    def verify_device_ownership(self, session_id: str, user_id: str) -> bool:
        device = self.get_device_by_session_id(session_id)
        return bool(device and device.user_id == user_id)

    def list_devices(self, user_id: Optional[str] = None) -> list[DeviceRecord]:
        with self._lock:
            records = list(self.devices.values())
        if user_id is not None:
            records = [item for item in records if item.user_id == user_id]
        records.sort(key=lambda item: item.created_at_utc)
        return records

    def delete_device(self, session_id: str) -> DeviceRecord:
        with self._lock:
            device = self.require_device(session_id)
            del self.devices[session_id]
            if self.persistence:
                self._persist(self.persistence.delete_device, session_id)
            return device

    # Messages

    def save_message(self, device_key: str, message: NormalizedMessage) -> MessageRecord:
        record = MessageRecord(
            uuid=new_uuid(),
            device_key=device_key,
            created_at_utc=utc_now(),
            **message.model_dump(),
        )
        with self._lock:
            self.messages.append(record)
            if self.persistence:
                self._persist(self.persistence.insert_message, record)
        return record

    def list_messages_by_device(self, device_key: str) -> list[MessageRecord]:
        with self._lock:
            records = [item for item in self.messages if item.device_key == device_key]
        records.sort(key=lambda item: item.timestamp, reverse=True)
        return records

    # Contacts

    def get_contact(self, contact_id: str) -> Optional[ContactRecord]:
        with self._lock:
            return self.contacts.get(contact_id)

    def upsert_contact(
        self, device_key: str, contact: NormalizedContact
    ) -> tuple[ContactRecord, bool]:
        with self._lock:
            existing = self.contacts.get(contact.contact_id)
            now = utc_now()
            record = ContactRecord(
                uuid=existing.uuid if existing else new_uuid(),
                device_key=device_key,
                created_at_utc=existing.created_at_utc if existing else now,
                updated_at_utc=now,
                **contact.model_dump(),
            )
            self.contacts[record.contact_id] = record
            if self.persistence:
                self._persist(self.persistence.upsert_contact, record)
            return record, existing is None

    def save_contacts(
        self, device_key: str, contacts: list[NormalizedContact]
    ) -> list[ContactRecord]:
        saved: list[ContactRecord] = []
        for contact in contacts:
            try:
                record, _ = self.upsert_contact(device_key, contact)
            except (StorePersistenceError, ValidationError):
                logger.exception(
                    "contact_save_failed device_key=%s contact_id=%s",
                    device_key,
                    contact.contact_id,
                )
                continue
            saved.append(record)
        return saved

    def list_contacts_by_device(self, device_key: str) -> list[ContactRecord]:
        with self._lock:
            records = [item for item in self.contacts.values() if item.device_key == device_key]
        records.sort(key=lambda item: (item.name is None, (item.name or "").lower()))
        return records

    # API keys

    def create_api_key(self, user_id: str, description: Optional[str] = None) -> ApiKeyRecord:
        with self._lock:
            now = utc_now()
            record = ApiKeyRecord(
                id=new_id("key"),
                user_id=user_id,
                token=generate_api_token(),
                status=True,
                description=description,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.api_keys[record.id] = record
            self._persist(self._persist_api_key, record)
            return record

    def find_active_api_key(self, token: str) -> Optional[ApiKeyRecord]:
        with self._lock:
            for record in self.api_keys.values():
                if record.status and record.token == token:
                    return record
        return None

    def list_api_keys(self, user_id: str) -> list[ApiKeyRecord]:
        with self._lock:
            records = [item for item in self.api_keys.values() if item.user_id == user_id]
        records.sort(key=lambda item: item.created_at_utc)
        return records

    def get_owned_api_key(self, key_id: str, user_id: str) -> ApiKeyRecord:
        with self._lock:
            record = self.api_keys.get(key_id)
        if not record or record.user_id != user_id:
            raise StoreNotFoundError("API key not found or does not belong to you")
        return record

    def set_api_key_status(self, key_id: str, user_id: str, status: bool) -> ApiKeyRecord:
        with self._lock:
            record = self.get_owned_api_key(key_id, user_id)
            updated = record.model_copy(update={"status": status, "updated_at_utc": utc_now()})
            self.api_keys[key_id] = updated
            self._persist(self._persist_api_key, updated)
            return updated

    def delete_api_key(self, key_id: str, user_id: str) -> ApiKeyRecord:
        with self._lock:
            record = self.get_owned_api_key(key_id, user_id)
            del self.api_keys[key_id]
            if self.persistence:
                self._persist(self.persistence.delete_api_key, key_id)
            return record

    # Internals

    def _next_device_key(self) -> str:
        for _ in range(MAX_KEY_ATTEMPTS):
            candidate = generate_device_key()
            if candidate not in self._issued_device_keys:
                return candidate
        raise StoreConflictError("could not allocate a unique device key")

    def _persist_device(self, record: DeviceRecord) -> None:
        if self.persistence:
            self.persistence.upsert_device(record)

    def _persist_api_key(self, record: ApiKeyRecord) -> None:
        if self.persistence:
            self.persistence.upsert_api_key(record)

    @staticmethod
    def _persist(writer: Callable[[Any], None], record: Any) -> None:
        try:
            writer(record)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(f"persistence write failed: {exc}") from exc
