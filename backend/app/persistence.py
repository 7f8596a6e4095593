from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    ApiKeyRecord,
    ContactRecord,
    DeviceRecord,
    DeviceStatus,
    MessageRecord,
)


def _json_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _load_json(value: Optional[str]) -> Any:
    if not value:
        return None
    return json.loads(value)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Write-through backing tables for the record store.

    Uses SQLAlchemy Core, so both SQLite and PostgreSQL URLs work.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.devices = Table(
            "devices",
            self.metadata,
            Column("uuid", String(36), primary_key=True),
            Column("key", String(8), nullable=False, unique=True),
            Column("session_id", String(255), nullable=False, unique=True),
            Column("user_id", String(255), nullable=False, index=True),
            Column("number", String(50), nullable=False),
            Column("status", String(20), nullable=False),
            Column("ready", Boolean, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.messages = Table(
            "messages",
            self.metadata,
            Column("uuid", String(36), primary_key=True),
            Column("device_key", String(8), nullable=False, index=True),
            Column("message_id", String(255), nullable=False),
            Column("from_number", String(255), nullable=True),
            Column("to_number", String(255), nullable=True),
            Column("text", Text, nullable=False),
            Column("type", String(50), nullable=False),
            Column("timestamp", BigInteger, nullable=False),
            Column("is_group", Boolean, nullable=False),
            Column("from_me", Boolean, nullable=False),
            Column("read", Integer, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.contacts = Table(
            "contacts",
            self.metadata,
            Column("uuid", String(36), primary_key=True),
            Column("contact_id", String(255), nullable=False, unique=True),
            Column("device_key", String(8), nullable=False, index=True),
            Column("serialized", String(255), nullable=True),
            Column("name", String(255), nullable=True),
            Column("contact_name", String(255), nullable=True),
            Column("short_name", String(255), nullable=True),
            Column("number", String(50), nullable=True),
            Column("is_business", Boolean, nullable=False),
            Column("is_group", Boolean, nullable=False),
            Column("is_user", Boolean, nullable=False),
            Column("business_profile_json", Text, nullable=True),
            Column("description", Text, nullable=True),
            Column("email", String(255), nullable=True),
            Column("website", Text, nullable=True),
            Column("address", Text, nullable=True),
            Column("latitude", Float, nullable=True),
            Column("longitude", Float, nullable=True),
            Column("categories_json", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.api_keys = Table(
            "api_keys",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("user_id", String(255), nullable=False, index=True),
            Column("token", String(255), nullable=False, unique=True),
            Column("status", Boolean, nullable=False),
            Column("description", String(200), nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def upsert_device(self, record: DeviceRecord) -> None:
        payload = {
            "key": record.key,
            "session_id": record.session_id,
            "user_id": record.user_id,
            "number": record.number,
            "status": record.status.value,
            "ready": record.ready,
            "created_at_utc": record.created_at_utc,
            "updated_at_utc": record.updated_at_utc,
        }
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.devices.c.uuid).where(self.devices.c.uuid == record.uuid)
                ).first()
                if existing:
                    conn.execute(
                        self.devices.update()
                        .where(self.devices.c.uuid == record.uuid)
                        .values(**payload)
                    )
                else:
                    conn.execute(self.devices.insert().values(uuid=record.uuid, **payload))

    def delete_device(self, session_id: str) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(self.devices.delete().where(self.devices.c.session_id == session_id))

    def list_devices(self) -> list[DeviceRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.devices)).all()
        return [
            DeviceRecord(
                uuid=row.uuid,
                key=row.key,
                session_id=row.session_id,
                user_id=row.user_id,
                number=row.number,
                status=DeviceStatus(row.status),
                ready=bool(row.ready),
                created_at_utc=row.created_at_utc or datetime.utcnow(),
                updated_at_utc=row.updated_at_utc or datetime.utcnow(),
            )
            for row in rows
        ]

    def insert_message(self, record: MessageRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(self.messages.insert().values(**record.model_dump()))

    def list_messages(self) -> list[MessageRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.messages)).all()
        return [MessageRecord.model_validate(dict(row._mapping)) for row in rows]

    def upsert_contact(self, record: ContactRecord) -> None:
        payload = record.model_dump(exclude={"uuid", "contact_id", "business_profile", "categories"})
        payload["business_profile_json"] = _json_or_none(record.business_profile)
        payload["categories_json"] = _json_or_none(record.categories)
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.contacts.c.uuid).where(
                        self.contacts.c.contact_id == record.contact_id
                    )
                ).first()
                if existing:
                    conn.execute(
                        self.contacts.update()
                        .where(self.contacts.c.contact_id == record.contact_id)
                        .values(**payload)
                    )
                else:
                    conn.execute(
                        self.contacts.insert().values(
                            uuid=record.uuid,
                            contact_id=record.contact_id,
                            **payload,
                        )
                    )

    def list_contacts(self) -> list[ContactRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.contacts)).all()
        output: list[ContactRecord] = []
        for row in rows:
            data = dict(row._mapping)
            data["business_profile"] = _load_json(data.pop("business_profile_json"))
            data["categories"] = _load_json(data.pop("categories_json"))
            output.append(ContactRecord.model_validate(data))
        return output

    def upsert_api_key(self, record: ApiKeyRecord) -> None:
        payload = record.model_dump(exclude={"id"})
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.api_keys.c.id).where(self.api_keys.c.id == record.id)
                ).first()
                if existing:
                    conn.execute(
                        self.api_keys.update()
                        .where(self.api_keys.c.id == record.id)
                        .values(**payload)
                    )
                else:
                    conn.execute(self.api_keys.insert().values(id=record.id, **payload))

    def delete_api_key(self, key_id: str) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(self.api_keys.delete().where(self.api_keys.c.id == key_id))

    def list_api_keys(self) -> list[ApiKeyRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.api_keys)).all()
        return [ApiKeyRecord.model_validate(dict(row._mapping)) for row in rows]
