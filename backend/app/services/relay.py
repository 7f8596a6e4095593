"""Session command relay between operators and the messaging provider.

Every command forwards to the provider with the configured credential and relays
the provider's status and body. Local caching (device creation after a successful
start, contact sync after get-contacts) is attached to the result as deferred side
effects, so the response is fully decided before any of them run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from backend.app.models import DeviceRecord, DeviceStatus, SendMessageRequest
from backend.app.observability import MetricsRegistry
from backend.app.services.normalizer import (
    extract_contact_collection,
    select_user_contacts,
    truncate_contact_collection,
)
from backend.app.services.provider import ProviderClient, ProviderResponse
from backend.app.services.qr import QR_IMAGE_MEDIA_TYPE, extract_qr_payload, render_qr_png
from backend.app.services.side_effects import run_side_effect
from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_gateway.relay")

JSON_MEDIA_TYPE = "application/json"


@dataclass(frozen=True)
class SideEffect:
    name: str
    action: Callable[[], Any]
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class RelayResult:
    status_code: int
    body: Any = None
    content: Optional[bytes] = None
    media_type: str = JSON_MEDIA_TYPE
    side_effects: list[SideEffect] = field(default_factory=list)

    @classmethod
    def from_provider(cls, response: ProviderResponse, body: Any = None) -> "RelayResult":
        return cls(
            status_code=response.status_code,
            body=response.data if body is None else body,
        )

    def after(self, name: str, action: Callable[[], Any], **context: Any) -> "RelayResult":
        self.side_effects.append(SideEffect(name=name, action=action, context=context))
        return self


@dataclass(frozen=True)
class ContactSyncReport:
    session_id: str
    device_key: Optional[str]
    received: int
    saved: int
    skipped: int


class RelayGateway:
    def __init__(
        self,
        *,
        provider: ProviderClient,
        store: InMemoryStore,
        metrics: Optional[MetricsRegistry] = None,
        contacts_response_limit: int = 10,
    ) -> None:
        self.provider = provider
        self.store = store
        self.metrics = metrics
        self.contacts_response_limit = contacts_response_limit

    # Session commands

    def start(self, session_id: str, *, user_id: str) -> RelayResult:
        response = self.provider.get("session", "start", session_id)
        result = RelayResult.from_provider(response)
        if response.reported_success:
            result.after(
                "device_create",
                lambda: self.create_device_for_session(session_id, user_id),
                session_id=session_id,
                user_id=user_id,
            )
        else:
            logger.info(
                "session_start_not_successful session_id=%s status=%s",
                session_id,
                response.status_code,
            )
        return result

    def status(self, session_id: str) -> RelayResult:
        return RelayResult.from_provider(self.provider.get("session", "status", session_id))

    def qr(self, session_id: str) -> RelayResult:
        return RelayResult.from_provider(self.provider.get("session", "qr", session_id))

    def qr_image(self, session_id: str) -> RelayResult:
        response = self.provider.get("session", "qr", session_id)
        payload = extract_qr_payload(response.data)
        if payload is None:
            return RelayResult.from_provider(response)
        return RelayResult(
            status_code=200,
            content=render_qr_png(payload),
            media_type=QR_IMAGE_MEDIA_TYPE,
        )

    def restart(self, session_id: str) -> RelayResult:
        return RelayResult.from_provider(self.provider.get("session", "restart", session_id))

    def terminate(self, session_id: str) -> RelayResult:
        return RelayResult.from_provider(self.provider.get("session", "terminate", session_id))

    def terminate_inactive(self) -> RelayResult:
        return RelayResult.from_provider(self.provider.get("session", "terminateInactive"))

    def terminate_all(self) -> RelayResult:
        return RelayResult.from_provider(self.provider.get("session", "terminateAll"))

    # Client commands

    def send_message(self, session_id: str, payload: SendMessageRequest) -> RelayResult:
        response = self.provider.post(
            "client",
            "sendMessage",
            session_id,
            payload={
                "chatId": payload.chat_id,
                "contentType": payload.content_type,
                "content": payload.content,
            },
        )
        return RelayResult.from_provider(response)

    def get_contacts(self, session_id: str) -> RelayResult:
        response = self.provider.get("client", "getContacts", session_id)
        body = truncate_contact_collection(response.data, self.contacts_response_limit)
        result = RelayResult.from_provider(response, body=body)
        if response.ok:
            contacts = extract_contact_collection(response.data)
            if contacts:
                result.after(
                    "contact_sync",
                    lambda: self.sync_contacts(session_id, contacts),
                    session_id=session_id,
                )
            else:
                logger.info("contact_sync_nothing_to_sync session_id=%s", session_id)
        return result

    # Side effects

    def run_side_effects(self, side_effects: list[SideEffect]) -> None:
        for effect in side_effects:
            run_side_effect(effect.name, effect.action, metrics=self.metrics, **effect.context)

    def create_device_for_session(self, session_id: str, user_id: str) -> DeviceRecord:
        device, created = self.store.create_device(
            session_id, user_id, number="", status=DeviceStatus.connecting
        )
        if self.metrics:
            self.metrics.incr("device_created" if created else "device_reconnecting")
        logger.info(
            "session_device_ready session_id=%s key=%s created=%s",
            session_id,
            device.key,
            str(created).lower(),
        )
        return device

    def sync_contacts(self, session_id: str, contacts: list[Any]) -> ContactSyncReport:
        device = self.store.get_device_by_session_id(session_id)
        if not device:
            logger.warning("contact_sync_skipped reason=device_not_found session_id=%s", session_id)
            return ContactSyncReport(
                session_id=session_id,
                device_key=None,
                received=len(contacts),
                saved=0,
                skipped=len(contacts),
            )

        accepted, skipped = select_user_contacts(contacts)
        for identity in skipped:
            logger.info(
                "contact_skipped reason=not_user_contact contact_id=%s session_id=%s",
                identity,
                session_id,
            )
        saved = self.store.save_contacts(device.key, accepted)
        if self.metrics:
            self.metrics.incr("contact_upserted", len(saved))
            self.metrics.incr("contact_skipped", len(skipped))
        logger.info(
            "contact_sync_complete session_id=%s device_key=%s received=%s saved=%s skipped=%s",
            session_id,
            device.key,
            len(contacts),
            len(saved),
            len(skipped),
        )
        return ContactSyncReport(
            session_id=session_id,
            device_key=device.key,
            received=len(contacts),
            saved=len(saved),
            skipped=len(skipped),
        )
