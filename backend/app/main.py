from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.app.auth import (
    ApiKeyAuthorizationError,
    ApiKeyLookupError,
    OperatorContext,
    OperatorKeyRegistry,
    StoreOperatorKeyRegistry,
    get_operator_context,
    require_api_key,
)
from backend.app.models import (
    ApiKeyCreateRequest,
    ApiKeyItem,
    ApiKeyListResponse,
    ApiKeyRecord,
    ApiKeyResponse,
    ApiKeyStatusUpdateRequest,
    ContactItem,
    ContactListResponse,
    ContactRecord,
    DeviceItem,
    DeviceListResponse,
    DeviceRecord,
    DeviceResponse,
    GatewayErrorResponse,
    MessageItem,
    MessageListResponse,
    MessageRecord,
    SendMessageRequest,
    WebhookAckResponse,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlitePersistence
from backend.app.services.channel_events import (
    LastWebhookHolder,
    ingest_webhook_event,
    parse_webhook_event,
)
from backend.app.services.keys import token_preview
from backend.app.services.provider import (
    Opener,
    ProviderClient,
    ProviderConfigurationError,
    ProviderConnectivityError,
)
from backend.app.services.relay import RelayGateway, RelayResult
from backend.app.services.webhooks import WebhookAuthorizationError, verify_webhook_secret
from backend.app.settings import Settings, load_settings
from backend.app.store import (
    InMemoryStore,
    StoreConflictError,
    StoreNotFoundError,
    StorePersistenceError,
)

logger = logging.getLogger("wa_gateway")

GATEWAY_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"model": GatewayErrorResponse},
    500: {"model": GatewayErrorResponse},
}
EMPTY_BODY_STATUSES = {204, 304}


def create_app(
    *,
    provider_opener: Optional[Opener] = None,
    key_registry: Optional[OperatorKeyRegistry] = None,
) -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="WhatsApp Session Gateway API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    metrics = MetricsRegistry()
    provider = ProviderClient.from_settings(settings, opener=provider_opener)

    app.state.settings = settings
    app.state.store = store
    app.state.metrics = metrics
    app.state.provider = provider
    app.state.gateway = RelayGateway(
        provider=provider,
        store=store,
        metrics=metrics,
        contacts_response_limit=settings.contacts_response_limit,
    )
    app.state.key_registry = key_registry or StoreOperatorKeyRegistry(store)
    app.state.last_webhook = LastWebhookHolder()

    if not settings.webhook_auth_secret:
        logger.warning("webhook_secret_not_configured verification=disabled")
    if not settings.auth_enabled:
        logger.warning("operator_auth_disabled context=dev-local app_env=%s", settings.app_env)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    register_error_handlers(app)
    app.include_router(build_router())
    return app


def _gateway_error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiKeyAuthorizationError)
    async def api_key_error(request: Request, exc: ApiKeyAuthorizationError) -> JSONResponse:
        logger.warning("api_key_rejected path=%s reason=%s", request.url.path, exc)
        return _gateway_error(status.HTTP_401_UNAUTHORIZED, str(exc))

    @app.exception_handler(WebhookAuthorizationError)
    async def webhook_auth_error(request: Request, exc: WebhookAuthorizationError) -> JSONResponse:
        logger.warning("webhook_rejected path=%s reason=%s", request.url.path, exc)
        return _gateway_error(status.HTTP_401_UNAUTHORIZED, str(exc))

    @app.exception_handler(ApiKeyLookupError)
    async def api_key_lookup_error(request: Request, exc: ApiKeyLookupError) -> JSONResponse:
        return _gateway_error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(ProviderConfigurationError)
    async def configuration_error(
        request: Request, exc: ProviderConfigurationError
    ) -> JSONResponse:
        logger.error("provider_not_configured path=%s reason=%s", request.url.path, exc)
        return _gateway_error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(ProviderConnectivityError)
    async def connectivity_error(request: Request, exc: ProviderConnectivityError) -> JSONResponse:
        request.app.state.metrics.incr("relay_connectivity_error")
        return _gateway_error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(StoreNotFoundError)
    async def not_found_error(request: Request, exc: StoreNotFoundError) -> JSONResponse:
        return _gateway_error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(StoreConflictError)
    async def conflict_error(request: Request, exc: StoreConflictError) -> JSONResponse:
        return _gateway_error(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(StorePersistenceError)
    async def persistence_error(request: Request, exc: StorePersistenceError) -> JSONResponse:
        logger.error("persistence_failed path=%s error=%s", request.url.path, exc)
        return _gateway_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_gateway(request: Request) -> RelayGateway:
    return request.app.state.gateway


def relay_response(
    result: RelayResult, background_tasks: BackgroundTasks, gateway: RelayGateway
) -> Response:
    if result.side_effects:
        background_tasks.add_task(gateway.run_side_effects, result.side_effects)
    if result.content is not None:
        return Response(
            content=result.content,
            media_type=result.media_type,
            status_code=result.status_code,
        )
    if result.status_code in EMPTY_BODY_STATUSES:
        return Response(status_code=result.status_code)
    return JSONResponse(status_code=result.status_code, content=result.body)


def device_item(record: DeviceRecord) -> DeviceItem:
    return DeviceItem(
        uuid=record.uuid,
        key=record.key,
        session_id=record.session_id,
        user_id=record.user_id,
        number=record.number,
        status=record.status,
        ready=record.ready,
        created_at=record.created_at_utc,
        updated_at=record.updated_at_utc,
    )


def message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        uuid=record.uuid,
        device_key=record.device_key,
        message_id=record.message_id,
        from_number=record.from_number,
        to_number=record.to_number,
        text=record.text,
        type=record.type,
        timestamp=record.timestamp,
        is_group=record.is_group,
        from_me=record.from_me,
        read=record.read,
    )


def contact_item(record: ContactRecord) -> ContactItem:
    return ContactItem(
        uuid=record.uuid,
        device_key=record.device_key,
        contact_id=record.contact_id,
        name=record.name,
        contact_name=record.contact_name,
        short_name=record.short_name,
        number=record.number,
        is_business=record.is_business,
        is_group=record.is_group,
        is_user=record.is_user,
        description=record.description,
        email=record.email,
        website=record.website,
        address=record.address,
        latitude=record.latitude,
        longitude=record.longitude,
        categories=record.categories,
        updated_at=record.updated_at_utc,
    )


def api_key_item(record: ApiKeyRecord, *, reveal: bool = False) -> ApiKeyItem:
    return ApiKeyItem(
        id=record.id,
        user_id=record.user_id,
        token=record.token if reveal else "***",
        token_preview=token_preview(record.token),
        status=record.status,
        description=record.description,
        created_at=record.created_at_utc,
        updated_at=record.updated_at_utc,
    )


def owned_device(store: InMemoryStore, session_id: str, operator: OperatorContext) -> DeviceRecord:
    if not store.verify_device_ownership(session_id, operator.user_id):
        raise StoreNotFoundError("Device not found or does not belong to you")
    return store.require_device(session_id)


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # Session relay

    @router.get("/session/start/{session_id}", tags=["Session"], responses=GATEWAY_ERROR_RESPONSES)
    def session_start(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        operator: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        result = gateway.start(session_id, user_id=operator.user_id)
        return relay_response(result, background_tasks, gateway)

    @router.get("/session/status/{session_id}", tags=["Session"], responses=GATEWAY_ERROR_RESPONSES)
    def session_status(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.status(session_id), background_tasks, gateway)

    @router.get("/session/qr/{session_id}", tags=["Session"], responses=GATEWAY_ERROR_RESPONSES)
    def session_qr(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.qr(session_id), background_tasks, gateway)

    @router.get(
        "/session/qr/{session_id}/image",
        tags=["Session"],
        responses={**GATEWAY_ERROR_RESPONSES, 200: {"content": {"image/png": {}}}},
    )
    def session_qr_image(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.qr_image(session_id), background_tasks, gateway)

    @router.get("/session/restart/{session_id}", tags=["Session"], responses=GATEWAY_ERROR_RESPONSES)
    def session_restart(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.restart(session_id), background_tasks, gateway)

    @router.get(
        "/session/terminate/{session_id}", tags=["Session"], responses=GATEWAY_ERROR_RESPONSES
    )
    def session_terminate(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.terminate(session_id), background_tasks, gateway)

    @router.get("/session/terminateInactive", tags=["Session"], responses=GATEWAY_ERROR_RESPONSES)
    def session_terminate_inactive(
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.terminate_inactive(), background_tasks, gateway)

    @router.get("/session/terminateAll", tags=["Session"], responses=GATEWAY_ERROR_RESPONSES)
    def session_terminate_all(
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.terminate_all(), background_tasks, gateway)

    # Client relay

    @router.post(
        "/client/sendMessage/{session_id}", tags=["Client"], responses=GATEWAY_ERROR_RESPONSES
    )
    def client_send_message(
        session_id: str,
        payload: SendMessageRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.send_message(session_id, payload), background_tasks, gateway)

    @router.get(
        "/client/getContacts/{session_id}", tags=["Client"], responses=GATEWAY_ERROR_RESPONSES
    )
    def client_get_contacts(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        _: OperatorContext = Depends(require_api_key),
    ) -> Response:
        gateway = get_gateway(request)
        return relay_response(gateway.get_contacts(session_id), background_tasks, gateway)

    # Provider webhooks

    @router.post("/webhook", response_model=WebhookAckResponse, tags=["Webhook"])
    @router.post("/whatsapp/webhook", response_model=WebhookAckResponse, tags=["Webhook"])
    async def provider_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> WebhookAckResponse:
        settings = get_settings(request)
        verify_webhook_secret(request.headers, settings.webhook_auth_secret)

        raw_body = await request.body()
        body: Any = {}
        if raw_body:
            try:
                body = json.loads(raw_body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("webhook_body_not_json length=%s", len(raw_body))

        event = parse_webhook_event(body)
        metrics = get_metrics(request)
        metrics.incr("webhook_received")
        request.app.state.last_webhook.remember(event)
        logger.info(
            "webhook_received session_id=%s data_type=%s has_message=%s",
            event.session_id,
            event.data_type,
            str(event.message_payload is not None).lower(),
        )
        background_tasks.add_task(ingest_webhook_event, get_store(request), event, metrics=metrics)
        return WebhookAckResponse(received_type=event.data_type, session_id=event.session_id)

    @router.get("/webhook/last", tags=["Webhook"])
    def last_webhook(request: Request) -> dict[str, Any]:
        verify_webhook_secret(request.headers, get_settings(request).webhook_auth_secret)
        snapshot = request.app.state.last_webhook.snapshot()
        if snapshot is None:
            return {"message": "No webhook received yet"}
        return snapshot

    # Operator API keys

    @router.post(
        "/apikeys",
        response_model=ApiKeyResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["API Keys"],
    )
    def create_api_key(
        payload: ApiKeyCreateRequest,
        request: Request,
        operator: OperatorContext = Depends(get_operator_context),
    ) -> ApiKeyResponse:
        store = get_store(request)
        record = store.create_api_key(
            operator.user_id, description=payload.description or "Created via API"
        )
        return ApiKeyResponse(
            message="API key created successfully",
            data=api_key_item(record, reveal=True),
        )

    @router.get("/apikeys", response_model=ApiKeyListResponse, tags=["API Keys"])
    def list_api_keys(
        request: Request,
        operator: OperatorContext = Depends(get_operator_context),
    ) -> ApiKeyListResponse:
        store = get_store(request)
        return ApiKeyListResponse(
            message="API keys retrieved successfully",
            data=[api_key_item(record) for record in store.list_api_keys(operator.user_id)],
        )

    @router.put("/apikeys/{key_id}", response_model=ApiKeyResponse, tags=["API Keys"])
    def update_api_key(
        key_id: str,
        payload: ApiKeyStatusUpdateRequest,
        request: Request,
        operator: OperatorContext = Depends(get_operator_context),
    ) -> ApiKeyResponse:
        store = get_store(request)
        record = store.set_api_key_status(key_id, operator.user_id, payload.status)
        return ApiKeyResponse(
            message="API key status updated successfully",
            data=api_key_item(record),
        )

    @router.delete("/apikeys/{key_id}", tags=["API Keys"])
    def delete_api_key(
        key_id: str,
        request: Request,
        operator: OperatorContext = Depends(get_operator_context),
    ) -> dict[str, Any]:
        store = get_store(request)
        store.delete_api_key(key_id, operator.user_id)
        return {"success": True, "message": "API key deleted successfully"}

    # Cached device state

    @router.get("/devices", response_model=DeviceListResponse, tags=["Devices"])
    def list_devices(
        request: Request,
        operator: OperatorContext = Depends(require_api_key),
    ) -> DeviceListResponse:
        store = get_store(request)
        return DeviceListResponse(
            message="Devices retrieved successfully",
            data=[device_item(record) for record in store.list_devices(operator.user_id)],
        )

    @router.get("/devices/{session_id}", response_model=DeviceResponse, tags=["Devices"])
    def get_device(
        session_id: str,
        request: Request,
        operator: OperatorContext = Depends(require_api_key),
    ) -> DeviceResponse:
        device = owned_device(get_store(request), session_id, operator)
        return DeviceResponse(message="Device retrieved successfully", data=device_item(device))

    @router.get(
        "/devices/{session_id}/messages", response_model=MessageListResponse, tags=["Devices"]
    )
    def list_device_messages(
        session_id: str,
        request: Request,
        operator: OperatorContext = Depends(require_api_key),
    ) -> MessageListResponse:
        store = get_store(request)
        device = owned_device(store, session_id, operator)
        return MessageListResponse(
            message="Messages retrieved successfully",
            data=[message_item(record) for record in store.list_messages_by_device(device.key)],
        )

    @router.get(
        "/devices/{session_id}/contacts", response_model=ContactListResponse, tags=["Devices"]
    )
    def list_device_contacts(
        session_id: str,
        request: Request,
        operator: OperatorContext = Depends(require_api_key),
    ) -> ContactListResponse:
        store = get_store(request)
        device = owned_device(store, session_id, operator)
        return ContactListResponse(
            message="Contacts retrieved successfully",
            data=[contact_item(record) for record in store.list_contacts_by_device(device.key)],
        )

    @router.delete("/devices/{session_id}", response_model=DeviceResponse, tags=["Devices"])
    def delete_device(
        session_id: str,
        request: Request,
        operator: OperatorContext = Depends(require_api_key),
    ) -> DeviceResponse:
        store = get_store(request)
        owned_device(store, session_id, operator)
        device = store.delete_device(session_id)
        return DeviceResponse(message="Device deleted successfully", data=device_item(device))

    return router


app = create_app()
