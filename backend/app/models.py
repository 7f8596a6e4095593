from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.utcnow()


class DeviceStatus(str, Enum):
    unknown = "unknown"
    connecting = "connecting"
    qr = "qr"
    authenticated = "authenticated"
    ready = "ready"
    connected = "connected"
    disconnected = "disconnected"


class WebhookDataType(str, Enum):
    qr = "qr"
    authenticated = "authenticated"
    ready = "ready"
    connecting = "connecting"
    connected = "connected"
    disconnected = "disconnected"
    device_linked = "device_linked"
    device_unlinked = "device_unlinked"
    message = "message"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceRecord(BaseModel):
    uuid: str
    key: str
    session_id: str
    user_id: str
    number: str = ""
    status: DeviceStatus = DeviceStatus.unknown
    ready: bool = False
    created_at_utc: datetime
    updated_at_utc: datetime


class NormalizedMessage(BaseModel):
    message_id: str = ""
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    text: str = ""
    type: str = ""
    timestamp: int = 0
    is_group: bool = False
    from_me: bool = False
    read: int = 0


class MessageRecord(NormalizedMessage):
    uuid: str
    device_key: str
    created_at_utc: datetime


class NormalizedContact(BaseModel):
    contact_id: str
    serialized: Optional[str] = None
    name: Optional[str] = None
    contact_name: Optional[str] = None
    short_name: Optional[str] = None
    number: Optional[str] = None
    is_business: bool = False
    is_group: bool = False
    is_user: bool = True
    business_profile: Optional[dict[str, Any]] = None
    description: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    categories: Optional[Any] = None


class ContactRecord(NormalizedContact):
    uuid: str
    device_key: str
    created_at_utc: datetime
    updated_at_utc: datetime


class ApiKeyRecord(BaseModel):
    id: str
    user_id: str
    token: str
    status: bool = True
    description: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class SendMessageRequest(CamelModel):
    chat_id: str = Field(min_length=1)
    content_type: str = Field(min_length=1)
    content: str


class GatewayErrorResponse(BaseModel):
    success: bool = False
    message: str


class WebhookAckResponse(CamelModel):
    success: bool = True
    message: str = "Webhook received successfully"
    received_type: Optional[str] = None
    session_id: Optional[str] = None


class ApiKeyCreateRequest(BaseModel):
    description: Optional[str] = Field(default=None, max_length=200)


class ApiKeyStatusUpdateRequest(BaseModel):
    status: bool


class ApiKeyItem(CamelModel):
    id: str
    user_id: str
    token: str = "***"
    token_preview: Optional[str] = None
    status: bool
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ApiKeyResponse(BaseModel):
    success: bool = True
    message: str
    data: ApiKeyItem


class ApiKeyListResponse(BaseModel):
    success: bool = True
    message: str
    data: list[ApiKeyItem]


class DeviceItem(CamelModel):
    uuid: str
    key: str
    session_id: str
    user_id: str
    number: str
    status: DeviceStatus
    ready: bool
    created_at: datetime
    updated_at: datetime


class MessageItem(CamelModel):
    uuid: str
    device_key: str
    message_id: str
    from_number: Optional[str] = Field(default=None, alias="from")
    to_number: Optional[str] = Field(default=None, alias="to")
    text: str
    type: str
    timestamp: int
    is_group: bool
    from_me: bool
    read: int


class ContactItem(CamelModel):
    uuid: str
    device_key: str
    contact_id: str
    name: Optional[str] = None
    contact_name: Optional[str] = None
    short_name: Optional[str] = None
    number: Optional[str] = None
    is_business: bool
    is_group: bool
    is_user: bool
    description: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    categories: Optional[Any] = None
    updated_at: datetime


class DeviceResponse(BaseModel):
    success: bool = True
    message: str
    data: DeviceItem


class DeviceListResponse(BaseModel):
    success: bool = True
    message: str
    data: list[DeviceItem]


class MessageListResponse(BaseModel):
    success: bool = True
    message: str
    data: list[MessageItem]


class ContactListResponse(BaseModel):
    success: bool = True
    message: str
    data: list[ContactItem]
