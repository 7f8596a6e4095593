"""Shape-sniffing for inbound provider payloads.

The provider sends messages and contacts in several nesting conventions. Each
canonical field is resolved by an ordered list of extraction strategies; the first
strategy that yields a value wins. Nothing in this module touches storage or HTTP.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, Optional

from backend.app.models import NormalizedContact, NormalizedMessage
from backend.app.services.keys import new_uuid

logger = logging.getLogger("wa_gateway.normalizer")

USER_CONTACT_SUFFIX = "@c.us"
SERIALIZED_NUMBER_PATTERN = re.compile(r"(\d+)@")

Strategy = Callable[[Any], Any]


def _get(value: Any, *path: str) -> Any:
    current = value
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _present(value: Any) -> bool:
    # falsy scalars ("" / 0 / False) fall through to the next strategy
    if isinstance(value, (dict, list)):
        return bool(value)
    return value is not None and value != "" and value is not False and value != 0


def first_match(source: Any, strategies: Iterable[Strategy]) -> Any:
    for strategy in strategies:
        value = strategy(source)
        if _present(value):
            return value
    return None


def _scalar_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _strip_domain(value: str) -> str:
    return value.split("@", 1)[0] if "@" in value else value


def looks_like_message(value: Any) -> bool:
    if not isinstance(value, dict) or not value:
        return False
    if "_data" in value or "body" in value:
        return True
    return all(key in value for key in ("id", "from", "to"))


# Message discovery inside a webhook body

MESSAGE_LOCATORS: tuple[Strategy, ...] = (
    lambda body: _get(body, "outgoingData", "message"),
    lambda body: _get(body, "message"),
    lambda body: _get(body, "data", "message"),
)


def locate_message_payload(body: Any) -> Optional[dict[str, Any]]:
    """Find the message-shaped object inside a webhook body, if any."""
    if not isinstance(body, dict):
        return None
    for locate in MESSAGE_LOCATORS:
        candidate = locate(body)
        if isinstance(candidate, dict) and candidate:
            return candidate
    data = body.get("data")
    if isinstance(data, dict) and data and "outgoingData" not in body:
        if body.get("dataType") == "message" or looks_like_message(data):
            return data
    if looks_like_message(body):
        return body
    return None


# Message normalization

MESSAGE_SOURCES: tuple[Strategy, ...] = (
    lambda payload: _get(payload, "_data"),
    lambda payload: _get(payload, "message", "_data"),
    lambda payload: _get(payload, "message"),
)


def message_source(payload: Any) -> dict[str, Any]:
    source = first_match(payload, MESSAGE_SOURCES)
    if isinstance(source, dict):
        return source
    return payload if isinstance(payload, dict) else {}


def _party(field: str) -> tuple[Strategy, ...]:
    return (
        lambda msg: _scalar_text(_get(msg, field, "user")),
        lambda msg: _get(msg, field, "_serialized"),
        lambda msg: _scalar_text(_get(msg, field)),
    )


MESSAGE_ID_STRATEGIES: tuple[Strategy, ...] = (
    lambda msg: _get(msg, "id", "_serialized"),
    lambda msg: _scalar_text(_get(msg, "id")),
)
TIMESTAMP_STRATEGIES: tuple[Strategy, ...] = (
    lambda msg: _get(msg, "t"),
    lambda msg: _get(msg, "timestamp"),
)
TEXT_STRATEGIES: tuple[Strategy, ...] = (
    lambda msg: _scalar_text(_get(msg, "body")),
    lambda msg: _scalar_text(_get(msg, "text")),
)
FROM_STRATEGIES = _party("from")
TO_STRATEGIES = _party("to")


def _party_number(msg: dict[str, Any], strategies: tuple[Strategy, ...]) -> Optional[str]:
    value = first_match(msg, strategies)
    if not isinstance(value, str):
        return None
    return _strip_domain(value)


def normalize_message(payload: Any) -> NormalizedMessage:
    """Map any supported message shape onto the canonical message fields.

    Malformed payloads are not rejected; missing fields take empty/zero defaults.
    """
    msg = message_source(payload)
    message_id = first_match(msg, MESSAGE_ID_STRATEGIES)
    return NormalizedMessage(
        message_id=str(message_id) if message_id is not None else "",
        from_number=_party_number(msg, FROM_STRATEGIES),
        to_number=_party_number(msg, TO_STRATEGIES),
        text=first_match(msg, TEXT_STRATEGIES) or "",
        type=_scalar_text(msg.get("type")) or "",
        timestamp=_as_int(first_match(msg, TIMESTAMP_STRATEGIES), 0),
        is_group=bool(msg.get("isGroup") or False),
        from_me=bool(msg.get("fromMe") or False),
        read=_as_int(msg.get("ack"), 0),
    )


# Contact normalization

CONTACT_ID_STRATEGIES: tuple[Strategy, ...] = (
    lambda contact: _get(contact, "id", "_serialized"),
    lambda contact: _scalar_text(_get(contact, "id")),
    lambda contact: _scalar_text(_get(contact, "contactId")),
    lambda contact: _scalar_text(_get(contact, "number")),
)
CONTACT_NUMBER_STRATEGIES: tuple[Strategy, ...] = (
    lambda contact: _scalar_text(_get(contact, "number")),
    lambda contact: _scalar_text(_get(contact, "phoneNumber")),
    lambda contact: _scalar_text(_get(contact, "phone")),
    lambda contact: _scalar_text(_get(contact, "id", "user")),
)


def contact_identity(contact: Any) -> str:
    """Resolved identity string used for filtering; empty when nothing matches."""
    value = first_match(contact, CONTACT_ID_STRATEGIES)
    return str(value) if value is not None else ""


def resolve_contact_id(contact: Any) -> str:
    return contact_identity(contact) or new_uuid()


def is_user_contact(contact_id: str) -> bool:
    return USER_CONTACT_SUFFIX in contact_id


def extract_contact_number(contact: Any) -> Optional[str]:
    number = first_match(contact, CONTACT_NUMBER_STRATEGIES)
    if number:
        return str(number)
    serialized = contact_identity(contact)
    match = SERIALIZED_NUMBER_PATTERN.search(serialized)
    if match:
        return match.group(1)
    return None


def flatten_website(value: Any) -> Optional[str]:
    if isinstance(value, list):
        sites: list[str] = []
        for site in value:
            url = site if isinstance(site, str) else _get(site, "url")
            if url:
                sites.append(str(url))
        return ", ".join(sites) or None
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


def _first_text(*values: Any) -> Optional[str]:
    for value in values:
        text = _scalar_text(value)
        if text:
            return text
    return None


def _first_float(*values: Any) -> Optional[float]:
    # 0.0 is a valid coordinate
    for value in values:
        number = _as_float(value)
        if number is not None:
            return number
    return None


def normalize_contact(contact: dict[str, Any]) -> NormalizedContact:
    """Map a provider contact onto the canonical fields.

    Text fields that arrive with a non-scalar shape fall back to the next candidate
    and finally to None; they never fail validation.
    """
    profile = contact.get("businessProfile")
    if not isinstance(profile, dict):
        profile = {}
    serialized = first_match(contact, CONTACT_ID_STRATEGIES[:2])
    website = profile.get("website") if _present(profile.get("website")) else contact.get("website")
    categories = profile.get("categories") or contact.get("categories")
    return NormalizedContact(
        contact_id=resolve_contact_id(contact),
        serialized=str(serialized) if serialized is not None else None,
        name=_first_text(contact.get("name"), contact.get("pushname")),
        contact_name=_first_text(
            contact.get("name"), contact.get("contactName"), contact.get("pushname")
        ),
        short_name=_first_text(contact.get("shortName"), contact.get("shortname")),
        number=extract_contact_number(contact),
        is_business=bool(contact.get("isBusiness") or False),
        is_group=bool(contact.get("isGroup") or False),
        is_user=bool(contact.get("isUser", True)),
        business_profile=profile or None,
        description=_first_text(profile.get("description"), contact.get("description")),
        email=_first_text(profile.get("email"), contact.get("email")),
        website=flatten_website(website),
        address=_first_text(profile.get("address"), contact.get("address")),
        latitude=_first_float(profile.get("latitude"), contact.get("lat")),
        longitude=_first_float(profile.get("longitude"), contact.get("lng")),
        categories=categories or None,
    )


def select_user_contacts(
    contacts: Iterable[Any],
) -> tuple[list[NormalizedContact], list[str]]:
    """Split raw contacts into normalized user contacts and skipped identities.

    A contact that cannot be normalized is skipped on its own; the rest of the
    collection is still returned.
    """
    accepted: list[NormalizedContact] = []
    skipped: list[str] = []
    for contact in contacts:
        if not isinstance(contact, dict):
            skipped.append(repr(contact))
            continue
        identity = contact_identity(contact)
        if not is_user_contact(identity):
            skipped.append(identity)
            continue
        try:
            accepted.append(normalize_contact(contact))
        except ValueError:
            # pydantic's ValidationError is a ValueError
            logger.warning("contact_normalize_failed contact_id=%s", identity, exc_info=True)
            skipped.append(identity)
    return accepted, skipped


# Contact collections in relay responses

CONTACT_COLLECTION_KEYS = ("contacts", "data")


def extract_contact_collection(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict) or not data:
        return []
    for key in CONTACT_COLLECTION_KEYS:
        if isinstance(data.get(key), list):
            return data[key]
    if data.get("id") or data.get("name") or data.get("number"):
        return [data]
    return []


def truncate_contact_collection(data: Any, limit: int) -> Any:
    if isinstance(data, list):
        return data[:limit]
    if isinstance(data, dict):
        for key in CONTACT_COLLECTION_KEYS:
            if isinstance(data.get(key), list) and len(data[key]) > limit:
                return {**data, key: data[key][:limit]}
    return data
