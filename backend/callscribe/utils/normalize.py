# backend/callscribe/utils/normalize.py
"""
Shape adapters for HighLevel payloads.

HighLevel delivers the same data under different keys depending on the
webhook/workflow configuration and API version. Everything that reads a
raw CRM payload goes through here.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


CALL_MESSAGE_TYPE = "TYPE_CALL"


@dataclass
class CallFinishedEvent:
    contact_id: Optional[str]
    message_id: Optional[str]
    location_id: Optional[str]
    event_type: Optional[str] = None
    direction: Optional[str] = None


def _clean(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, (int, float)):
        v = str(v)
    if not isinstance(v, str):
        return None
    v = v.strip()
    return v or None


def _nested_id(payload: Dict[str, Any], key: str) -> Optional[str]:
    inner = payload.get(key)
    if isinstance(inner, dict):
        return _clean(inner.get("id"))
    return None


def _first(payload: Dict[str, Any], *candidates: str) -> Optional[str]:
    for c in candidates:
        v = _clean(payload.get(c))
        if v:
            return v
    return None


def extract_call_event(payload: Dict[str, Any]) -> CallFinishedEvent:
    """
    Pull contact/message/location ids out of a call-finished webhook.

    Accepted spellings, first hit wins:
        contactId | contact_id | contact.id
        messageId | message_id | message.id
        locationId | location_id | location.id
    """
    payload = payload if isinstance(payload, dict) else {}
    return CallFinishedEvent(
        contact_id=_first(payload, "contactId", "contact_id") or _nested_id(payload, "contact"),
        message_id=_first(payload, "messageId", "message_id") or _nested_id(payload, "message"),
        location_id=_first(payload, "locationId", "location_id") or _nested_id(payload, "location"),
        event_type=_first(payload, "type", "event"),
        direction=_first(payload, "direction"),
    )


def unwrap_message(data: Any) -> Dict[str, Any]:
    """Message endpoints answer either bare or under a `message` key."""
    if not isinstance(data, dict):
        return {}
    inner = data.get("message")
    if isinstance(inner, dict):
        return inner
    return data


def unwrap_messages(data: Any) -> List[Dict[str, Any]]:
    """Message lists come as {messages: [...]} or {messages: {messages: [...]}}."""
    if not isinstance(data, dict):
        return []
    messages = data.get("messages")
    if isinstance(messages, dict):
        messages = messages.get("messages")
    if not isinstance(messages, list):
        return []
    return [m for m in messages if isinstance(m, dict)]


def message_type(message: Dict[str, Any]) -> Optional[str]:
    return message.get("messageType") or message.get("type")


def is_call_message(message: Dict[str, Any]) -> bool:
    return message_type(message) == CALL_MESSAGE_TYPE


def contact_display_name(contact: Dict[str, Any]) -> str:
    first = (contact.get("firstName") or "").strip()
    last = (contact.get("lastName") or "").strip()
    if first or last:
        return f"{first} {last}".strip()
    return contact.get("email") or "Unknown"
