"""Envelope encoding: message <-> (body, headers) text columns"""
import json
import uuid
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import ValidationError

from app.messenger.messages import MESSAGE_TYPES, Message
from app.utils.clock import utcnow

PRODUCER = "identity-service"


class SerializationError(ValueError):
    """Body/headers could not be turned back into a known message."""


def encode(message: Message, extra_headers: Optional[Dict[str, Any]] = None) -> Tuple[str, Dict[str, Any]]:
    """Return the JSON body and the headers mapping for a message."""
    headers: Dict[str, Any] = {
        "type": type(message).__name__,
        "producer": PRODUCER,
        "message_id": str(uuid.uuid4()),
        "sent_at": utcnow().isoformat(),
    }
    if extra_headers:
        headers.update(extra_headers)
    return message.model_dump_json(), headers


def decode_headers(raw: str) -> Dict[str, Any]:
    try:
        headers = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        raise SerializationError(f"Malformed headers: {exc}") from exc
    if not isinstance(headers, dict):
        raise SerializationError("Headers must be a JSON object")
    return headers


def decode(body: str, headers: Dict[str, Any], types: Dict[str, Type[Message]] = MESSAGE_TYPES) -> Message:
    type_name = headers.get("type")
    message_cls = types.get(type_name)
    if message_cls is None:
        raise SerializationError(f"Unknown message type: {type_name!r}")
    try:
        return message_cls.model_validate_json(body)
    except ValidationError as exc:
        raise SerializationError(f"Invalid {type_name} body: {exc}") from exc
