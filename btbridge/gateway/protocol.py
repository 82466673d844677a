"""JSON envelope helpers for the gateway wire protocol."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from btbridge.core.errors import MalformedEnvelopeError

RESPONSE_SUFFIX = "_response"


@dataclass(frozen=True)
class Request:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    message_id: Any = None


def parse_request(text: str | bytes) -> Request:
    try:
        envelope = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEnvelopeError(f"Invalid JSON: {exc}") from exc

    if not isinstance(envelope, dict):
        raise MalformedEnvelopeError("Message must be a JSON object")

    message_type = envelope.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise MalformedEnvelopeError("Message is missing a string 'type'")

    payload = envelope.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedEnvelopeError("Message 'payload' must be an object")

    return Request(type=message_type, payload=payload, message_id=envelope.get("messageId"))


def response(request: Request, data: dict[str, Any]) -> dict[str, Any]:
    envelope: dict[str, Any] = {"type": f"{request.type}{RESPONSE_SUFFIX}", "data": data}
    if request.message_id is not None:
        envelope["messageId"] = request.message_id
    return envelope


def error_envelope(message: str, message_id: Any = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {"type": "error", "error": message}
    if message_id is not None:
        envelope["messageId"] = message_id
    return envelope


def decode_data(value: Any) -> bytes:
    """Decode a ``send_data`` payload into raw bytes.

    Accepts a text string (UTF-8), a list of byte values, or a Node.js
    ``Buffer`` serialized as ``{"type": "Buffer", "data": [...]}``.
    """
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, dict) and value.get("type") == "Buffer":
        value = value.get("data")
    if isinstance(value, list):
        if not all(isinstance(item, int) and not isinstance(item, bool) and 0 <= item <= 255 for item in value):
            raise ValueError("Data list must contain integers between 0 and 255")
        return bytes(value)
    raise ValueError("Data must be a string or a list of byte values")


def encode_data(payload: bytes | str) -> str | list[int]:
    if isinstance(payload, str):
        return payload
    return list(payload)
