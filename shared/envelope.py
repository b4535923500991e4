"""
Message codec for the quote stream protocol.

Server -> client envelopes are tagged by the "t" field:

    {"t": "connect.connected"}
    {"t": "connect.ack", "connectionId": 0}
    {"t": "connect.failed"}
    {"t": "trading.quote", "body": {"securityId": "100", "currentPrice": "42"}}

Client -> server requests are untagged single-field objects, told apart by
which key they carry:

    {"subscribeTo": "trading.product.100"}
    {"unsubscribeFrom": 0}

Decoding a server envelope happens in two phases: peek at the discriminator,
then re-read the whole object as the type it names. Unknown extra fields are
ignored, missing required ones are not.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Type, Union

from shared.errors import MalformedPayload, UnknownMessageType
from shared.message_types import (
    PRODUCT_TOPIC_PREFIX,
    SUBSCRIBE_KEY,
    TYPE_KEY,
    UNSUBSCRIBE_KEY,
    MessageType,
)


@dataclass(frozen=True)
class Connected:
    """Greeting sent as soon as the server side of the transport is ready."""

    type: ClassVar[MessageType] = MessageType.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {TYPE_KEY: self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Connected:
        return cls()


@dataclass(frozen=True)
class ConnectionAck:
    """Subscribe acknowledgment carrying the identity the server assigned."""

    connection_id: int
    type: ClassVar[MessageType] = MessageType.ACK

    def to_dict(self) -> Dict[str, Any]:
        return {TYPE_KEY: self.type.value, "connectionId": self.connection_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ConnectionAck:
        return cls(connection_id=_require_int(data, "connectionId"))


@dataclass(frozen=True)
class Failed:
    """Informational signal that the server observed a transport failure."""

    type: ClassVar[MessageType] = MessageType.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {TYPE_KEY: self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Failed:
        return cls()


@dataclass(frozen=True)
class Quote:
    """One price update for a security. Generated per tick and never retained."""

    security_id: str
    current_price: str
    type: ClassVar[MessageType] = MessageType.QUOTE

    def to_dict(self) -> Dict[str, Any]:
        return {
            TYPE_KEY: self.type.value,
            "body": {
                "securityId": self.security_id,
                "currentPrice": self.current_price,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Quote:
        body = data.get("body")
        if not isinstance(body, dict):
            raise MalformedPayload("'body' must be an object")
        return cls(
            security_id=_require_str(body, "securityId"),
            current_price=_require_str(body, "currentPrice"),
        )


@dataclass(frozen=True)
class SubscribeRequest:
    """Client request to receive quotes for a product."""

    product_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {SUBSCRIBE_KEY: f"{PRODUCT_TOPIC_PREFIX}{self.product_id}"}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SubscribeRequest:
        topic = _require_str(data, SUBSCRIBE_KEY)
        if not topic.startswith(PRODUCT_TOPIC_PREFIX):
            raise MalformedPayload(f"'{SUBSCRIBE_KEY}' must start with '{PRODUCT_TOPIC_PREFIX}'")
        product_id = topic[len(PRODUCT_TOPIC_PREFIX):]
        if not product_id:
            raise MalformedPayload(f"'{SUBSCRIBE_KEY}' names no product")
        return cls(product_id=product_id)


@dataclass(frozen=True)
class UnsubscribeRequest:
    """Client request to drop the subscriber holding connection_id."""

    connection_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {UNSUBSCRIBE_KEY: self.connection_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> UnsubscribeRequest:
        return cls(connection_id=_require_int(data, UNSUBSCRIBE_KEY))


ServerEnvelope = Union[Connected, ConnectionAck, Failed, Quote]
ClientRequest = Union[SubscribeRequest, UnsubscribeRequest]
Envelope = Union[ServerEnvelope, ClientRequest]

_SERVER_ENVELOPES: Dict[MessageType, Type[Any]] = {
    MessageType.CONNECTED: Connected,
    MessageType.ACK: ConnectionAck,
    MessageType.FAILED: Failed,
    MessageType.QUOTE: Quote,
}


# ========================================
#           ENCODE / DECODE
# ========================================

def encode(envelope: Envelope) -> bytes:
    """Serialize any envelope or request to compact UTF-8 JSON."""
    return json.dumps(envelope.to_dict(), separators=(",", ":")).encode("utf-8")


def peek_type(data: Union[bytes, str]) -> MessageType:
    """First decoding phase: read only the discriminator."""
    obj = _load_object(data)
    tag = obj.get(TYPE_KEY)
    if not isinstance(tag, str) or not MessageType.is_valid(tag):
        raise UnknownMessageType(f"Unrecognized discriminator: {tag!r}")
    return MessageType(tag)


def decode(data: Union[bytes, str]) -> ServerEnvelope:
    """Decode a server -> client frame."""
    message_type = peek_type(data)
    return _SERVER_ENVELOPES[message_type].from_dict(_load_object(data))


def decode_request(data: Union[bytes, str]) -> ClientRequest:
    """Decode a client -> server frame by key presence."""
    obj = _load_object(data)
    if SUBSCRIBE_KEY in obj:
        return SubscribeRequest.from_dict(obj)
    if UNSUBSCRIBE_KEY in obj:
        return UnsubscribeRequest.from_dict(obj)
    raise UnknownMessageType(f"Request carries neither '{SUBSCRIBE_KEY}' nor '{UNSUBSCRIBE_KEY}'")


def _load_object(data: Union[bytes, str]) -> Dict[str, Any]:
    """Parse a frame into a JSON object; anything else has no discriminator."""
    try:
        if isinstance(data, (bytes, bytearray, memoryview)):
            data = bytes(data).decode("utf-8")
        obj = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UnknownMessageType(f"Invalid JSON: {e}")
    except ValueError as e:
        # e.g. integer literals past the int string conversion limit
        raise UnknownMessageType(f"Unparseable JSON value: {e}")
    except RecursionError:
        raise UnknownMessageType("JSON nested too deeply")
    if not isinstance(obj, dict):
        raise UnknownMessageType("Top-level JSON value must be an object")
    return obj


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MalformedPayload(f"'{key}' must be a string")
    return value


def _require_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    # bool is an int subclass but never a valid identity
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedPayload(f"'{key}' must be an integer")
    return value
