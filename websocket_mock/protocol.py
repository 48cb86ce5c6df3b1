"""
WebSocket frame definitions for the mock server

This module defines the frame structure shared by the server, the reply rule
engine and the mock client, and the single place where payloads are turned
into their canonical wire form.

Rules implemented here:
- Four opcodes: text, binary, ping, pong (close is left to the transport)
- Structured payloads (mappings, sequences and other JSON values) are
  serialized deterministically with sorted keys and compact separators
- Raw str/bytes payloads pass through unchanged
- Inbound text is decoded once: JSON objects and arrays become structured
  payloads, anything else stays a raw string
- Shorthand values (a bare payload instead of an opcode pair) mean text
- Ping and pong payloads are limited to 125 bytes on the wire
"""

from enum import Enum
from typing import Any, Dict, Union
from dataclasses import dataclass
import json

from .constants import MAX_CONTROL_PAYLOAD
from .exceptions import InvalidPayloadError


class Opcode(str, Enum):
    """WebSocket data and control opcodes handled by the mock server

    Members compare equal to their names, so predicates may test
    `opcode == "text"` as well as `opcode is Opcode.TEXT`.
    """

    TEXT = "text"
    BINARY = "binary"
    PING = "ping"
    PONG = "pong"

    @classmethod
    def parse(cls, value: Union["Opcode", str]) -> "Opcode":
        """Accept an Opcode or its string name"""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidPayloadError(f"Unknown opcode: {value!r}")

    @classmethod
    def is_opcode(cls, value: Any) -> bool:
        if isinstance(value, cls):
            return True
        return isinstance(value, str) and value in cls._value2member_map_


CONTROL_OPCODES = (Opcode.PING, Opcode.PONG)


def canonicalize(payload: Any) -> Union[str, bytes]:
    """Return the deterministic serialized form used for matching and sending"""
    if isinstance(payload, (str, bytes)):
        return payload
    if isinstance(payload, bytearray):
        return bytes(payload)
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"),
                          ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidPayloadError(f"Payload cannot be serialized: {e}")


def decode_text(text: str) -> Any:
    """Decode a text payload into a structured value when it holds a JSON object or array"""
    stripped = text.lstrip()
    if not stripped or stripped[0] not in "[{":
        return text
    try:
        value = json.loads(text)
    except ValueError:
        return text
    if isinstance(value, (dict, list)):
        return value
    return text


@dataclass(frozen=True)
class Frame:
    """A single WebSocket frame: opcode plus raw or structured payload"""
    opcode: Opcode
    payload: Any

    def __post_init__(self):
        """Normalize the opcode so string names are accepted"""
        object.__setattr__(self, "opcode", Opcode.parse(self.opcode))

    @classmethod
    def text(cls, payload: Any) -> "Frame":
        return cls(Opcode.TEXT, payload)

    @classmethod
    def binary(cls, payload: Union[bytes, bytearray]) -> "Frame":
        return cls(Opcode.BINARY, bytes(payload))

    @classmethod
    def from_wire(cls, data: Union[str, bytes]) -> "Frame":
        """Build a frame from a message as delivered by the transport"""
        if isinstance(data, str):
            return cls(Opcode.TEXT, decode_text(data))
        return cls(Opcode.BINARY, bytes(data))

    @property
    def canonical_payload(self) -> Union[str, bytes]:
        return canonicalize(self.payload)

    def match_key(self):
        """Key used by exact reply rules"""
        return (self.opcode, self.canonical_payload)

    def to_wire(self) -> Union[str, bytes]:
        """Serialize the payload for transmission

        Text frames go out as str, every other opcode as bytes.
        """
        data = self.canonical_payload
        if self.opcode is Opcode.TEXT:
            if isinstance(data, bytes):
                try:
                    return data.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise InvalidPayloadError(f"Text frame payload is not valid UTF-8: {e}")
            return data
        if isinstance(data, str):
            return data.encode("utf-8")
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "opcode": self.opcode.value,
            "payload": self.payload
        }


def coerce_frame(value: Any) -> Frame:
    """Turn a frame, an (opcode, payload) pair or a bare payload into a Frame

    A two-element tuple whose first element names an opcode is read as an
    explicit pair. Any other value is a text payload.
    """
    if isinstance(value, Frame):
        return value
    if isinstance(value, tuple) and len(value) == 2 and Opcode.is_opcode(value[0]):
        return Frame(Opcode.parse(value[0]), value[1])
    if isinstance(value, bytearray):
        value = bytes(value)
    return Frame(Opcode.TEXT, value)


def prepare_outbound(value: Any) -> Frame:
    """Coerce a value to a frame and make sure it can be transmitted"""
    frame = coerce_frame(value)
    data = frame.to_wire()
    if frame.opcode in CONTROL_OPCODES and len(data) > MAX_CONTROL_PAYLOAD:
        raise InvalidPayloadError(
            f"{frame.opcode.value} payload is {len(data)} bytes, "
            f"control frames carry at most {MAX_CONTROL_PAYLOAD}"
        )
    return frame


def normalize_match_frame(value: Any) -> Frame:
    """Coerce a matcher value and decode string text payloads like inbound ones"""
    frame = coerce_frame(value)
    if frame.opcode is Opcode.TEXT and isinstance(frame.payload, str):
        return Frame(Opcode.TEXT, decode_text(frame.payload))
    return frame
