"""Wyoming protocol framing.

Each message is one line of JSON (the envelope) terminated by ``\\n``. When
the envelope declares ``data_length`` and/or ``payload_length``, exactly that
many raw bytes follow the newline: first the data block (more JSON for the
``data`` mapping), then the binary payload. The next envelope line starts
immediately after the last payload byte.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional

from wyoming.event import Event

from .errors import FramingError

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 1024 * 1024
DEFAULT_REQUIRE_PAYLOAD = frozenset({"audio-chunk"})


def _check_length(name: str, value: Any) -> None:
    if value is None:
        return
    # bool is an int subclass, but "payload_length": true is not a length
    if isinstance(value, bool) or not isinstance(value, int):
        raise FramingError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise FramingError(f"{name} must not be negative, got {value}")


def decode_data_block(raw: bytes) -> Dict[str, Any]:
    """Decode a ``data_length`` block into a mapping.

    Args:
        raw: Bytes that followed the envelope line

    Returns:
        Decoded mapping

    Raises:
        FramingError: If the block is not a UTF-8 JSON object
    """
    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise FramingError(f"Data block is not valid JSON: {e}") from e

    if not isinstance(decoded, dict):
        raise FramingError(f"Data block must be a JSON object, got {type(decoded).__name__}")

    return decoded


@dataclass(frozen=True)
class Envelope:
    """Header line of one Wyoming message."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    data_length: Optional[int] = None
    payload_length: Optional[int] = None
    version: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.type, str) or not self.type:
            raise FramingError(f"Envelope type must be a non-empty string, got {self.type!r}")
        if self.data is None:
            object.__setattr__(self, "data", {})
        elif not isinstance(self.data, dict):
            raise FramingError(f"Envelope data must be an object, got {type(self.data).__name__}")
        if self.version is not None and not isinstance(self.version, str):
            raise FramingError(f"Envelope version must be a string, got {self.version!r}")
        _check_length("data_length", self.data_length)
        _check_length("payload_length", self.payload_length)

    @property
    def has_trailing_bytes(self) -> bool:
        """Whether any bytes follow this envelope's line on the stream."""
        return bool(self.data_length) or bool(self.payload_length)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type, "data": self.data}
        if self.version is not None:
            result["version"] = self.version
        if self.data_length is not None:
            result["data_length"] = self.data_length
        if self.payload_length is not None:
            result["payload_length"] = self.payload_length
        return result

    def to_line(self) -> bytes:
        """Serialize to a single newline-terminated JSON line."""
        line = json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))
        return (line + "\n").encode("utf-8")

    @classmethod
    def from_dict(cls, header: Any) -> "Envelope":
        if not isinstance(header, dict):
            raise FramingError(f"Envelope must be a JSON object, got {type(header).__name__}")
        if "type" not in header:
            raise FramingError("Envelope is missing its type")

        return cls(
            type=header["type"],
            data=header.get("data"),
            data_length=header.get("data_length"),
            payload_length=header.get("payload_length"),
            version=header.get("version"),
        )

    @classmethod
    def from_line(cls, line: bytes) -> "Envelope":
        """Parse one envelope line (without its terminator).

        Raises:
            FramingError: If the line is not a well-formed envelope
        """
        try:
            header = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise FramingError(f"Envelope line is not valid JSON: {e}") from e

        return cls.from_dict(header)

    @classmethod
    def from_event(cls, event: Event) -> "Envelope":
        """Build an envelope from a ``wyoming.event.Event`` (payload excluded)."""
        return cls(type=event.type, data=dict(event.data or {}))


@dataclass(frozen=True)
class Frame:
    """One parsed envelope together with the bytes it declared."""

    envelope: Envelope
    payload: bytes = b""
    data_payload: bytes = b""

    @property
    def type(self) -> str:
        return self.envelope.type

    def merged_data(self) -> Dict[str, Any]:
        """Inline ``data`` updated with the decoded ``data_length`` block."""
        data = dict(self.envelope.data)
        if self.envelope.data_length:
            data.update(decode_data_block(self.data_payload))
        return data

    def to_event(self) -> Event:
        return Event(type=self.type, data=self.merged_data(), payload=self.payload or None)

    def encode(self) -> bytes:
        return encode_frame(self.envelope, payload=self.payload, data_payload=self.data_payload)

    @classmethod
    def from_event(cls, event: Event) -> "Frame":
        payload = event.payload or b""
        envelope = Envelope.from_event(event)
        if payload:
            envelope = replace(envelope, payload_length=len(payload))
        return cls(envelope=envelope, payload=payload)


def encode_frame(envelope: Envelope, payload: bytes = b"", data_payload: bytes = b"") -> bytes:
    """Encode an envelope and its trailing bytes as one buffer.

    Missing length fields are filled in from the supplied bytes. Types that
    must carry a payload always declare ``payload_length``, even when empty.

    Args:
        envelope: Envelope to send
        payload: Binary payload (declared by ``payload_length``)
        data_payload: JSON data block (declared by ``data_length``)

    Returns:
        Envelope line immediately followed by the data block and payload

    Raises:
        FramingError: If a declared length does not match the supplied bytes
    """
    updates = {}
    for name, block in (("data_length", data_payload), ("payload_length", payload)):
        declared = getattr(envelope, name)
        if declared is None:
            if block or (name == "payload_length" and envelope.type in DEFAULT_REQUIRE_PAYLOAD):
                updates[name] = len(block)
        elif declared != len(block):
            raise FramingError(f"{name} is {declared} but {len(block)} bytes were supplied")

    if updates:
        envelope = replace(envelope, **updates)

    return envelope.to_line() + bytes(data_payload) + bytes(payload)


class FrameParser:
    """Incremental parser turning arbitrary stream fragments into frames.

    The parser alternates between scanning for an envelope line and waiting
    for the declared number of trailing bytes. Partial input is buffered
    until the next :meth:`feed`, so the way the transport splits the stream
    never changes the resulting frames.

    After a :class:`FramingError` the parser refuses further input; the two
    ends are out of sync and the connection has to be discarded.
    """

    def __init__(
        self,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        require_payload: FrozenSet[str] = DEFAULT_REQUIRE_PAYLOAD,
    ):
        """Initialize the parser.

        Args:
            max_line_bytes: Longest envelope line accepted before giving up
            require_payload: Envelope types that must declare ``payload_length``
        """
        self.max_line_bytes = max_line_bytes
        self.require_payload = frozenset(require_payload)
        self._buffer = bytearray()
        self._envelope: Optional[Envelope] = None
        self._error: Optional[FramingError] = None

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet returned as part of a frame."""
        return len(self._buffer)

    @property
    def awaiting_payload(self) -> bool:
        return self._envelope is not None

    @property
    def at_boundary(self) -> bool:
        """True when no partial line or payload is buffered."""
        return self._envelope is None and not self._buffer

    def feed(self, data: bytes) -> List[Frame]:
        """Add bytes from the stream and return every frame they complete.

        Raises:
            FramingError: On a malformed envelope, or if an earlier call failed
        """
        if self._error is not None:
            raise FramingError(f"Parser stopped after earlier error: {self._error}")

        self._buffer.extend(data)
        frames = []
        try:
            while True:
                frame = self._next_frame()
                if frame is None:
                    break
                frames.append(frame)
        except FramingError as e:
            self._error = e
            raise

        return frames

    def _next_frame(self) -> Optional[Frame]:
        if self._envelope is None:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                if len(self._buffer) > self.max_line_bytes:
                    raise FramingError(
                        f"No line terminator within {self.max_line_bytes} bytes"
                    )
                return None
            if newline > self.max_line_bytes:
                raise FramingError(f"Envelope line of {newline} bytes exceeds limit")

            line = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]

            envelope = Envelope.from_line(line)
            if envelope.type in self.require_payload and envelope.payload_length is None:
                raise FramingError(f"{envelope.type} envelope is missing payload_length")
            self._envelope = envelope

        envelope = self._envelope
        data_length = envelope.data_length or 0
        needed = data_length + (envelope.payload_length or 0)
        if len(self._buffer) < needed:
            return None

        data_payload = bytes(self._buffer[:data_length])
        payload = bytes(self._buffer[data_length:needed])
        del self._buffer[:needed]
        self._envelope = None

        logger.debug(f"Framed {envelope.type} ({len(data_payload)} data bytes, {len(payload)} payload bytes)")
        return Frame(envelope=envelope, payload=payload, data_payload=data_payload)
