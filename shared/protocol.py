"""JSON envelope protocol shared by the gateway and its clients."""

import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageType(str, Enum):
    """Envelope type tags."""

    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"


# Required payload keys (and their types) per message type
PAYLOAD_SCHEMAS: dict[MessageType, dict[str, type]] = {
    MessageType.REQUEST: {"op": str},
    MessageType.RESPONSE: {},
    MessageType.EVENT: {"name": str},
    MessageType.ERROR: {"kind": str},
    MessageType.PING: {},
    MessageType.PONG: {},
}

# Types that must carry a correlation id
CORRELATED_TYPES = frozenset({MessageType.REQUEST, MessageType.RESPONSE})

ENVELOPE_FIELDS = ("type", "id", "payload", "ts")

# Built-in operations handled by the gateway
OP_PING_REMOTE = "ping-remote"
OP_EXEC = "exec"
OP_RELAY = "relay"
OP_RELEASE_TUNNEL = "release-tunnel"
OP_SESSION_INFO = "session.info"
OP_SESSION_CLOSE = "session.close"

# Session lifecycle events
EVENT_SESSION_ESTABLISHED = "session.established"
EVENT_SESSION_CREATED = "session.created"
EVENT_SESSION_SUSPENDED = "session.suspended"
EVENT_SESSION_RESUMED = "session.resumed"
EVENT_SESSION_CLOSED = "session.closed"

# Frames larger than this are refused when relayed over SSH channels
MAX_FRAME_SIZE = 16 * 1024 * 1024


def now_millis() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class Envelope:
    """One wire message.

    ``payload`` is the type-specific body; ``extra`` keeps top-level fields this
    version does not know about so pass-through envelopes re-encode intact.
    """

    type: MessageType
    id: str | None = None
    payload: dict = field(default_factory=dict)
    ts: int | None = field(default_factory=now_millis)
    extra: dict = field(default_factory=dict)

    @classmethod
    def request(cls, op: str, args: dict | None = None, id: str | None = None) -> "Envelope":
        return cls(type=MessageType.REQUEST, id=id, payload={"op": op, **(args or {})})

    @classmethod
    def response(cls, id: str, result: Any = None) -> "Envelope":
        if result is None:
            result = {}
        elif not isinstance(result, dict):
            result = {"result": result}
        return cls(type=MessageType.RESPONSE, id=id, payload=result)

    @classmethod
    def error(
        cls,
        kind: str,
        message: str,
        id: str | None = None,
        details: dict | None = None,
        recovery_hint: str | None = None,
    ) -> "Envelope":
        payload = {"kind": kind, "message": message}
        if details:
            payload["details"] = details
        if recovery_hint:
            payload["recovery_hint"] = recovery_hint
        return cls(type=MessageType.ERROR, id=id, payload=payload)

    @classmethod
    def event(cls, name: str, data: dict | None = None) -> "Envelope":
        return cls(type=MessageType.EVENT, payload={"name": name, "data": data or {}})

    @classmethod
    def ping(cls, seq: int = 0) -> "Envelope":
        return cls(type=MessageType.PING, payload={"seq": seq})

    @classmethod
    def pong(cls, seq: int = 0) -> "Envelope":
        return cls(type=MessageType.PONG, payload={"seq": seq})

    @property
    def op(self) -> str | None:
        """Operation name of a request envelope."""
        if self.type is MessageType.REQUEST:
            return self.payload.get("op")
        return None

    @property
    def args(self) -> dict:
        """Request payload without the ``op`` key."""
        return {k: v for k, v in self.payload.items() if k != "op"}

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data["type"] = self.type.value
        if self.id is not None:
            data["id"] = self.id
        data["payload"] = self.payload
        if self.ts is not None:
            data["ts"] = self.ts
        return data


# =============================================================================
# Error taxonomy surfaced to callers
# =============================================================================


class GatewayError(Exception):
    """Base exception carrying a wire-level error kind."""

    kind = "GatewayError"

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.details = details or {}
        self.recovery_hint = recovery_hint
        super().__init__(message)

    def to_payload(self) -> dict:
        """Convert to an error envelope payload."""
        result = {"kind": self.kind, "message": self.message}
        if self.details:
            result["details"] = self.details
        if self.recovery_hint:
            result["recovery_hint"] = self.recovery_hint
        return result

    def to_envelope(self, id: str | None = None) -> Envelope:
        return Envelope(type=MessageType.ERROR, id=id, payload=self.to_payload())


class MalformedMessage(GatewayError):
    """Raised when an envelope is missing fields or violates its payload schema."""

    kind = "MalformedMessage"

    def __init__(self, reason: str):
        super().__init__(
            message=f"Malformed message: {reason}",
            details={"reason": reason},
        )


class DecodeError(GatewayError):
    """Raised when a frame cannot be decoded into an envelope."""

    kind = "DecodeError"

    def __init__(self, reason: str, correlation_id: str | None = None):
        self.correlation_id = correlation_id
        super().__init__(
            message=f"Could not decode message: {reason}",
            details={"reason": reason},
            recovery_hint="Frames must be JSON objects with type, payload and (for requests) id.",
        )


class UnknownType(GatewayError):
    """Raised when an envelope carries an unrecognized type tag."""

    kind = "UnknownType"

    def __init__(self, type_tag: str, correlation_id: str | None = None):
        self.correlation_id = correlation_id
        super().__init__(
            message=f"Unknown message type: {type_tag}",
            details={"type": type_tag, "known": [t.value for t in MessageType]},
        )


class ChannelClosed(GatewayError):
    """Raised when sending on a control channel whose connection is gone."""

    kind = "ChannelClosed"

    def __init__(self, session_id: str | None = None):
        details = {"session_id": session_id} if session_id else None
        super().__init__(message="Control channel closed", details=details)


class TunnelEstablishError(GatewayError):
    """Raised when an SSH tunnel cannot be established."""

    kind = "TunnelEstablishError"

    def __init__(self, host: str, port: int, reason: str):
        super().__init__(
            message=f"Failed to establish tunnel to {host}:{port}: {reason}",
            details={"host": host, "port": port, "reason": reason},
            recovery_hint="Verify the host is reachable and the credential is valid.",
        )


class TunnelUnavailable(GatewayError):
    """Raised when a borrowed tunnel was invalidated, released or has died."""

    kind = "TunnelUnavailable"

    def __init__(self, host: str, port: int, reason: str):
        super().__init__(
            message=f"Tunnel to {host}:{port} unavailable: {reason}",
            details={"host": host, "port": port, "reason": reason},
            recovery_hint="Retry the operation; a fresh tunnel will be established.",
        )


class RequestTimeout(GatewayError):
    """Raised when a request is not answered within the request timeout."""

    kind = "RequestTimeout"

    def __init__(self, op: str | None, timeout: float):
        super().__init__(
            message=f"Request timed out after {timeout:g} seconds",
            details={"op": op, "timeout": timeout},
        )


class SessionTerminated(GatewayError):
    """Raised for requests that were pending or issued while a session shut down."""

    kind = "SessionTerminated"

    def __init__(self, session_id: str, reason: str = "session closed"):
        super().__init__(
            message=f"Session terminated: {reason}",
            details={"session_id": session_id, "reason": reason},
            recovery_hint="Open a new session.",
        )


class UnknownOperation(GatewayError):
    """Raised when no handler is registered for a request op."""

    kind = "UnknownOperation"

    def __init__(self, op: str, available: list[str] | None = None):
        details = {"op": op}
        if available:
            details["available"] = sorted(available)
        super().__init__(message=f"Unknown operation: {op}", details=details)


class InvalidArgument(GatewayError):
    """Raised when request arguments are invalid."""

    kind = "InvalidArgument"

    def __init__(self, argument: str, reason: str):
        super().__init__(
            message=f"Invalid argument '{argument}': {reason}",
            details={"argument": argument, "reason": reason},
        )


class OperationFailed(GatewayError):
    """Raised when an op handler fails with an unexpected exception."""

    kind = "OperationFailed"

    def __init__(self, op: str, reason: str):
        super().__init__(
            message=f"Operation {op} failed: {reason}",
            details={"op": op, "reason": reason},
        )


class HandshakeRejected(GatewayError):
    """Raised when a WebSocket handshake is refused."""

    kind = "HandshakeRejected"

    def __init__(self, status: int, reason: str):
        self.status = status
        super().__init__(
            message=f"Handshake rejected: {reason}",
            details={"status": status, "reason": reason},
        )


class RemoteError(GatewayError):
    """Error envelope returned by the peer for a request we issued."""

    def __init__(self, payload: dict):
        self.kind = payload.get("kind", "RemoteError")
        super().__init__(
            message=payload.get("message", self.kind),
            details=payload.get("details"),
            recovery_hint=payload.get("recovery_hint"),
        )


# =============================================================================
# Codec
# =============================================================================


def validate(envelope: Envelope) -> None:
    """Check an envelope against its type's schema.

    Raises:
        MalformedMessage: If a required field is absent or has the wrong type
    """
    if not isinstance(envelope.type, MessageType):
        raise MalformedMessage(f"type must be a MessageType, got {envelope.type!r}")

    if envelope.type in CORRELATED_TYPES:
        if not isinstance(envelope.id, str) or not envelope.id:
            raise MalformedMessage(f"{envelope.type.value} requires a correlation id")
    elif envelope.id is not None and not isinstance(envelope.id, str):
        raise MalformedMessage("id must be a string")

    if not isinstance(envelope.payload, dict):
        raise MalformedMessage("payload must be an object")

    for key, expected in PAYLOAD_SCHEMAS[envelope.type].items():
        if key not in envelope.payload:
            raise MalformedMessage(f"{envelope.type.value} payload requires '{key}'")
        if not isinstance(envelope.payload[key], expected):
            raise MalformedMessage(
                f"{envelope.type.value} payload '{key}' must be {expected.__name__}"
            )

    if envelope.ts is not None and (
        not isinstance(envelope.ts, int) or isinstance(envelope.ts, bool)
    ):
        raise MalformedMessage("ts must be integer epoch milliseconds")

    shadowed = set(envelope.extra) & set(ENVELOPE_FIELDS)
    if shadowed:
        raise MalformedMessage(f"extra fields shadow envelope fields: {sorted(shadowed)}")


def encode(envelope: Envelope) -> bytes:
    """Encode an envelope to UTF-8 JSON bytes.

    Raises:
        MalformedMessage: If the envelope is invalid or not JSON-serializable
    """
    validate(envelope)
    try:
        data = json.dumps(envelope.to_dict(), separators=(",", ":"), allow_nan=False)
        return data.encode("utf-8")
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"payload is not JSON-serializable: {e}") from e


def _reject_constant(name: str):
    raise json.JSONDecodeError(f"non-finite number {name} not allowed", name, 0)


def decode(data: bytes | str) -> Envelope:
    """Decode one frame into an envelope.

    Raises:
        DecodeError: If the frame is not a structurally valid envelope
        UnknownType: If the type tag is not recognized
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"invalid UTF-8: {e}") from e

    try:
        obj = json.loads(data, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid JSON: {e.msg}") from e
    except RecursionError:
        raise DecodeError("JSON nested too deeply") from None

    if not isinstance(obj, dict):
        raise DecodeError("envelope must be a JSON object")

    raw_id = obj.get("id")
    correlation_id = raw_id if isinstance(raw_id, str) else None

    tag = obj.get("type")
    if not isinstance(tag, str):
        raise DecodeError("missing or non-string 'type'", correlation_id)
    try:
        msg_type = MessageType(tag)
    except ValueError:
        raise UnknownType(tag, correlation_id) from None

    if raw_id is not None and not isinstance(raw_id, str):
        raise DecodeError("'id' must be a string", None)

    payload = obj.get("payload", {})
    if not isinstance(payload, dict):
        raise DecodeError("'payload' must be an object", correlation_id)

    ts = obj.get("ts")
    if isinstance(ts, float):
        if not math.isfinite(ts):
            raise DecodeError("'ts' must be a finite number", correlation_id)
        ts = int(ts)

    envelope = Envelope(
        type=msg_type,
        id=raw_id,
        payload=payload,
        ts=ts,
        extra={k: v for k, v in obj.items() if k not in ENVELOPE_FIELDS},
    )
    try:
        validate(envelope)
    except MalformedMessage as e:
        raise DecodeError(e.details["reason"], correlation_id) from e
    return envelope


# =============================================================================
# Length-prefixed framing for envelopes relayed over SSH channels
# =============================================================================


def frame(data: bytes) -> bytes:
    """Prefix a payload with its 4-byte big-endian length."""
    if len(data) > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {len(data)} bytes")
    return len(data).to_bytes(4, "big") + data


class IncompleteFrame(ValueError):
    """More bytes are needed before a frame can be split off."""


def unframe(data: bytes) -> tuple[bytes, bytes]:
    """Split one length-prefixed frame off ``data``, return (frame, remaining_data).

    Raises:
        IncompleteFrame: If ``data`` does not yet hold a whole frame
        ValueError: If the declared length exceeds MAX_FRAME_SIZE
    """
    if len(data) < 4:
        raise IncompleteFrame("Incomplete frame header")
    length = int.from_bytes(data[:4], "big")
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} bytes")
    if len(data) < 4 + length:
        raise IncompleteFrame("Incomplete frame body")
    return data[4 : 4 + length], data[4 + length :]


def read_frame(recv, chunk_size: int = 4096) -> bytes:
    """Read exactly one frame using a blocking ``recv(n) -> bytes`` callable.

    Raises:
        EOFError: If the stream ends before a whole frame arrived
        ValueError: If the declared length exceeds MAX_FRAME_SIZE
    """
    buffer = b""
    while True:
        try:
            body, _ = unframe(buffer)
            return body
        except IncompleteFrame:
            pass
        chunk = recv(chunk_size)
        if not chunk:
            raise EOFError("stream closed before a whole frame arrived")
        buffer += chunk
