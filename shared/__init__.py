"""Shared protocol, configuration and logging for the Remote Session Gateway."""

from .protocol import (
    ChannelClosed,
    DecodeError,
    Envelope,
    GatewayError,
    MalformedMessage,
    MessageType,
    RequestTimeout,
    SessionTerminated,
    TunnelEstablishError,
    UnknownType,
    decode,
    encode,
)

__all__ = [
    "Envelope",
    "MessageType",
    "encode",
    "decode",
    "GatewayError",
    "MalformedMessage",
    "DecodeError",
    "UnknownType",
    "ChannelClosed",
    "TunnelEstablishError",
    "RequestTimeout",
    "SessionTerminated",
]
