"""Version information for the Remote Session Gateway."""

__version__ = "0.3.0"

# Wire protocol version negotiated during the WebSocket handshake
PROTOCOL_VERSION = "1"
SUPPORTED_PROTOCOL_VERSIONS = ("1",)
