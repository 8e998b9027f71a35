"""Configuration management for the gateway."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG_DIR = Path.home() / ".rsgateway"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Recognized camelCase option names -> dataclass fields
OPTION_ALIASES = {
    "pingIntervalMs": "ping_interval_ms",
    "pongTimeoutMs": "pong_timeout_ms",
    "requestTimeoutMs": "request_timeout_ms",
    "sessionIdleTimeoutMs": "session_idle_timeout_ms",
    "reconnectGraceMs": "reconnect_grace_ms",
    "tunnelIdleGraceMs": "tunnel_idle_grace_ms",
    "tunnelConnectTimeoutMs": "tunnel_connect_timeout_ms",
}

# Environment variable overrides (applied after the config file)
ENV_OVERRIDES = {
    "RSGATEWAY_HOST": ("host", str),
    "RSGATEWAY_PORT": ("port", int),
    "RSGATEWAY_PING_INTERVAL_MS": ("ping_interval_ms", int),
    "RSGATEWAY_PONG_TIMEOUT_MS": ("pong_timeout_ms", int),
    "RSGATEWAY_REQUEST_TIMEOUT_MS": ("request_timeout_ms", int),
    "RSGATEWAY_SESSION_IDLE_TIMEOUT_MS": ("session_idle_timeout_ms", int),
    "RSGATEWAY_RECONNECT_GRACE_MS": ("reconnect_grace_ms", int),
    "RSGATEWAY_TUNNEL_IDLE_GRACE_MS": ("tunnel_idle_grace_ms", int),
    "RSGATEWAY_TUNNEL_CONNECT_TIMEOUT_MS": ("tunnel_connect_timeout_ms", int),
    "RSGATEWAY_WEBHOOK_URL": ("webhook_url", str),
    "RSGATEWAY_LOG_LEVEL": ("log_level", str),
    "RSGATEWAY_LOG_FILE": ("log_file", str),
}


class ConfigError(ValueError):
    """Raised when configuration values are inconsistent."""


# Type-checked by GatewayConfig.validate()
INT_OPTIONS = (
    "port",
    "ping_interval_ms",
    "pong_timeout_ms",
    "request_timeout_ms",
    "session_idle_timeout_ms",
    "reconnect_grace_ms",
    "sweep_interval_ms",
    "max_buffered_envelopes",
    "max_message_size",
    "tunnel_idle_grace_ms",
    "tunnel_connect_timeout_ms",
    "tunnel_max_probe_failures",
)
STR_OPTIONS = ("host", "webhook_url", "log_level")


@dataclass
class SshCredential:
    """SSH login material referenced by credential id."""

    username: str
    password: Optional[str] = None
    key_file: Optional[str] = None
    passphrase: Optional[str] = None

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks
        return (
            f"SshCredential(username={self.username!r}, key_file={self.key_file!r}, "
            f"password={'***' if self.password else None})"
        )

    @classmethod
    def from_dict(cls, data: dict) -> "SshCredential":
        if not isinstance(data, dict):
            raise ConfigError("credential must be a mapping")
        if "username" not in data:
            raise ConfigError("credential requires 'username'")
        return cls(
            username=data["username"],
            password=data.get("password"),
            key_file=data.get("key_file"),
            passphrase=data.get("passphrase"),
        )

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "password": self.password,
            "key_file": self.key_file,
            "passphrase": self.passphrase,
        }


class CredentialStore:
    """Resolves credential ids to SSH credentials."""

    def __init__(self, credentials: dict[str, SshCredential] | None = None):
        self._credentials = dict(credentials or {})

    def get(self, credential_id: str) -> SshCredential | None:
        return self._credentials.get(credential_id)

    def add(self, credential_id: str, credential: SshCredential) -> None:
        self._credentials[credential_id] = credential

    def __contains__(self, credential_id: str) -> bool:
        return credential_id in self._credentials

    def ids(self) -> list[str]:
        return sorted(self._credentials)


@dataclass
class GatewayConfig:
    """Gateway configuration. Durations are in milliseconds."""

    # Listener
    host: str = "127.0.0.1"
    port: int = 8080

    # Heartbeat
    ping_interval_ms: int = 15_000
    pong_timeout_ms: int = 45_000

    # Sessions
    request_timeout_ms: int = 10_000
    session_idle_timeout_ms: int = 30 * 60_000
    reconnect_grace_ms: int = 30 * 60_000
    sweep_interval_ms: int = 1_000
    max_buffered_envelopes: int = 1000
    max_message_size: int = 2 * 1024 * 1024

    # Tunnels
    tunnel_idle_grace_ms: int = 60_000
    tunnel_connect_timeout_ms: int = 10_000
    tunnel_max_probe_failures: int = 2

    # Notifications and logging
    webhook_url: str = ""
    log_level: str = "INFO"
    log_file: Optional[str] = None

    credentials: dict[str, SshCredential] = field(default_factory=dict)

    @staticmethod
    def seconds(value_ms: int) -> float:
        """Convert a millisecond option to seconds for asyncio."""
        return value_ms / 1000.0

    def validate(self) -> "GatewayConfig":
        """Check value types and ranges, return self for chaining."""
        for name in INT_OPTIONS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
        for name in STR_OPTIONS:
            if not isinstance(getattr(self, name), str):
                raise ConfigError(f"{name} must be a string")
        if self.log_file is not None and not isinstance(self.log_file, str):
            raise ConfigError("log_file must be a path string")

        for name in (
            "ping_interval_ms",
            "pong_timeout_ms",
            "request_timeout_ms",
            "session_idle_timeout_ms",
            "reconnect_grace_ms",
            "sweep_interval_ms",
            "tunnel_idle_grace_ms",
            "tunnel_connect_timeout_ms",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.pong_timeout_ms <= self.ping_interval_ms:
            raise ConfigError("pong_timeout_ms must exceed ping_interval_ms")
        if self.max_buffered_envelopes < 0:
            raise ConfigError("max_buffered_envelopes must not be negative")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"invalid port: {self.port}")
        return self

    def credential_store(self) -> CredentialStore:
        return CredentialStore(self.credentials)

    @classmethod
    def from_dict(cls, data: dict) -> "GatewayConfig":
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            name = OPTION_ALIASES.get(key, key)
            if name == "credentials":
                if not isinstance(value or {}, dict):
                    raise ConfigError("credentials must be a mapping of id to credential")
                values[name] = {
                    cred_id: SshCredential.from_dict(cred or {})
                    for cred_id, cred in (value or {}).items()
                }
            elif name in known:
                values[name] = value
            else:
                raise ConfigError(f"Unknown configuration option: {key}")
        return cls(**values)

    @classmethod
    def load(cls, path: Optional[Path] = None, env: Optional[dict] = None) -> "GatewayConfig":
        """Load configuration from file, then apply environment overrides."""
        path = Path(path) if path else DEFAULT_CONFIG_FILE

        data = {}
        if path.exists():
            with open(path) as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigError(f"{path}: invalid YAML: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{path}: top level must be a mapping")

        config = cls.from_dict(data)
        config.apply_env(os.environ if env is None else env)
        return config.validate()

    def apply_env(self, env) -> None:
        for var, (name, cast) in ENV_OVERRIDES.items():
            if env.get(var):
                try:
                    setattr(self, name, cast(env[var]))
                except ValueError as e:
                    raise ConfigError(f"{var}: {e}") from e

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        path = Path(path) if path else DEFAULT_CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "credentials"}
        data["credentials"] = {
            cred_id: cred.to_dict() for cred_id, cred in self.credentials.items()
        }

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)
        path.chmod(0o600)
