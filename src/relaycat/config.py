"""
Configuration management for relaycat.

A single immutable NetcatConfig is built once at startup and passed to
every component. Tunables may come from RELAYCAT_* environment
variables or a .env file; explicit values always win.
"""

import codecs
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from relaycat.errors import ConfigurationError

# Check common locations for .env
env_locations = [
    Path.home() / ".relaycat" / ".env",
    Path.home() / ".config" / "relaycat" / ".env",
    Path.cwd() / ".env",
]
for env_path in env_locations:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Protocol(str, Enum):
    """Network protocol."""
    TCP = "tcp"
    UDP = "udp"


# Environment variable -> (field name, converter)
ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "RELAYCAT_BUFFER_SIZE": ("buffer_size", int),
    "RELAYCAT_CONNECT_TIMEOUT": ("connect_timeout", float),
    "RELAYCAT_RETRIES": ("retries", int),
    "RELAYCAT_MAX_CONNECTIONS": ("max_connections", int),
    "RELAYCAT_SESSION_TIMEOUT": ("session_timeout", float),
    "RELAYCAT_CONSOLE_ENCODING": ("console_encoding", str),
}


@dataclass(frozen=True)
class NetcatConfig:
    """Configuration for netcat operations."""
    # Connection
    host: str = "0.0.0.0"
    port: int = 4000
    protocol: Protocol = Protocol.TCP
    listen: bool = False

    # Behavior
    shell: bool = False              # Bridge the connection to a shell
    zero_io: bool = False            # Dial, report, close
    web_root: str = "public"         # Directory served in web mode

    # Encryption
    tls: bool = False
    tls_verify: bool = False         # Client trusts any server certificate by default

    # Tuning
    keepalive: bool = False
    keepalive_interval: float = 15.0
    buffer_size: int = 32 * 1024
    connect_timeout: float = 10.0
    retries: int = 0
    session_timeout: float | None = None  # None = unbounded
    max_connections: int = 64
    console_encoding: str = "gbk"    # Legacy console encoding on the transcoding platform

    # Logging
    verbose: bool = False
    hex_dump: bool = False

    def __post_init__(self):
        if not isinstance(self.protocol, Protocol):
            try:
                protocol = Protocol(str(self.protocol).lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unsupported protocol: {self.protocol!r} (expected tcp or udp)"
                ) from None
            object.__setattr__(self, "protocol", protocol)
        self.validate()

    def validate(self) -> None:
        """Check every value; raise ConfigurationError on the first violation."""
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigurationError(f"Port must be an integer, got {self.port!r}")
        if not 1 <= self.port <= 65535:
            raise ConfigurationError(f"Port out of range (1-65535): {self.port}")
        if self.retries < 0:
            raise ConfigurationError(f"Retry count must be >= 0: {self.retries}")
        if self.buffer_size <= 0:
            raise ConfigurationError(f"Buffer size must be > 0: {self.buffer_size}")
        if self.connect_timeout <= 0:
            raise ConfigurationError(f"Connect timeout must be > 0: {self.connect_timeout}")
        if self.session_timeout is not None and self.session_timeout <= 0:
            raise ConfigurationError(f"Session timeout must be > 0: {self.session_timeout}")
        if self.keepalive_interval <= 0:
            raise ConfigurationError(f"Keepalive interval must be > 0: {self.keepalive_interval}")
        if self.max_connections < 1:
            raise ConfigurationError(f"Connection limit must be >= 1: {self.max_connections}")
        if self.tls and self.protocol == Protocol.UDP:
            raise ConfigurationError("TLS is not supported over UDP")
        try:
            codecs.lookup(self.console_encoding)
        except LookupError:
            raise ConfigurationError(f"Unknown console encoding: {self.console_encoding}") from None

    @property
    def address(self) -> str:
        """host:port, bracketing IPv6 literals."""
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @classmethod
    def from_env(cls, **overrides: Any) -> "NetcatConfig":
        """Load tunables from the environment; non-None overrides take precedence."""
        values: dict[str, Any] = {}
        for var, (name, convert) in ENV_FIELDS.items():
            raw = os.getenv(var)
            if raw is None or raw == "":
                continue
            try:
                values[name] = convert(raw)
            except ValueError:
                raise ConfigurationError(f"Invalid value for {var}: {raw!r}") from None

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
