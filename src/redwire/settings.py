"""
redwire configuration settings.

Defaults for connecting a client, overridable through environment variables.
Callers that construct connections explicitly do not need this module.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_seconds(name: str) -> Optional[float]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


@dataclass
class Settings:
    """Client connection settings."""

    # Network settings
    HOST: str = "127.0.0.1"
    PORT: int = 6379
    DB: int = 0

    # Authentication
    USERNAME: Optional[str] = None
    PASSWORD: Optional[str] = None

    # Timeouts in seconds, None blocks indefinitely
    SOCKET_TIMEOUT: Optional[float] = None
    CONNECT_TIMEOUT: Optional[float] = None

    # Reply decoding
    ENCODING: str = "utf-8"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from REDWIRE_* environment variables."""
        return cls(
            HOST=os.environ.get("REDWIRE_HOST") or cls.HOST,
            PORT=_env_int("REDWIRE_PORT", cls.PORT),
            DB=_env_int("REDWIRE_DB", cls.DB),
            USERNAME=os.environ.get("REDWIRE_USERNAME") or None,
            PASSWORD=os.environ.get("REDWIRE_PASSWORD") or None,
            SOCKET_TIMEOUT=_env_seconds("REDWIRE_SOCKET_TIMEOUT"),
            CONNECT_TIMEOUT=_env_seconds("REDWIRE_CONNECT_TIMEOUT"),
            ENCODING=os.environ.get("REDWIRE_ENCODING") or cls.ENCODING,
        )

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for redwire.connection.connect()."""
        return {
            "host": self.HOST,
            "port": self.PORT,
            "db": self.DB,
            "username": self.USERNAME,
            "password": self.PASSWORD,
            "socket_timeout": self.SOCKET_TIMEOUT,
            "connect_timeout": self.CONNECT_TIMEOUT,
        }
