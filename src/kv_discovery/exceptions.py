from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class DiscoveryException(Exception):
    """Base class for kv-discovery exceptions with a canonical error shape."""

    code: int
    message: str
    data: Any | None = None
    cause: Exception | None = None

    def __post_init__(self) -> None:
        text = self.message
        if self.cause is not None:
            text = f"{self.message}: {self.cause}"
        object.__setattr__(self, "args", (text,))
        if self.cause is not None:
            object.__setattr__(self, "__cause__", self.cause)
            object.__setattr__(self, "__suppress_context__", True)

    def __str__(self) -> str:
        return self.args[0]

    def to_error_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation of the error."""
        return {"code": self.code, "message": self.message, "data": self.data}


@dataclass(frozen=True)
class ConnectionInitError(DiscoveryException):
    """Raised when the backend handle cannot be created."""

    code: int = 1000
    message: str = "Failed to initialize store connection"


@dataclass(frozen=True)
class UnsupportedBackendError(ConnectionInitError):
    """Raised when no store implementation is registered under a name."""

    code: int = 1001
    message: str = "Unsupported store backend"


@dataclass(frozen=True)
class BootstrapError(DiscoveryException):
    """Raised when the namespace path can neither be found nor created."""

    code: int = 2000
    message: str = "Failed to bootstrap namespace"


@dataclass(frozen=True)
class SubscribeError(DiscoveryException):
    """Raised when the subtree watch cannot be established."""

    code: int = 2001
    message: str = "Failed to watch namespace"


@dataclass(frozen=True)
class RegistrationError(DiscoveryException):
    """Raised when a heartbeat write fails."""

    code: int = 2002
    message: str = "Failed to register entry"


@dataclass(frozen=True)
class InvalidEntryError(DiscoveryException):
    """Raised when a value is not a valid host:port address."""

    code: int = 3000
    message: str = "Invalid entry"


@dataclass(frozen=True)
class StoreError(DiscoveryException):
    """Raised by store backends when a request fails."""

    code: int = 4000
    message: str = "Store request failed"


@dataclass(frozen=True)
class KeyNotFoundError(StoreError):
    """Raised when a key does not exist in the store."""

    code: int = 4001
    message: str = "Key not found"


@dataclass(frozen=True)
class StreamClosedError(DiscoveryException):
    """Raised when sending on a stream that has been closed."""

    code: int = 5000
    message: str = "Stream closed"
