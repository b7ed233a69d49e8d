"""Error taxonomy shared by the host and the bridge process."""

from __future__ import annotations

from typing import Any


class HostRpcError(Exception):
    """Base error for all host/bridge failures."""


class ConfigurationError(HostRpcError):
    """A required setting is missing or malformed (bridge startup)."""


class TransportError(HostRpcError):
    """Binding, accepting, or connecting the local socket failed, or it was lost."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__("Transport error" + (f": {detail}" if detail else ""))


class FrameParseError(HostRpcError):
    """A single frame could not be decoded as JSON."""

    def __init__(self, line: str, detail: str) -> None:
        self.line = line
        self.detail = detail
        super().__init__(detail)


class AuthenticationError(HostRpcError):
    """A context token failed verification."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid context token: {detail}")


class HandlerError(HostRpcError):
    """A registered handler raised while serving a request."""

    def __init__(self, function_name: str, original: BaseException) -> None:
        self.function_name = function_name
        self.original = original
        super().__init__(str(original) or type(original).__name__)


class AlreadyStartedError(HostRpcError):
    """``start()`` was called on a host that is not in the created state."""

    def __init__(self) -> None:
        super().__init__("Server is already started")


class ShutdownTimeoutError(HostRpcError):
    """Graceful socket close did not finish within the stop timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Server stop timeout after {timeout}s")


class RpcError(HostRpcError):
    """The remote side answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)
