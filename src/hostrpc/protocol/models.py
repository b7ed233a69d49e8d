"""JSON-RPC 2.0 envelopes used on the local socket.

Requests carry ``params`` as a positional pair ``[contextToken, args]``;
responses carry either the handler's raw ``result`` or an ``error`` object.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
AUTHENTICATION_ERROR = -32001


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class JsonRpcRequest(BaseModel):
    """A JSON-RPC 2.0 request (``id`` absent for notifications)."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = "2.0"
    method: str
    params: list[Any] | dict[str, Any] | None = None
    id: int | str | None = None

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        if not self.is_notification:
            message["id"] = self.id
        return message


class JsonRpcError(BaseModel):
    """A JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Any = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JsonRpcResponse(BaseModel):
    """A JSON-RPC 2.0 response message."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = "2.0"
    id: int | str | None = None
    result: Any = None
    error: JsonRpcError | None = None

    @classmethod
    def success(cls, request_id: int | str | None, result: Any) -> JsonRpcResponse:
        return cls(id=request_id, result=result)

    @classmethod
    def failure(
        cls,
        request_id: int | str | None,
        code: int,
        message: str,
        data: Any = None,
    ) -> JsonRpcResponse:
        return cls(id=request_id, error=JsonRpcError(code=code, message=message, data=data))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> dict[str, Any]:
        """Exactly one of ``result``/``error`` is present on the wire."""
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.to_wire()
        else:
            message["result"] = self.result
        return message
