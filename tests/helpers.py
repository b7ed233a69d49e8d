"""Shared constants and a raw socket client for host tests."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

SECRET = "test-secret-0123456789abcdef0123456789abcdef"

ECHO_TOOL = {
    "title": "Test Tool",
    "description": "A test tool for testing",
    "functionName": "testFunction",
    "inputSchema": {
        "type": "object",
        "properties": {"input": {"type": "string"}},
        "required": ["input"],
        "additionalProperties": False,
    },
}


class RawClient:
    """A bare newline-JSON client for poking the host directly."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer

    @classmethod
    async def connect(cls, path: str) -> RawClient:
        reader, writer = await asyncio.open_unix_connection(path)
        return cls(reader, writer)

    async def write_raw(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def send(self, message: Any) -> None:
        await self.write_raw(json.dumps(message).encode() + b"\n")

    async def receive(self, timeout: float = 5.0) -> Any:
        line = await asyncio.wait_for(self.reader.readline(), timeout=timeout)
        assert line, "connection closed before a response arrived"
        return json.loads(line)

    async def call(self, message: Any) -> Any:
        await self.send(message)
        return await self.receive()

    async def read_until_closed(self, timeout: float = 2.0) -> bytes:
        """Everything the peer sends before closing; a reset counts as closed."""
        try:
            return await asyncio.wait_for(self.reader.read(), timeout=timeout)
        except (ConnectionError, OSError):
            return b""

    async def close(self) -> None:
        self.writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self.writer.wait_closed()


def rpc_request(method: str, token: Any, args: Any, request_id: int | str = 1) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "method": method, "params": [token, args], "id": request_id}
