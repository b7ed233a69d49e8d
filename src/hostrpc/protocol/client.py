"""RpcClient -- JSON-RPC requests over a :class:`FramedConnection`.

Responses are matched to callers by id, never by arrival order, so any
number of requests may be in flight at once.  There is no per-request
timeout; when the connection goes away every pending request fails with
:class:`~hostrpc.errors.TransportError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from hostrpc.errors import RpcError, TransportError
from hostrpc.protocol.connection import FramedConnection
from hostrpc.protocol.models import JsonRpcRequest, JsonRpcResponse

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future[Any]


class RpcClient:
    """Issues requests and correlates responses on one connection.

    Usage::

        connection = await FramedConnection.connect(path)
        async with RpcClient(connection) as client:
            result = await client.request("add", [token, {"a": 1, "b": 2}])
    """

    def __init__(self, connection: FramedConnection) -> None:
        self._connection = connection
        self._pending: dict[int, PendingRequest] = {}
        self._next_id = 1
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    async def __aenter__(self) -> RpcClient:
        self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Begin consuming responses in a background task."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def request(self, method: str, params: list[Any] | dict[str, Any] | None = None) -> Any:
        """Send a request and wait for its result.

        Raises:
            RpcError: If the peer answered with an error object.
            TransportError: If the connection is (or becomes) unusable.
        """
        if self.closed:
            raise TransportError("connection closed")

        request_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, method, future)

        try:
            request = JsonRpcRequest(method=method, params=params, id=request_id)
            logger.debug("Sending RPC request %s (%s)", request_id, method)
            if not await self._connection.send(request.to_wire()):
                raise TransportError("connection is not writable")
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def wait_closed(self) -> None:
        """Resolve once the connection has been lost or closed."""
        await self._closed.wait()

    async def close(self) -> None:
        await self._connection.close()
        if self._reader_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._fail_pending(TransportError("connection closed"))
        self._closed.set()

    async def _read_loop(self) -> None:
        try:
            async for frame in self._connection.frames():
                if frame.error is not None:
                    logger.debug("Error parsing RPC response: %s", frame.error)
                    continue
                self._receive(frame.payload)
        finally:
            logger.debug("Socket connection closed")
            self._fail_pending(TransportError("connection closed"))
            self._closed.set()

    def _receive(self, payload: Any) -> None:
        if isinstance(payload, list):
            for item in payload:
                self._receive(item)
            return

        try:
            response = JsonRpcResponse.model_validate(payload)
        except ValidationError as exc:
            logger.debug("Ignoring malformed RPC response: %s", exc)
            return

        pending = self._pending.get(response.id) if isinstance(response.id, int) else None
        if pending is None:
            if response.error is not None:
                logger.warning("Uncorrelated RPC error from host: %s", response.error.message)
            else:
                logger.debug("Ignoring response for unknown id %r", response.id)
            return
        if pending.future.done():
            return

        if response.error is not None:
            error = response.error
            pending.future.set_exception(RpcError(error.code, error.message, error.data))
        else:
            logger.debug("Received RPC response %s", response.id)
            pending.future.set_result(response.result)

    def _fail_pending(self, exc: Exception) -> None:
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(exc)
