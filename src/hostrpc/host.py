"""McpHost -- the host-side RPC server and its embedding API.

The host owns the signing secret, the tool registry and a Unix socket.  For
every logical context (tenant, user, ...) it mints an environment bundle that
a freshly spawned bridge process uses to reach back into the host::

    host = McpHost(debug=True)
    host.register_tool("add", {...}, add_handler)
    await host.start()
    config = host.get_spawn_config("calc", ["add"], {"user_id": "u-1"})

Requests arrive as ``method(contextToken, args)``; the token is verified,
the context extracted, and the handler awaited with ``(context, args)``.
Handler results go back verbatim; handler failures become JSON-RPC errors.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import sys
import tempfile
import uuid
from collections.abc import Coroutine, Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from hostrpc.context_token import generate_secret, sign, verify
from hostrpc.errors import (
    AlreadyStartedError,
    AuthenticationError,
    HandlerError,
    ShutdownTimeoutError,
    TransportError,
)
from hostrpc.protocol.connection import FramedConnection
from hostrpc.protocol.models import (
    AUTHENTICATION_ERROR,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    JsonRpcRequest,
    JsonRpcResponse,
)
from hostrpc.registry import RpcHandler, ToolDescriptor, ToolRegistry
from hostrpc.utils.log import configure_logging
from hostrpc.utils.telemetry import ATTR_RPC_ERROR_CODE, ATTR_RPC_ID, ATTR_RPC_METHOD, get_tracer

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

STOP_TIMEOUT = 5.0
DEFAULT_ARGS = ["-m", "hostrpc"]


class HostState(str, Enum):
    """Lifecycle of an :class:`McpHost`."""

    CREATED = "created"
    STARTING = "starting"
    LISTENING = "listening"
    STOPPING = "stopping"
    STOPPED = "stopped"


class EnvironmentBundle(BaseModel):
    """Environment handed to one bridge process."""

    CONTEXT_TOKEN: str
    PIPE: str
    TOOLS: str

    def as_env(self) -> dict[str, str]:
        return self.model_dump()


class SpawnOptions(BaseModel):
    """Overrides for the bridge launch command in :meth:`McpHost.get_spawn_config`."""

    command: str | list[str] | None = Field(
        default=None,
        description="Launch command; a list is split into command + leading args.",
    )
    args: list[str] | None = Field(default=None, description="Extra arguments, appended last.")
    debug: bool = Field(default=False, description="Set DEBUG=1 in the bridge environment.")


class HostInfo(BaseModel):
    """What :meth:`McpHost.start` reports once the socket is listening."""

    secret: str
    pipe_path: str
    tools: dict[str, ToolDescriptor]


def default_pipe_path() -> str:
    return os.path.join(tempfile.gettempdir(), f"mcp-pipe-{os.getpid()}-{uuid.uuid4().hex[:8]}.sock")


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


class McpHost:
    """Host-side RPC server for context-scoped MCP bridge processes.

    Parameters
    ----------
    secret:
        HS256 signing secret for context tokens; random when omitted.
    pipe_path:
        Unix socket path; a unique path in the temp dir when omitted.
    start:
        Schedule :meth:`start` on the running event loop right away.
    debug:
        Emit debug logs for the ``hostrpc`` logger on stderr.
    stop_timeout:
        Seconds :meth:`stop` waits for the socket to close.
    """

    def __init__(
        self,
        *,
        secret: str | None = None,
        pipe_path: str | None = None,
        start: bool = False,
        debug: bool = False,
        stop_timeout: float = STOP_TIMEOUT,
    ) -> None:
        self._secret = secret or generate_secret()
        self._pipe_path = pipe_path or default_pipe_path()
        self._stop_timeout = stop_timeout
        self._registry = ToolRegistry()
        self._state = HostState.CREATED
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[FramedConnection] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._auto_start: asyncio.Task[HostInfo] | None = None

        if debug:
            configure_logging(debug=True)
        if start:
            self._schedule_start()

    async def __aenter__(self) -> McpHost:
        if self._auto_start is not None:
            await self._auto_start
        elif self._state is HostState.CREATED:
            await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> HostState:
        return self._state

    @property
    def secret(self) -> str:
        return self._secret

    @property
    def pipe_path(self) -> str:
        return self._pipe_path

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Embedding API
    # ------------------------------------------------------------------

    def register_tool(
        self,
        tool_name: str,
        descriptor: ToolDescriptor | Mapping[str, Any],
        handler: RpcHandler,
    ) -> ToolDescriptor:
        """Register *handler* under ``descriptor.function_name``.

        Works before and after :meth:`start`; re-registering a tool name
        replaces its entry.
        """
        return self._registry.register(tool_name, descriptor, handler)

    def get_environment_bundle(self, tools: Iterable[str], context: Any) -> EnvironmentBundle:
        """Mint ``CONTEXT_TOKEN``/``PIPE``/``TOOLS`` for one bridge process."""
        if isinstance(tools, str):
            tools = [tools]
        return EnvironmentBundle(
            CONTEXT_TOKEN=sign(self._secret, context),
            PIPE=self._pipe_path,
            TOOLS=self._registry.to_wire(tools),
        )

    def get_spawn_config(
        self,
        name: str,
        tools: Iterable[str],
        context: Any,
        options: SpawnOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Return an MCP client ``mcpServers`` entry launching the bridge."""
        if not name or not isinstance(name, str):
            raise ValueError("Server name must be a non-empty string")
        if not isinstance(options, SpawnOptions):
            options = SpawnOptions.model_validate(options or {})

        command = sys.executable
        args = list(DEFAULT_ARGS)
        if isinstance(options.command, list):
            if options.command:
                command, args = options.command[0], list(options.command[1:])
        elif options.command:
            command, args = options.command, []
        if options.args:
            args.extend(options.args)

        env = self.get_environment_bundle(tools, context).as_env()
        if options.debug:
            env["DEBUG"] = "1"

        return {name: {"type": "stdio", "command": command, "args": args, "env": env}}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> HostInfo:
        """Bind the Unix socket and begin serving.

        Raises:
            AlreadyStartedError: If the host has left the created state.
            TransportError: If binding fails; the host stays startable.
        """
        if self._state is not HostState.CREATED:
            raise AlreadyStartedError()
        self._state = HostState.STARTING

        try:
            if os.path.exists(self._pipe_path):
                os.unlink(self._pipe_path)
            self._server = await asyncio.start_unix_server(
                self._handle_connection, path=self._pipe_path
            )
        except OSError as exc:
            self._state = HostState.CREATED
            self._server = None
            raise TransportError(f"cannot listen on {self._pipe_path}: {exc}") from exc

        self._state = HostState.LISTENING
        logger.debug("RPC server started on %s", self._pipe_path)
        logger.debug("Available tools: %s", self._registry.tool_names)
        return HostInfo(
            secret=self._secret,
            pipe_path=self._pipe_path,
            tools=self._registry.snapshot(self._registry.tool_names),
        )

    async def stop(self) -> None:
        """Close the socket (bounded by ``stop_timeout``); no-op unless listening.

        Raises:
            ShutdownTimeoutError: If closing took too long.  The host is
                marked stopped anyway and resources may leak.
        """
        if self._state is not HostState.LISTENING or self._server is None:
            return
        self._state = HostState.STOPPING
        server, self._server = self._server, None

        try:
            await asyncio.wait_for(self._close(server), timeout=self._stop_timeout)
        except TimeoutError:
            self._state = HostState.STOPPED
            logger.warning("Server stop timeout - forcing shutdown")
            raise ShutdownTimeoutError(self._stop_timeout) from None

        try:
            if os.path.exists(self._pipe_path):
                os.unlink(self._pipe_path)
        except OSError as exc:
            logger.warning("Error removing socket file %s: %s", self._pipe_path, exc)

        self._state = HostState.STOPPED
        logger.debug("Server stopped")

    async def _close(self, server: asyncio.AbstractServer) -> None:
        server.close()
        # let connections accepted just before close reach _handle_connection
        await asyncio.sleep(0)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*(c.close() for c in list(self._connections)))
        await server.wait_closed()

    def _schedule_start(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("start=True needs a running event loop; call start() explicitly")
            return
        self._auto_start = loop.create_task(self.start())
        self._auto_start.add_done_callback(_log_start_failure)

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection = FramedConnection(reader, writer, label="bridge connection")
        if self._state is not HostState.LISTENING:
            logger.debug("Rejecting connection, server is %s", self._state.value)
            await connection.close()
            return
        self._connections.add(connection)
        logger.debug("Client connected")
        try:
            async for frame in connection.frames():
                if frame.error is not None:
                    logger.debug("Error processing request: %s (line: %r)", frame.error, frame.raw)
                    response = JsonRpcResponse.failure(
                        None, PARSE_ERROR, "Parse error", frame.error.detail
                    )
                    await connection.send(response.to_wire())
                    continue
                self._spawn(self._serve(connection, frame.payload))
        finally:
            self._connections.discard(connection)
            logger.debug("Client disconnected")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, connection: FramedConnection, payload: Any) -> None:
        if isinstance(payload, list):
            if not payload:
                empty = JsonRpcResponse.failure(None, INVALID_REQUEST, "Invalid Request", "empty batch")
                await connection.send(empty.to_wire())
                return
            responses = await asyncio.gather(*(self.handle_message(item) for item in payload))
            batch = [response.to_wire() for response in responses if response is not None]
            if batch:
                await connection.send(batch)
            return

        response = await self.handle_message(payload)
        if response is not None:
            await connection.send(response.to_wire())

    async def handle_message(self, payload: Any) -> JsonRpcResponse | None:
        """Serve one decoded JSON-RPC message; ``None`` for notifications."""
        raw_id = payload.get("id") if isinstance(payload, dict) else None
        request_id = raw_id if isinstance(raw_id, (int, str)) and not isinstance(raw_id, bool) else None

        try:
            request = JsonRpcRequest.model_validate(payload)
        except ValidationError as exc:
            return JsonRpcResponse.failure(request_id, INVALID_REQUEST, "Invalid Request", str(exc))
        if request.jsonrpc != "2.0":
            return JsonRpcResponse.failure(
                request_id, INVALID_REQUEST, "Invalid Request", "jsonrpc must be '2.0'"
            )

        logger.debug("Received request: %s", request.method)
        with _tracer.start_as_current_span("hostrpc.dispatch") as span:
            span.set_attribute(ATTR_RPC_METHOD, request.method)
            if request.id is not None:
                span.set_attribute(ATTR_RPC_ID, str(request.id))
            response = await self._dispatch(request)
            if response.error is not None:
                span.set_attribute(ATTR_RPC_ERROR_CODE, response.error.code)

        return None if request.is_notification else response

    async def _dispatch(self, request: JsonRpcRequest) -> JsonRpcResponse:
        method = request.method
        handler = self._registry.handler_for(method)
        if handler is None:
            return JsonRpcResponse.failure(request.id, METHOD_NOT_FOUND, "Method not found", method)

        params = request.params
        if not isinstance(params, list) or not params:
            return JsonRpcResponse.failure(
                request.id, INVALID_PARAMS, "Invalid params", "expected [contextToken, args]"
            )
        token = params[0]
        args = params[1] if len(params) > 1 else None
        if not isinstance(token, str):
            return JsonRpcResponse.failure(
                request.id,
                INVALID_PARAMS,
                f"Expected context token as string, got {_json_type(token)}",
            )

        try:
            context = verify(self._secret, token)
        except AuthenticationError as exc:
            logger.debug("Rejected %s: %s", method, exc)
            return JsonRpcResponse.failure(request.id, AUTHENTICATION_ERROR, str(exc))

        try:
            result = handler(context, args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            error = HandlerError(method, exc)
            logger.debug("Handler %s failed: %s", method, error)
            return JsonRpcResponse.failure(
                request.id, INTERNAL_ERROR, str(error), type(exc).__name__
            )

        try:
            result = to_jsonable_python(result)
        except PydanticSerializationError as exc:
            return JsonRpcResponse.failure(
                request.id, INTERNAL_ERROR, f"Result of {method} is not JSON-serializable: {exc}"
            )
        return JsonRpcResponse.success(request.id, result)


def _log_start_failure(task: asyncio.Task[HostInfo]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Failed to auto-start server: %s", exc)


def create_mcp_host(**options: Any) -> McpHost:
    """Convenience constructor mirroring :class:`McpHost` keyword arguments."""
    return McpHost(**options)
