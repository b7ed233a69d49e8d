"""Bridge process: MCP stdio server <-> host RPC relay.

Started by an MCP client as a stdio child process.  Reads ``CONTEXT_TOKEN``,
``PIPE`` and ``TOOLS`` from its environment, connects to the host's Unix
socket, and exposes one MCP tool per ``TOOLS`` entry.  Every tool call is
forwarded as ``functionName([CONTEXT_TOKEN, args])``.

Failures of the forwarded call are reported to the MCP client as a normal
text result (``Error calling <functionName>: <message>``) so that the
client always has something displayable.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server
from pydantic import BaseModel, Field, ValidationError

from hostrpc import __version__
from hostrpc.errors import ConfigurationError, RpcError, TransportError
from hostrpc.protocol.client import RpcClient
from hostrpc.protocol.connection import FramedConnection
from hostrpc.registry import ToolDescriptor
from hostrpc.schema import input_model
from hostrpc.utils.telemetry import ATTR_RPC_METHOD, ATTR_TOOL_ERROR, ATTR_TOOL_NAME, get_tracer

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

SERVER_NAME = "rpc-bridge-server"

ENV_CONTEXT_TOKEN = "CONTEXT_TOKEN"
ENV_PIPE = "PIPE"
ENV_TOOLS = "TOOLS"
ENV_DEBUG = "DEBUG"
ENV_OTLP_ENDPOINT = "OTEL_EXPORTER_OTLP_ENDPOINT"


class RpcRequester(Protocol):
    async def request(self, method: str, params: list[Any] | dict[str, Any] | None = None) -> Any: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BridgeConfig(BaseModel):
    """Operating parameters of one bridge process."""

    context_token: str = Field(..., description="Signed context token minted by the host.")
    pipe: str = Field(..., description="Path of the host's Unix socket.")
    tools: dict[str, ToolDescriptor] = Field(default_factory=dict)
    debug: bool = False
    otlp_endpoint: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeConfig:
        """Build the config from the process environment.

        Raises:
            ConfigurationError: If a required variable is missing or ``TOOLS``
                is not a JSON object of valid tool descriptors.
        """
        env = os.environ if environ is None else environ

        for key in (ENV_CONTEXT_TOKEN, ENV_TOOLS, ENV_PIPE):
            if not env.get(key):
                raise ConfigurationError(f"{key} environment variable is required")

        try:
            raw_tools = json.loads(env[ENV_TOOLS])
        except json.JSONDecodeError as exc:
            raise ConfigurationError("TOOLS must be valid JSON") from exc
        if not isinstance(raw_tools, dict):
            raise ConfigurationError("TOOLS must be a JSON object mapping tool names to descriptors")

        tools: dict[str, ToolDescriptor] = {}
        for name, entry in raw_tools.items():
            try:
                tools[name] = ToolDescriptor.model_validate(entry)
            except ValidationError as exc:
                raise ConfigurationError(f"TOOLS entry {name!r} is invalid: {exc}") from exc

        return cls(
            context_token=env[ENV_CONTEXT_TOKEN],
            pipe=env[ENV_PIPE],
            tools=tools,
            debug=bool(env.get(ENV_DEBUG)),
            otlp_endpoint=env.get(ENV_OTLP_ENDPOINT) or None,
        )


# ---------------------------------------------------------------------------
# Result shaping
# ---------------------------------------------------------------------------


def _to_json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def text_item(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def format_result(result: Any) -> list[Any]:
    """Map an RPC result onto an MCP content list.

    * ``str`` -> one text item
    * ``list`` -> used as the content list unchanged
    * ``dict`` with a ``type`` key -> a single content item
    * anything else -> its JSON text as one text item
    """
    if isinstance(result, str):
        return [text_item(result)]
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and "type" in result:
        return [result]
    return [text_item(_to_json_text(result))]


def to_content(items: list[Any]) -> list[Any]:
    """Validate content dicts into MCP content blocks.

    Items that are not valid MCP content degrade to their JSON text.
    """
    try:
        return list(types.CallToolResult.model_validate({"content": items}).content)
    except ValidationError as exc:
        logger.warning("Host returned invalid MCP content, sending it as text: %s", exc)
        return [types.TextContent(type="text", text=_to_json_text(items))]


def _model_name(tool_name: str) -> str:
    parts = [part for part in re.split(r"[^0-9A-Za-z]+", tool_name) if part]
    return "".join(part[:1].upper() + part[1:] for part in parts) + "Input"


# ---------------------------------------------------------------------------
# Tool exposure
# ---------------------------------------------------------------------------


class BridgeToolset:
    """The configured tools, each bound to an RPC call on the host."""

    def __init__(
        self,
        tools: Mapping[str, ToolDescriptor],
        client: RpcRequester,
        context_token: str,
    ) -> None:
        self._tools = dict(tools)
        self._client = client
        self._context_token = context_token
        self._models: dict[str, type[BaseModel]] = {
            name: input_model(descriptor.input_schema, _model_name(name))
            for name, descriptor in self._tools.items()
        }
        for name, descriptor in self._tools.items():
            logger.debug("Registering tool: %s -> %s", name, descriptor.function_name)

    def input_model(self, tool_name: str) -> type[BaseModel]:
        return self._models[tool_name]

    def list_tools(self) -> list[types.Tool]:
        return [
            types.Tool(
                name=name,
                title=descriptor.title,
                description=descriptor.description,
                inputSchema=self.input_model(name).model_json_schema(),
            )
            for name, descriptor in self._tools.items()
        ]

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None) -> list[Any]:
        """Forward one tool call to the host and shape the result."""
        descriptor = self._tools.get(name)
        if descriptor is None:
            return [text_item(f"Unknown tool: {name}")]

        args = (
            self.input_model(name)
            .model_validate(dict(arguments or {}))
            .model_dump(by_alias=True, exclude_unset=True)
        )
        logger.debug("Tool called: %s with args: %s", name, args)

        with _tracer.start_as_current_span("hostrpc.bridge.call_tool") as span:
            span.set_attribute(ATTR_TOOL_NAME, name)
            span.set_attribute(ATTR_RPC_METHOD, descriptor.function_name)
            try:
                result = await self._client.request(
                    descriptor.function_name, [self._context_token, args]
                )
            except Exception as exc:
                message = exc.message if isinstance(exc, RpcError) else str(exc)
                span.set_attribute(ATTR_TOOL_ERROR, message)
                logger.debug("Tool %s error: %s", name, message)
                return [text_item(f"Error calling {descriptor.function_name}: {message}")]

        logger.debug("Tool %s response: %s", name, result)
        return format_result(result)


def create_bridge_server(toolset: BridgeToolset) -> Server:
    """Wire *toolset* into a low-level MCP :class:`Server`."""
    server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return toolset.list_tools()

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict[str, Any] | None) -> list[Any]:
        return to_content(await toolset.call_tool(name, arguments))

    return server


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_bridge(
    config: BridgeConfig,
    *,
    on_connection_lost: Callable[[], None] | None = None,
) -> None:
    """Connect to the host and serve MCP over stdio until either side goes away.

    Raises:
        TransportError: If the host socket is unreachable, or is lost while
            serving and no *on_connection_lost* callback is given.
    """
    logger.debug("Starting MCP RPC Bridge")
    logger.debug("Pipe address: %s", config.pipe)
    logger.debug("Loaded tools configuration: %s", list(config.tools))

    connection = await FramedConnection.connect(config.pipe, label="host connection")
    client = RpcClient(connection)
    client.start()

    toolset = BridgeToolset(config.tools, client, config.context_token)
    server = create_bridge_server(toolset)

    try:
        async with stdio_server() as (read_stream, write_stream):
            logger.debug("Starting MCP server with stdio transport")
            serving = asyncio.create_task(
                server.run(read_stream, write_stream, server.create_initialization_options())
            )
            lost = asyncio.create_task(client.wait_closed())
            done, _ = await asyncio.wait({serving, lost}, return_when=asyncio.FIRST_COMPLETED)

            if serving in done:
                lost.cancel()
                serving.result()
                return

            logger.debug("Socket connection closed")
            if on_connection_lost is not None:
                on_connection_lost()
            serving.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await serving
            raise TransportError("connection to host closed")
    finally:
        await client.close()
