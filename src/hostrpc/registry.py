"""Tool registry -- tool name -> descriptor, RPC function name -> handler."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hostrpc.schema import is_validation_schema, to_json_schema

logger = logging.getLogger(__name__)

RpcHandler = Callable[[Any, Any], Any]
"""``handler(context, args)``; may be ``async def`` or return a plain value."""


class ToolDescriptor(BaseModel):
    """Everything the bridge needs to expose one tool.

    Serialised with wire aliases (``functionName``, ``inputSchema``) into the
    ``TOOLS`` environment variable.  ``input_schema`` accepts a pydantic model
    class, which is flattened to JSON-Schema on construction.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    title: str
    description: str = ""
    function_name: str = Field(alias="functionName", min_length=1)
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )

    @field_validator("input_schema", mode="before")
    @classmethod
    def _flatten_model(cls, value: Any) -> Any:
        return to_json_schema(value)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ToolRegistry:
    """Maps tool names to descriptors and function names to handlers.

    Safe to mutate at any point of the server lifecycle; dispatch looks
    handlers up per request.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._handlers: dict[str, RpcHandler] = {}

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def register(
        self,
        tool_name: str,
        descriptor: ToolDescriptor | Mapping[str, Any],
        handler: RpcHandler,
    ) -> ToolDescriptor:
        """Register (or replace) *tool_name*; the handler is keyed by function name."""
        if not tool_name:
            raise ValueError("Tool name must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for tool {tool_name!r} is not callable")

        if not isinstance(descriptor, ToolDescriptor):
            raw = dict(descriptor)
            schema = raw.get("inputSchema", raw.get("input_schema"))
            if is_validation_schema(schema):
                logger.debug("Converting pydantic model to JSON Schema for tool: %s", tool_name)
            descriptor = ToolDescriptor.model_validate(raw)

        previous = self.get(tool_name)
        self._tools[tool_name] = descriptor
        self._handlers[descriptor.function_name] = handler
        if previous is not None and previous.function_name != descriptor.function_name:
            self._drop_orphaned(previous.function_name)

        logger.debug("Registered tool: %s -> %s", tool_name, descriptor.function_name)
        return descriptor

    def get(self, tool_name: str) -> ToolDescriptor | None:
        return self._tools.get(tool_name)

    def handler_for(self, function_name: str) -> RpcHandler | None:
        return self._handlers.get(function_name)

    def snapshot(self, tool_names: Iterable[str]) -> dict[str, ToolDescriptor]:
        """Descriptors for the requested names; unknown names are skipped."""
        return {
            name: descriptor
            for name in tool_names
            if (descriptor := self.get(name)) is not None
        }

    def to_wire(self, tool_names: Iterable[str]) -> str:
        """JSON text for the ``TOOLS`` environment variable."""
        return json.dumps(
            {name: descriptor.to_wire() for name, descriptor in self.snapshot(tool_names).items()}
        )

    def _drop_orphaned(self, function_name: str) -> None:
        if all(d.function_name != function_name for d in self._tools.values()):
            self._handlers.pop(function_name, None)
