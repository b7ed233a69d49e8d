"""mcp-host-rpc -- expose in-process handlers as context-scoped MCP tools."""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.2.0"

if TYPE_CHECKING:
    from hostrpc.host import EnvironmentBundle as EnvironmentBundle
    from hostrpc.host import HostState as HostState
    from hostrpc.host import McpHost as McpHost
    from hostrpc.host import SpawnOptions as SpawnOptions
    from hostrpc.host import create_mcp_host as create_mcp_host
    from hostrpc.registry import ToolDescriptor as ToolDescriptor

_EXPORTS = {
    "McpHost": "hostrpc.host",
    "create_mcp_host": "hostrpc.host",
    "EnvironmentBundle": "hostrpc.host",
    "HostState": "hostrpc.host",
    "SpawnOptions": "hostrpc.host",
    "ToolDescriptor": "hostrpc.registry",
}


def __getattr__(name: str) -> object:
    module_path = _EXPORTS.get(name)
    if module_path is not None:
        import importlib

        mod = importlib.import_module(module_path)
        return getattr(mod, name)
    raise AttributeError(f"module 'hostrpc' has no attribute {name!r}")
