"""Bridge process entry point (``mcp-host-rpc`` / ``python -m hostrpc``).

Takes no options of its own; everything comes from the environment the host
minted (``CONTEXT_TOKEN``, ``PIPE``, ``TOOLS``, optional ``DEBUG``).
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape

from hostrpc import __version__
from hostrpc.bridge import BridgeConfig, run_bridge
from hostrpc.errors import HostRpcError
from hostrpc.utils.log import configure_logging
from hostrpc.utils.telemetry import configure_telemetry

logger = logging.getLogger(__name__)

err_console = Console(stderr=True)


def _fail(exc: BaseException) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
    sys.exit(1)


def _exit_on_connection_lost() -> None:
    # stdin is read in a worker thread that cannot be interrupted
    err_console.print("[red]Error:[/red] connection to host closed")
    sys.stderr.flush()
    os._exit(1)


@click.command(name="mcp-host-rpc")
@click.version_option(version=__version__, prog_name="mcp-host-rpc")
def main() -> None:
    """Serve the host's tools over MCP stdio (configured via environment)."""
    try:
        config = BridgeConfig.from_env()
    except HostRpcError as exc:
        _fail(exc)

    configure_logging(debug=config.debug)
    logger.debug("Debug mode enabled")

    if config.otlp_endpoint:
        try:
            configure_telemetry(
                service_name="hostrpc-bridge",
                export_to_console=False,
                otlp_endpoint=config.otlp_endpoint,
            )
        except ImportError as exc:
            logger.warning("Tracing disabled: %s", exc)

    try:
        asyncio.run(run_bridge(config, on_connection_lost=_exit_on_connection_lost))
    except HostRpcError as exc:
        _fail(exc)


if __name__ == "__main__":
    main()
