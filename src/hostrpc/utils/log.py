"""Debug logging setup.

The bridge's stdout carries MCP framing, so diagnostics only ever go to
stderr.  Both roles log through ``logging.getLogger(__name__)``; this module
decides whether anything under the ``hostrpc`` logger is actually emitted.
"""

from __future__ import annotations

import logging
from typing import TextIO

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "hostrpc"

_HANDLER_MARK = "_hostrpc_handler"


def configure_logging(*, debug: bool, stream: TextIO | None = None) -> logging.Logger:
    """Attach a stderr handler to the ``hostrpc`` logger.

    With ``debug=False`` only warnings and above are emitted.  Calling this
    more than once replaces the previously installed handler.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            logger.removeHandler(handler)

    console = Console(file=stream, stderr=True)
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=debug)
    setattr(handler, _HANDLER_MARK, True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False
    return logger
