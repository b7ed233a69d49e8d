"""Shared fixtures: socket paths, a host bound to one, logger reset."""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from collections.abc import AsyncIterator, Iterator

import pytest

from hostrpc.host import McpHost
from tests.helpers import SECRET


@pytest.fixture(autouse=True)
def _reset_hostrpc_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("hostrpc")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def socket_path() -> Iterator[str]:
    path = os.path.join(tempfile.gettempdir(), f"hostrpc-test-{uuid.uuid4().hex[:12]}.sock")
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
async def host(socket_path: str) -> AsyncIterator[McpHost]:
    instance = McpHost(secret=SECRET, pipe_path=socket_path)
    yield instance
    await instance.stop()
