"""FramedConnection -- one socket endpoint speaking newline-delimited JSON.

Used by both roles: the host wraps every accepted Unix socket connection, the
bridge wraps its single outgoing one.  State moves strictly
``connecting -> open -> closed``; sending after close is a logged no-op.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from hostrpc.errors import TransportError
from hostrpc.protocol.framing import Frame, LineFramer, decode_frame, encode_frame

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class FramedConnection:
    """Frame-level reader/writer over an asyncio stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader | None = None,
        writer: asyncio.StreamWriter | None = None,
        *,
        label: str = "connection",
    ) -> None:
        self.label = label
        self._reader = reader
        self._writer = writer
        self._framer = LineFramer()
        self._write_lock = asyncio.Lock()
        self._state = ConnectionState.OPEN if writer is not None else ConnectionState.CONNECTING

    @classmethod
    async def connect(cls, path: str, *, label: str = "connection") -> FramedConnection:
        """Open a client connection to the Unix socket at *path*.

        Raises:
            TransportError: If the socket cannot be reached.
        """
        connection = cls(label=label)
        try:
            connection._reader, connection._writer = await asyncio.open_unix_connection(path)
        except OSError as exc:
            connection._state = ConnectionState.CLOSED
            raise TransportError(f"cannot connect to {path}: {exc}") from exc
        connection._state = ConnectionState.OPEN
        logger.debug("Connected to %s", path)
        return connection

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    async def frames(self) -> AsyncIterator[Frame]:
        """Yield decoded frames until EOF or a read error, then close."""
        if self._reader is None:
            raise TransportError(f"{self.label} is not connected")
        try:
            while True:
                try:
                    chunk = await self._reader.read(READ_CHUNK_SIZE)
                except (ConnectionError, OSError) as exc:
                    logger.debug("%s read failed: %s", self.label, exc)
                    break
                if not chunk:
                    for line in self._framer.flush():
                        yield decode_frame(line)
                    break
                for line in self._framer.feed(chunk):
                    yield decode_frame(line)
        finally:
            self._mark_closed()

    async def send(self, message: Any) -> bool:
        """Write one frame; returns ``False`` (and logs) if the peer is gone."""
        data = encode_frame(message)
        async with self._write_lock:
            if not self.is_open or self._writer is None or self._writer.is_closing():
                logger.warning("%s is not writable, dropping message", self.label)
                return False
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as exc:
                logger.warning("%s write failed: %s", self.label, exc)
                self._mark_closed()
                return False
        return True

    async def close(self) -> None:
        writer = self._writer
        self._mark_closed()
        if writer is not None:
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    def _mark_closed(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED
        self._framer.reset()
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()
        logger.debug("%s closed", self.label)
