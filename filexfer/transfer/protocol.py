"""
Transfer Protocol

Typed send/receive of protocol values over a Connection.

Both server and client drive the wire through this class; neither
touches the Connection directly for framed values.
"""

import logging
from typing import AsyncIterator, Iterable, Optional, Tuple

from .connection import Connection, DEFAULT_TIMEOUT
from .errors import ProtocolMismatch
from .framing import (
    Command, TransferHeader, DEFAULT_CHUNK_SIZE, SIZE_LENGTH,
    MAX_COMMAND_LENGTH, MAX_FILENAME_LENGTH, MAX_SIZE,
    encode_command, decode_command, encode_filename, decode_filename,
    encode_size, decode_size, decode_length, encode_header, chunk_lengths,
)

logger = logging.getLogger(__name__)


class TransferProtocol:
    """
    Protocol handler for one connection.

    Strictly request/response: a payload announced by a size field is
    always fully consumed before the next command is read.
    """

    def __init__(self, connection: Connection,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.connection = connection
        self.chunk_size = chunk_size

    @property
    def remote_address(self) -> Optional[Tuple[str, int]]:
        return self.connection.remote_address

    async def close(self):
        await self.connection.close()

    async def _receive_string(self, limit: int, timeout=DEFAULT_TIMEOUT) -> bytes:
        length = decode_length(await self.connection.read_exact(SIZE_LENGTH, timeout), limit)
        return await self.connection.read_exact(length)

    # === Commands ===

    async def send_command(self, command: Command):
        await self.connection.write_exact(encode_command(command))

    async def receive_command(self, idle_timeout=DEFAULT_TIMEOUT) -> Command:
        """
        Read the next command token.

        idle_timeout bounds the wait for the command's length prefix
        (None waits forever); the rest uses the connection deadline.
        """
        return decode_command(await self._receive_string(MAX_COMMAND_LENGTH, idle_timeout))

    # === Headers ===

    async def send_filename(self, filename: str):
        await self.connection.write_exact(encode_filename(filename))

    async def receive_filename(self) -> str:
        return decode_filename(await self._receive_string(MAX_FILENAME_LENGTH))

    async def send_size(self, size: int):
        await self.connection.write_exact(encode_size(size))

    async def receive_size(self) -> int:
        return decode_size(await self.connection.read_exact(SIZE_LENGTH))

    async def send_header(self, header: TransferHeader):
        await self.connection.write_exact(encode_header(header))

    async def receive_header(self) -> TransferHeader:
        """
        Read an upload header.

        Raises:
            ProtocolMismatch: if the size is the reserved NOT_FOUND value
        """
        filename = await self.receive_filename()
        size = await self.receive_size()
        if size > MAX_SIZE:
            raise ProtocolMismatch(f"Reserved size in upload header for {filename!r}")
        return TransferHeader(filename=filename, size=size)

    # === Payloads ===

    async def send_payload(self, chunks: Iterable[bytes]) -> int:
        """
        Write pre-segmented chunks.

        Returns:
            Total bytes written
        """
        sent = 0
        for chunk in chunks:
            await self.connection.write_exact(chunk)
            sent += len(chunk)
        return sent

    async def receive_payload(self, size: int) -> AsyncIterator[bytes]:
        """Yield exactly size bytes as chunks of at most chunk_size."""
        for length in chunk_lengths(size, self.chunk_size):
            yield await self.connection.read_exact(length)

    async def discard_payload(self, size: int):
        """Consume and drop a payload to keep the stream in sync."""
        async for _ in self.receive_payload(size):
            pass
        logger.debug(f"Discarded {size} payload bytes from {self.remote_address}")
