"""
Transport Connection

Exact-length reads and writes over an asyncio stream pair.

TCP delivers bytes in whatever fragment sizes the network produces.
Everything above this module only sees complete reads and complete
writes: a call either returns all requested bytes or raises.
"""

import asyncio
import logging
from typing import Optional, Tuple

from .errors import ConnectionClosed, SendFailed, TransferTimeout

logger = logging.getLogger(__name__)

# Marks "use the connection's own timeout"
DEFAULT_TIMEOUT = object()


class Connection:
    """
    A duplex byte stream owned by a single task.

    Every read and write is bounded by an optional deadline (seconds).
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 timeout: Optional[float] = None):
        self.reader = reader
        self.writer = writer
        self.timeout = timeout
        self._closed = False

    @property
    def remote_address(self) -> Optional[Tuple[str, int]]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    @property
    def closed(self) -> bool:
        return self._closed

    async def read_exact(self, n: int, timeout=DEFAULT_TIMEOUT) -> bytes:
        """
        Read exactly n bytes.

        timeout overrides the connection deadline for this read (None waits
        forever).

        Raises:
            ConnectionClosed: if the peer closes before n bytes arrive
            TransferTimeout: if the deadline passes first
        """
        if self._closed:
            raise ConnectionClosed("Connection closed")
        if n == 0:
            return b''

        if timeout is DEFAULT_TIMEOUT:
            timeout = self.timeout

        try:
            return await asyncio.wait_for(self.reader.readexactly(n), timeout)
        except asyncio.IncompleteReadError as e:
            raise ConnectionClosed(
                f"Peer closed after {len(e.partial)} of {n} bytes"
            ) from None
        except asyncio.TimeoutError:
            raise TransferTimeout(f"Read of {n} bytes timed out after {timeout}s") from None
        except OSError as e:
            raise ConnectionClosed(f"Read failed: {e}") from e

    async def write_exact(self, data: bytes):
        """
        Write all of data and wait until the transport accepts it.

        Raises:
            SendFailed: if the transport rejects the bytes
            TransferTimeout: if the deadline passes first
        """
        if self._closed or self.writer.is_closing():
            raise SendFailed("Connection closed")
        if not data:
            return

        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), self.timeout)
        except asyncio.TimeoutError:
            raise TransferTimeout(
                f"Write of {len(data)} bytes timed out after {self.timeout}s"
            ) from None
        except (OSError, RuntimeError) as e:
            raise SendFailed(f"Write failed: {e}") from e

    async def close(self):
        """Close the connection."""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            # Peer already reset the socket
            logger.debug(f"Error while closing {self.remote_address}: {e}")


async def open_connection(host: str, port: int,
                          timeout: Optional[float] = None,
                          connect_timeout: float = 10.0) -> Connection:
    """
    Connect to a transfer server.

    Returns:
        Connection with the given per-operation timeout

    Raises:
        ConnectionClosed: if the server refuses or cannot be reached
        TransferTimeout: if the connection is not established in time
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=connect_timeout
        )
    except asyncio.TimeoutError:
        raise TransferTimeout(f"Connect to {host}:{port} timed out") from None
    except OSError as e:
        raise ConnectionClosed(f"Failed to connect to {host}:{port}: {e}") from e

    return Connection(reader, writer, timeout=timeout)
