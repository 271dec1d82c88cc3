"""
Transfer Server

Design Decision: Concurrency Model
==================================

Options Considered:
1. Thread per connection
   - Simple blocking code
   - Unbounded threads, no way to interrupt a stalled peer

2. Fixed thread pool
   - Bounded, but blocking reads still cannot time out cleanly

3. asyncio task per connection behind a semaphore
   - Every socket and file operation is an explicit await point
   - Deadlines via asyncio.wait_for, shutdown via task cancellation
   - max_connections bounds the number of connections being served

Decision: Option 3
- Connections beyond the limit are accepted but wait for a free slot
- Each connection is handled independently; the only shared state is
  the storage directory and the statistics counters

Per-connection loop:
```
Upload    -> header, payload       (no reply on the wire)
Download  -> filename              <- size | NOT_FOUND, payload
Quit      -> close
```
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config import Config
from .storage import StorageDirectory
from .transfer import (
    Command, Connection, TransferProtocol, NOT_FOUND,
    TransferError, ProtocolMismatch, UnsafeFilename, RemoteFileNotFound,
)

logger = logging.getLogger(__name__)


@dataclass
class TransferRecord:
    """Outcome of one Upload or Download exchange."""
    command: Command
    filename: str
    size: Optional[int]
    peer: Optional[Tuple[str, int]]
    success: bool
    bytes_transferred: int = 0
    error: Optional[str] = None
    not_found: bool = False


@dataclass
class ServerStats:
    """Counters across all connections."""
    connections_accepted: int = 0
    active_connections: int = 0
    uploads_completed: int = 0
    uploads_failed: int = 0
    downloads_completed: int = 0
    downloads_failed: int = 0
    downloads_not_found: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


# Type for transfer callbacks
TransferCallback = Callable[[TransferRecord], None]


@dataclass
class _Exchange:
    """Progress of the exchange currently running on a connection."""
    command: Command
    filename: str = ''
    size: Optional[int] = None
    transferred: int = 0


class TransferServer:
    """
    TCP server storing and serving files.

    Provides:
    - start()/serve_forever()/stop() lifecycle
    - on_transfer(callback) for per-exchange outcomes
    - get_stats() counters
    """

    def __init__(self, config: Config = None,
                 storage: Optional[StorageDirectory] = None):
        self.config = config or Config()
        self.storage = storage or StorageDirectory(self.config.storage_dir)
        self.stats = ServerStats()

        self.server: Optional[asyncio.AbstractServer] = None
        self._slots = asyncio.Semaphore(self.config.max_connections)
        self._tasks: Set[asyncio.Task] = set()
        self._callbacks: List[TransferCallback] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), useful when configured with port 0."""
        if not self.server or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[:2]

    def on_transfer(self, callback: TransferCallback):
        """Register a callback for completed and failed transfers."""
        self._callbacks.append(callback)

    def get_stats(self) -> dict:
        """Get server statistics."""
        return self.stats.to_dict()

    # === Lifecycle ===

    async def start(self):
        """Start listening."""
        if self._running:
            return

        await self.storage.cleanup_incoming()

        self.server = await asyncio.start_server(
            self._handle_connection,
            self.config.host,
            self.config.port
        )
        self._running = True

        logger.info(f"Transfer server listening on {self.address}, "
                    f"storing into {self.storage.root}")

    async def serve_forever(self):
        """Start (if needed) and serve until cancelled."""
        await self.start()
        await self.server.serve_forever()

    async def stop(self):
        """Stop accepting and abort every open connection."""
        self._running = False
        if self.server:
            self.server.close()

        # wait_closed() also waits for open connections, so abort them first
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.server:
            await self.server.wait_closed()

        logger.info(f"Transfer server stopped. Received {self.stats.bytes_received:,} bytes, "
                    f"sent {self.stats.bytes_sent:,} bytes")

    async def __aenter__(self) -> 'TransferServer':
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    # === Connections ===

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming connection."""
        if not self._running:
            # Accepted while stopping
            writer.close()
            return

        task = asyncio.current_task()
        self._tasks.add(task)
        self.stats.connections_accepted += 1

        connection = Connection(reader, writer, timeout=self.config.io_timeout)
        protocol = TransferProtocol(connection, chunk_size=self.config.chunk_size)
        peer = protocol.remote_address

        try:
            if self._slots.locked():
                logger.debug(f"Connection from {peer} waiting for a free slot")
            async with self._slots:
                self.stats.active_connections += 1
                try:
                    logger.debug(f"New transfer connection from {peer}")
                    await self._serve(protocol)
                finally:
                    self.stats.active_connections -= 1
        finally:
            await protocol.close()
            self._tasks.discard(task)
            logger.debug(f"Connection closed: {peer}")

    async def _serve(self, protocol: TransferProtocol):
        """Run commands until Quit or a connection-ending failure."""
        peer = protocol.remote_address
        exchange: Optional[_Exchange] = None

        try:
            while True:
                exchange = None
                command = await protocol.receive_command(self.config.idle_timeout)
                exchange = _Exchange(command=command)

                if command is Command.UPLOAD:
                    await self._handle_upload(protocol, exchange)
                elif command is Command.DOWNLOAD:
                    await self._handle_download(protocol, exchange)
                else:
                    logger.debug(f"Quit from {peer}")
                    return

        except ProtocolMismatch as e:
            logger.warning(f"Protocol error from {peer}: {e}")
            self._fail(exchange, peer, e)
        except TransferError as e:
            if exchange is None:
                # Peer went away between commands
                logger.debug(f"Connection from {peer} ended: {e}")
            else:
                logger.warning(f"{exchange.command.value} of {exchange.filename!r} "
                               f"from {peer} aborted: {e}")
                self._fail(exchange, peer, e)
        except OSError as e:
            logger.error(f"Storage error while serving {peer}: {e}")
            self._fail(exchange, peer, e)
        except asyncio.CancelledError:
            self._fail(exchange, peer, 'cancelled')
            raise
        except Exception as e:
            logger.exception(f"Unexpected error handling connection from {peer}: {e}")
            self._fail(exchange, peer, e)

    # === Commands ===

    async def _handle_upload(self, protocol: TransferProtocol, exchange: _Exchange):
        """Receive a file into storage; silent on the wire."""
        peer = protocol.remote_address
        header = await protocol.receive_header()
        exchange.filename = header.filename
        exchange.size = header.size

        try:
            self.storage.resolve(header.filename)
        except UnsafeFilename as e:
            logger.warning(f"Refused upload from {peer}: {e}")
            await protocol.discard_payload(header.size)
            self._record(exchange, peer, success=False, error=str(e))
            return

        async with self.storage.upload(header.filename) as sink:
            async for chunk in protocol.receive_payload(header.size):
                await sink.write(chunk)
                exchange.transferred += len(chunk)
                self.stats.bytes_received += len(chunk)

        logger.info(f"Stored {header.filename!r} ({header.size:,} bytes) from {peer}")
        self._record(exchange, peer, success=True)

    async def _handle_download(self, protocol: TransferProtocol, exchange: _Exchange):
        """Send a stored file, or NOT_FOUND."""
        peer = protocol.remote_address
        filename = await protocol.receive_filename()
        exchange.filename = filename

        try:
            async with self.storage.open_download(filename) as source:
                if source.size >= NOT_FOUND:
                    logger.error(f"{filename!r} is too large for a 32-bit size field")
                    await protocol.send_size(NOT_FOUND)
                    self._record(exchange, peer, success=False, error='file too large')
                    return

                exchange.size = source.size
                await protocol.send_size(source.size)
                async for chunk in source.read_chunks(protocol.chunk_size):
                    await protocol.connection.write_exact(chunk)
                    exchange.transferred += len(chunk)
                    self.stats.bytes_sent += len(chunk)

        except (UnsafeFilename, RemoteFileNotFound) as e:
            logger.info(f"Download of {filename!r} by {peer}: {e}")
            await protocol.send_size(NOT_FOUND)
            self._record(exchange, peer, success=False, error=str(e), not_found=True)
            return

        logger.info(f"Sent {filename!r} ({exchange.size:,} bytes) to {peer}")
        self._record(exchange, peer, success=True)

    # === Bookkeeping ===

    def _fail(self, exchange: Optional[_Exchange], peer, error):
        if exchange is None or exchange.command is Command.QUIT:
            return
        self._record(exchange, peer, success=False, error=str(error))

    def _record(self, exchange: _Exchange, peer, success: bool,
                error: Optional[str] = None, not_found: bool = False):
        if exchange.command is Command.UPLOAD:
            if success:
                self.stats.uploads_completed += 1
            else:
                self.stats.uploads_failed += 1
        elif success:
            self.stats.downloads_completed += 1
        elif not_found:
            self.stats.downloads_not_found += 1
        else:
            self.stats.downloads_failed += 1

        record = TransferRecord(
            command=exchange.command,
            filename=exchange.filename,
            size=exchange.size,
            peer=peer,
            success=success,
            bytes_transferred=exchange.transferred,
            error=error,
            not_found=not_found,
        )
        for callback in self._callbacks:
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Transfer callback failed: {e}")
