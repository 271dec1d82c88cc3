"""
Transfer Client

Drives the protocol from the initiating side over one persistent
connection.

Session states:
```
IDLE -> READY -> UPLOADING | DOWNLOADING -> READY -> ... -> CLOSED
```
CLOSED is terminal. It is reached by quit(), close(), or any transport
failure or protocol mismatch. A missing local or remote file only aborts
the current command; the session stays READY.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import aiofiles.os

from .config import Config
from .transfer import (
    Command, TransferHeader, TransferProtocol, open_connection, NOT_FOUND, MAX_SIZE,
    TransferError, TransportError, ConnectionClosed, ProtocolMismatch,
    LocalFileNotFound, RemoteFileNotFound,
)
from .transfer.framing import chunk_lengths, encode_filename, encode_header

logger = logging.getLogger(__name__)


class ClientState(Enum):
    IDLE = 'idle'
    READY = 'ready'
    UPLOADING = 'uploading'
    DOWNLOADING = 'downloading'
    CLOSED = 'closed'


@dataclass
class TransferProgress:
    """Progress of a single upload or download."""
    filename: str
    total: int
    done: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total == 0:
            return 1.0
        return self.done / self.total

    @property
    def progress_percent(self) -> float:
        return self.progress * 100

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = time.time() - self.start_time
        if elapsed == 0:
            return 0
        return self.done / elapsed


# Progress callback type
ProgressCallback = Callable[[TransferProgress], None]


class TransferClient:
    """
    Client for a transfer server.

    Usage:
        async with TransferClient(config) as client:
            await client.upload(Path('report.pdf'))
            await client.download('report.pdf', Path('copy.pdf'))
    """

    def __init__(self, config: Config = None):
        self.config = config or Config()
        self.state = ClientState.IDLE
        self._protocol: Optional[TransferProtocol] = None

    @property
    def is_connected(self) -> bool:
        return self.state not in (ClientState.IDLE, ClientState.CLOSED)

    async def connect(self):
        """Open the session connection."""
        if self.state is not ClientState.IDLE:
            raise ConnectionClosed(f"Cannot connect from state {self.state.value}")

        connection = await open_connection(
            self.config.host, self.config.port,
            timeout=self.config.io_timeout,
            connect_timeout=self.config.connect_timeout,
        )
        self._protocol = TransferProtocol(connection, chunk_size=self.config.chunk_size)
        self.state = ClientState.READY
        logger.debug(f"Connected to {self.config.host}:{self.config.port}")

    async def close(self):
        """Close the connection without sending Quit."""
        if self._protocol is not None:
            await self._protocol.close()
        self.state = ClientState.CLOSED

    async def quit(self):
        """Send Quit and close."""
        if self.state is ClientState.READY:
            try:
                await self._protocol.send_command(Command.QUIT)
            except TransportError as e:
                logger.debug(f"Quit not delivered: {e}")
        await self.close()

    async def __aenter__(self) -> 'TransferClient':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self.state is ClientState.READY:
            await self.quit()
        else:
            await self.close()

    def _require_ready(self):
        if self.state is not ClientState.READY:
            raise ConnectionClosed(f"Client is {self.state.value}, not ready")

    async def _abort(self, error: Exception):
        logger.warning(f"Session aborted: {error}")
        await self.close()

    # === Upload ===

    async def upload(self, path: Path, remote_name: Optional[str] = None,
                     progress: Optional[ProgressCallback] = None) -> int:
        """
        Upload a local file.

        Args:
            path: Local file to send
            remote_name: Name to store under (defaults to the file's name)
            progress: Called after every chunk

        Returns:
            Bytes sent

        Raises:
            LocalFileNotFound: if path is missing; nothing is sent
            ValueError: if the file does not fit a 32-bit size; nothing is sent
        """
        self._require_ready()
        path = Path(path)
        remote_name = remote_name or path.name

        try:
            handle = await aiofiles.open(path, 'rb')
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise LocalFileNotFound(f"No local file {str(path)!r}") from None

        try:
            size = os.fstat(handle.fileno()).st_size
            if size > MAX_SIZE:
                raise ValueError(f"{path} is {size} bytes; the limit is {MAX_SIZE}")

            header = TransferHeader(filename=remote_name, size=size)
            # Raises ValueError for unencodable names before anything is sent
            encode_header(header)
            tracker = TransferProgress(filename=remote_name, total=size)

            self.state = ClientState.UPLOADING
            try:
                await self._protocol.send_command(Command.UPLOAD)
                await self._protocol.send_header(header)
                for length in chunk_lengths(size, self._protocol.chunk_size):
                    chunk = await handle.read(length)
                    if len(chunk) != length:
                        raise TransferError(f"{path} shrank while uploading")
                    await self._protocol.connection.write_exact(chunk)
                    tracker.done += length
                    if progress:
                        progress(tracker)
            except (TransferError, OSError) as e:
                # The server is mid-payload; the stream cannot be resynchronized
                await self._abort(e)
                raise

            self.state = ClientState.READY
        finally:
            await handle.close()

        logger.info(f"Uploaded {remote_name!r} ({size:,} bytes)")
        return size

    # === Download ===

    async def download(self, filename: str, dest: Optional[Path] = None,
                       progress: Optional[ProgressCallback] = None) -> Path:
        """
        Download a stored file.

        The data is written to '<dest>.part' and renamed to dest only
        once every byte has arrived.

        Args:
            filename: Name on the server
            dest: Local path (defaults to download_dir / basename)
            progress: Called after every chunk

        Returns:
            Path of the downloaded file

        Raises:
            RemoteFileNotFound: if the server has no such file; the
                session stays usable
        """
        self._require_ready()
        if dest is None:
            dest = Path(self.config.download_dir) / Path(filename).name
        dest = Path(dest)
        temp_path = dest.with_name(dest.name + '.part')
        encode_filename(filename)

        self.state = ClientState.DOWNLOADING
        try:
            await self._protocol.send_command(Command.DOWNLOAD)
            await self._protocol.send_filename(filename)
            size = await self._protocol.receive_size()

            if size == NOT_FOUND:
                self.state = ClientState.READY
                raise RemoteFileNotFound(f"Server has no file named {filename!r}")

            tracker = TransferProgress(filename=filename, total=size)
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                async with aiofiles.open(temp_path, 'wb') as f:
                    async for chunk in self._protocol.receive_payload(size):
                        await f.write(chunk)
                        tracker.done += len(chunk)
                        if progress:
                            progress(tracker)
                await aiofiles.os.replace(temp_path, dest)
            except BaseException:
                temp_path.unlink(missing_ok=True)
                raise

        except (TransportError, ProtocolMismatch) as e:
            await self._abort(e)
            raise
        except OSError as e:
            # Local write failed mid-payload; the stream cannot be resynchronized
            if self.state is ClientState.DOWNLOADING:
                await self._abort(e)
            raise

        self.state = ClientState.READY
        logger.info(f"Downloaded {filename!r} ({size:,} bytes) to {dest}")
        return dest
