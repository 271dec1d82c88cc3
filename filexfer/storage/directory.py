"""
Storage Directory

Design Decision: Upload Commit Strategy
=======================================

Options Considered:
1. Write straight into the target file
   - Simplest
   - A dropped connection leaves a truncated file behind
   - Two uploads of the same name interleave their bytes

2. Write to a temp file, rename over the target on success
   - Readers see either the old or the new complete file
   - Failed uploads leave the previous version intact

3. Per-filename lock around option 2
   - Same-name uploads also commit in arrival order

Decision: Option 3
- Temp files live in <root>/.incoming/ (same filesystem, so rename is atomic)
- One asyncio.Lock per filename, dropped when no upload holds it

Layout:
```
storage/
├── report.pdf        # Committed uploads, flat namespace
├── notes.txt
└── .incoming/        # In-flight uploads
    └── 3f2a....part
```

Every client-supplied name goes through resolve() before any filesystem
access. Only a single plain path component is accepted.
"""

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List

import aiofiles
import aiofiles.os

from ..transfer.errors import RemoteFileNotFound, TransferError, UnsafeFilename
from ..transfer.framing import DEFAULT_CHUNK_SIZE, chunk_lengths

logger = logging.getLogger(__name__)

INCOMING_DIR = '.incoming'

# Longest single path component common filesystems accept (NAME_MAX)
MAX_NAME_BYTES = 255


@dataclass
class StorageStats:
    """Statistics about stored files."""
    file_count: int
    total_bytes: int
    pending_uploads: int


class UploadSink:
    """Write side of an in-flight upload."""

    def __init__(self, handle, temp_path: Path):
        self._handle = handle
        self.temp_path = temp_path
        self.bytes_written = 0

    async def write(self, chunk: bytes):
        await self._handle.write(chunk)
        self.bytes_written += len(chunk)


class DownloadSource:
    """Read side of a stored file, with its size fixed at open time."""

    def __init__(self, handle, size: int):
        self._handle = handle
        self.size = size

    async def read_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """
        Yield exactly size bytes as chunks of at most chunk_size.

        Raises:
            TransferError: if the file ends before size bytes
        """
        for length in chunk_lengths(self.size, chunk_size):
            data = await self._handle.read(length)
            if len(data) != length:
                raise TransferError(
                    f"Stored file shrank while reading ({len(data)} of {length} bytes)"
                )
            yield data


class StorageDirectory:
    """
    Flat, shared file store keyed by filename.

    Provides:
    - Filename sanitization (the only path from names to paths)
    - Atomic, per-name serialized uploads
    - Download handles with a fixed size
    - Storage statistics
    """

    def __init__(self, root: Path):
        """
        Initialize storage.

        Args:
            root: Directory holding all stored files
        """
        self.root = Path(root)
        self.incoming_dir = self.root / INCOMING_DIR

        # name -> (lock, number of uploads using it)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

        self._ensure_directories()

    def _ensure_directories(self):
        """Create storage directories if they don't exist."""
        for dir_path in [self.root, self.incoming_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def resolve(self, filename: str) -> Path:
        """
        Map a client-supplied filename to a path inside the storage root.

        Raises:
            UnsafeFilename: if the name is not a single plain path component,
                or is longer than MAX_NAME_BYTES once encoded
        """
        if not filename or filename in ('.', '..', INCOMING_DIR):
            raise UnsafeFilename(f"Refusing filename {filename!r}")
        if any(sep in filename for sep in ('/', '\\', '\x00')):
            raise UnsafeFilename(f"Refusing filename {filename!r}")
        try:
            encoded = filename.encode('utf-8', 'surrogateescape')
        except UnicodeEncodeError:
            raise UnsafeFilename(f"Refusing unencodable filename {filename!r}") from None
        if len(encoded) > MAX_NAME_BYTES:
            raise UnsafeFilename(
                f"Refusing filename of {len(encoded)} bytes (limit {MAX_NAME_BYTES})"
            )

        path = self.root / filename
        if path.parent != self.root:
            raise UnsafeFilename(f"Refusing filename {filename!r}")
        return path

    # === Locking ===

    def _checkout_lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        return lock

    def _return_lock(self, name: str):
        self._lock_users[name] -= 1
        if self._lock_users[name] == 0:
            del self._lock_users[name]
            del self._locks[name]

    # === Upload ===

    @asynccontextmanager
    async def upload(self, filename: str) -> AsyncIterator[UploadSink]:
        """
        Receive a file.

        Bytes written to the yielded sink become visible under filename
        only when the block exits cleanly. On any exception the temp
        file is removed and a previously stored file stays as it was.

        Raises:
            UnsafeFilename: before anything is written
        """
        target = self.resolve(filename)
        lock = self._checkout_lock(target.name)
        try:
            async with lock:
                temp_path = self.incoming_dir / f"{uuid.uuid4().hex}.part"
                try:
                    async with aiofiles.open(temp_path, 'wb') as f:
                        sink = UploadSink(f, temp_path)
                        yield sink
                    await aiofiles.os.replace(temp_path, target)
                except BaseException:
                    # Also runs on task cancellation
                    temp_path.unlink(missing_ok=True)
                    raise
                logger.debug(f"Committed {target.name} ({sink.bytes_written} bytes)")
        finally:
            self._return_lock(target.name)

    # === Download ===

    @asynccontextmanager
    async def open_download(self, filename: str) -> AsyncIterator[DownloadSource]:
        """
        Open a stored file for reading.

        Raises:
            UnsafeFilename: if the name is refused
            RemoteFileNotFound: if no regular file has that name, or it
                cannot be opened
        """
        path = self.resolve(filename)
        try:
            handle = await aiofiles.open(path, 'rb')
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise RemoteFileNotFound(f"No stored file named {filename!r}") from None
        except OSError as e:
            logger.warning(f"Cannot open stored file {filename!r}: {e}")
            raise RemoteFileNotFound(f"Stored file {filename!r} is unavailable") from None

        try:
            size = os.fstat(handle.fileno()).st_size
            yield DownloadSource(handle, size)
        finally:
            await handle.close()

    # === Queries ===

    async def exists(self, filename: str) -> bool:
        """Check if a stored file exists."""
        return await aiofiles.os.path.isfile(self.resolve(filename))

    def list_files(self) -> List[str]:
        """List stored filenames."""
        return sorted(
            entry.name for entry in self.root.iterdir()
            if entry.is_file()
        )

    async def get_stats(self) -> StorageStats:
        """Get storage statistics."""
        file_count = 0
        total_bytes = 0

        for entry in self.root.iterdir():
            if entry.is_file():
                file_count += 1
                total_bytes += entry.stat().st_size

        pending = sum(1 for _ in self.incoming_dir.glob("*.part"))

        return StorageStats(
            file_count=file_count,
            total_bytes=total_bytes,
            pending_uploads=pending,
        )

    async def cleanup_incoming(self) -> int:
        """
        Remove temp files left behind by a previous process.

        Must not run while uploads are in flight.
        """
        removed = 0
        for temp_file in self.incoming_dir.glob("*.part"):
            await aiofiles.os.remove(temp_file)
            removed += 1

        if removed:
            logger.info(f"Removed {removed} stale partial uploads")
        return removed
