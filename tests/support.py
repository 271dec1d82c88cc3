"""
Shared fixtures for tests that run a real server on the loopback interface.
"""

import asyncio
import shutil
import tempfile
import unittest
from pathlib import Path
from typing import List

from filexfer.config import Config
from filexfer.server import TransferServer, TransferRecord
from filexfer.client import TransferClient
from filexfer.transfer import TransferProtocol, open_connection


class ServerTestCase(unittest.IsolatedAsyncioTestCase):
    """Starts a TransferServer on 127.0.0.1 with a temporary storage directory."""

    io_timeout = 5.0
    max_connections = 64

    async def asyncSetUp(self):
        self.tmp = Path(tempfile.mkdtemp(prefix='filexfer-test-'))
        self.config = Config(
            host='127.0.0.1',
            port=0,
            storage_dir=self.tmp / 'storage',
            download_dir=self.tmp / 'downloads',
            max_connections=self.max_connections,
            io_timeout=self.io_timeout,
            connect_timeout=5.0,
        )
        self.server = TransferServer(self.config)
        self.records: List[TransferRecord] = []
        self._record_event = asyncio.Event()
        self.server.on_transfer(self._on_record)
        await self.server.start()
        self.config.port = self.server.address[1]

    async def asyncTearDown(self):
        await self.server.stop()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _on_record(self, record: TransferRecord):
        self.records.append(record)
        self._record_event.set()

    async def wait_for_records(self, count: int, timeout: float = 5.0) -> List[TransferRecord]:
        """Wait until the server has reported at least count transfers."""
        async def wait():
            while len(self.records) < count:
                self._record_event.clear()
                await self._record_event.wait()
        await asyncio.wait_for(wait(), timeout)
        return self.records

    def client(self) -> TransferClient:
        return TransferClient(self.config)

    async def raw_protocol(self) -> TransferProtocol:
        """A bare protocol handle for driving the wire by hand."""
        connection = await open_connection('127.0.0.1', self.config.port, timeout=5.0)
        return TransferProtocol(connection, chunk_size=self.config.chunk_size)

    def write_local(self, name: str, data: bytes) -> Path:
        path = self.tmp / 'local' / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def stored(self, name: str) -> Path:
        return self.config.storage_dir / name
