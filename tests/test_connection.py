#!/usr/bin/env python3
"""
Unit tests for exact-length reads and writes.

Streams are fed by hand so fragment boundaries, early EOF and stalls
can be controlled precisely.
"""

import asyncio
import unittest

from filexfer.transfer.connection import Connection
from filexfer.transfer.errors import ConnectionClosed, SendFailed, TransferTimeout
from filexfer.transfer.framing import Command, TransferHeader
from filexfer.transfer.protocol import TransferProtocol


class FakeWriter:
    """Collects written bytes; drain can be made to fail or stall."""

    def __init__(self, drain_error: Exception = None, stall: bool = False):
        self.buffer = bytearray()
        self.drain_error = drain_error
        self.stall = stall
        self.closed = False

    def write(self, data: bytes):
        self.buffer.extend(data)

    async def drain(self):
        if self.drain_error:
            raise self.drain_error
        if self.stall:
            await asyncio.Event().wait()

    def is_closing(self) -> bool:
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def get_extra_info(self, name):
        return ('127.0.0.1', 12345) if name == 'peername' else None


class TestReadExact(unittest.IsolatedAsyncioTestCase):

    async def test_reassembles_fragments(self):
        reader = asyncio.StreamReader()
        conn = Connection(reader, FakeWriter())

        loop = asyncio.get_running_loop()
        for i, piece in enumerate([b'he', b'l', b'lo w', b'orld']):
            loop.call_later(0.01 * (i + 1), reader.feed_data, piece)

        self.assertEqual(await conn.read_exact(11), b'hello world')

    async def test_early_eof_is_connection_closed(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b'abc')
        reader.feed_eof()
        conn = Connection(reader, FakeWriter())

        with self.assertRaises(ConnectionClosed):
            await conn.read_exact(10)

    async def test_zero_bytes(self):
        conn = Connection(asyncio.StreamReader(), FakeWriter())
        self.assertEqual(await conn.read_exact(0), b'')

    async def test_stall_times_out(self):
        conn = Connection(asyncio.StreamReader(), FakeWriter(), timeout=0.05)
        with self.assertRaises(TransferTimeout):
            await conn.read_exact(1)

    async def test_read_after_close(self):
        conn = Connection(asyncio.StreamReader(), FakeWriter())
        await conn.close()
        self.assertTrue(conn.closed)
        with self.assertRaises(ConnectionClosed):
            await conn.read_exact(1)


class TestWriteExact(unittest.IsolatedAsyncioTestCase):

    async def test_writes_everything(self):
        writer = FakeWriter()
        conn = Connection(asyncio.StreamReader(), writer)
        await conn.write_exact(b'payload')
        self.assertEqual(bytes(writer.buffer), b'payload')

    async def test_transport_failure_is_send_failed(self):
        writer = FakeWriter(drain_error=ConnectionResetError("reset by peer"))
        conn = Connection(asyncio.StreamReader(), writer)
        with self.assertRaises(SendFailed):
            await conn.write_exact(b'x')

    async def test_closing_writer(self):
        writer = FakeWriter()
        writer.closed = True
        conn = Connection(asyncio.StreamReader(), writer)
        with self.assertRaises(SendFailed):
            await conn.write_exact(b'x')

    async def test_stalled_drain_times_out(self):
        conn = Connection(asyncio.StreamReader(), FakeWriter(stall=True), timeout=0.05)
        with self.assertRaises(TransferTimeout):
            await conn.write_exact(b'x')

    async def test_transport_errors_are_connection_errors(self):
        self.assertTrue(issubclass(ConnectionClosed, ConnectionError))
        self.assertTrue(issubclass(SendFailed, ConnectionError))


class TestProtocol(unittest.IsolatedAsyncioTestCase):

    async def test_header_over_fragmented_stream(self):
        sender_writer = FakeWriter()
        sender = TransferProtocol(Connection(asyncio.StreamReader(), sender_writer))
        await sender.send_command(Command.UPLOAD)
        await sender.send_header(TransferHeader(filename='notes.txt', size=5000))
        wire = bytes(sender_writer.buffer)

        reader = asyncio.StreamReader()
        for i in range(len(wire)):
            reader.feed_data(wire[i:i + 1])
        receiver = TransferProtocol(Connection(reader, FakeWriter()))

        self.assertIs(await receiver.receive_command(), Command.UPLOAD)
        header = await receiver.receive_header()
        self.assertEqual(header, TransferHeader(filename='notes.txt', size=5000))

    async def test_receive_payload_chunks(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b'a' * 4097)
        protocol = TransferProtocol(Connection(reader, FakeWriter()), chunk_size=4096)

        chunks = [chunk async for chunk in protocol.receive_payload(4097)]
        self.assertEqual([len(c) for c in chunks], [4096, 1])

    async def test_truncated_payload(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b'a' * 100)
        reader.feed_eof()
        protocol = TransferProtocol(Connection(reader, FakeWriter()))

        with self.assertRaises(ConnectionClosed):
            async for _ in protocol.receive_payload(200):
                pass


if __name__ == '__main__':
    unittest.main()
