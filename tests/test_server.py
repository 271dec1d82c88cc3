#!/usr/bin/env python3
"""
Integration tests for the transfer server.

Each test runs a real server on 127.0.0.1 and talks to it either through
TransferClient or by driving the wire protocol by hand.
"""

import asyncio
import os
import unittest

from filexfer.transfer import Command, TransferHeader, NOT_FOUND, ConnectionClosed, TransferTimeout
from filexfer.transfer.framing import encode_length, MAX_COMMAND_LENGTH

from .support import ServerTestCase


class TestRoundTrip(ServerTestCase):

    async def test_upload_then_download_is_identical(self):
        sizes = [0, 1, 4095, 4096, 4097, 3 * 4096 + 17, 100_000]

        async with self.client() as client:
            for size in sizes:
                with self.subTest(size=size):
                    data = os.urandom(size)
                    name = f'file-{size}.bin'
                    source = self.write_local(name, data)

                    self.assertEqual(await client.upload(source), size)
                    result = await client.download(name, self.tmp / 'out' / name)

                    self.assertEqual(result.read_bytes(), data)
                    self.assertEqual(self.stored(name).read_bytes(), data)

        records = await self.wait_for_records(2 * len(sizes))
        self.assertTrue(all(r.success for r in records))

    async def test_zero_length_file_on_the_wire(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='empty.txt', size=0))

        await protocol.send_command(Command.DOWNLOAD)
        await protocol.send_filename('empty.txt')
        self.assertEqual(await protocol.receive_size(), 0)

        await protocol.send_command(Command.QUIT)
        # Nothing follows a zero size header
        self.assertEqual(await protocol.connection.reader.read(), b'')
        await protocol.close()

        records = await self.wait_for_records(2)
        self.assertEqual(records[0].command, Command.UPLOAD)
        self.assertTrue(records[0].success)
        self.assertEqual(records[0].size, 0)
        self.assertEqual(self.stored('empty.txt').read_bytes(), b'')

    async def test_chunk_boundaries(self):
        async with self.client() as client:
            for size, expected_chunks in [(4096, 1), (4097, 2)]:
                with self.subTest(size=size):
                    calls = []
                    source = self.write_local(f'{size}.bin', b'z' * size)
                    await client.upload(source, progress=lambda p: calls.append(p.done))
                    self.assertEqual(len(calls), expected_chunks)
                    self.assertEqual(calls[-1], size)

    async def test_concurrent_distinct_uploads(self):
        data_a = os.urandom(50_000)
        data_b = os.urandom(70_000)
        path_a = self.write_local('A.bin', data_a)
        path_b = self.write_local('B.bin', data_b)

        async def upload(path):
            async with self.client() as client:
                await client.upload(path)

        await asyncio.gather(upload(path_a), upload(path_b))
        await self.wait_for_records(2)

        self.assertEqual(self.stored('A.bin').read_bytes(), data_a)
        self.assertEqual(self.stored('B.bin').read_bytes(), data_b)
        self.assertEqual(self.server.get_stats()['uploads_completed'], 2)


class TestFailures(ServerTestCase):

    async def test_disconnect_mid_upload(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='partial.bin', size=10_000))
        await protocol.connection.write_exact(b'x' * 100)
        await protocol.close()

        records = await self.wait_for_records(1)
        self.assertFalse(records[0].success)
        self.assertLess(records[0].bytes_transferred, 10_000)
        self.assertFalse(self.stored('partial.bin').exists())
        self.assertEqual(list(self.server.storage.incoming_dir.iterdir()), [])
        self.assertEqual(self.server.get_stats()['uploads_failed'], 1)

    async def test_failed_upload_keeps_previous_version(self):
        async with self.client() as client:
            await client.upload(self.write_local('keep.txt', b'version one'))

        protocol = await self.raw_protocol()
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='keep.txt', size=1000))
        await protocol.connection.write_exact(b'broken')
        await protocol.close()

        await self.wait_for_records(2)
        self.assertEqual(self.stored('keep.txt').read_bytes(), b'version one')

    async def test_download_missing_file_sends_not_found(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.DOWNLOAD)
        await protocol.send_filename('nope.bin')
        self.assertEqual(await protocol.receive_size(), NOT_FOUND)

        # Connection is still usable
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='after.bin', size=3))
        await protocol.connection.write_exact(b'abc')
        await protocol.send_command(Command.QUIT)
        await protocol.close()

        records = await self.wait_for_records(2)
        self.assertTrue(records[0].not_found)
        self.assertFalse(records[0].success)
        self.assertTrue(records[1].success)
        self.assertEqual(self.server.get_stats()['downloads_not_found'], 1)

    async def test_unknown_command_closes_connection(self):
        protocol = await self.raw_protocol()
        token = b'Delete'
        await protocol.connection.write_exact(encode_length(len(token), MAX_COMMAND_LENGTH) + token)

        with self.assertRaises(ConnectionClosed):
            await protocol.receive_size()
        await protocol.close()
        self.assertEqual(self.records, [])

    async def test_unsafe_upload_is_drained(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='../escape.txt', size=5000))
        await protocol.connection.write_exact(b'e' * 5000)

        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='fine.txt', size=4))
        await protocol.connection.write_exact(b'fine')
        await protocol.send_command(Command.QUIT)
        await protocol.close()

        records = await self.wait_for_records(2)
        self.assertFalse(records[0].success)
        self.assertTrue(records[1].success)
        self.assertFalse((self.tmp / 'escape.txt').exists())
        self.assertEqual(self.stored('fine.txt').read_bytes(), b'fine')

    async def test_unsafe_download_is_not_found(self):
        (self.tmp / 'secret.txt').write_bytes(b'secret')
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.DOWNLOAD)
        await protocol.send_filename('../secret.txt')
        self.assertEqual(await protocol.receive_size(), NOT_FOUND)
        await protocol.close()

    async def test_overlong_download_name_is_not_found(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.DOWNLOAD)
        await protocol.send_filename('n' * 300)
        self.assertEqual(await protocol.receive_size(), NOT_FOUND)

        await protocol.send_command(Command.DOWNLOAD)
        await protocol.send_filename('missing')
        self.assertEqual(await protocol.receive_size(), NOT_FOUND)
        await protocol.close()

        records = await self.wait_for_records(2)
        self.assertTrue(all(r.not_found for r in records))

    async def test_overlong_upload_name_is_drained(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='n' * 300, size=3))
        await protocol.connection.write_exact(b'abc')

        await protocol.send_command(Command.DOWNLOAD)
        await protocol.send_filename('missing')
        self.assertEqual(await protocol.receive_size(), NOT_FOUND)
        await protocol.close()

        records = await self.wait_for_records(2)
        self.assertEqual(records[0].command, Command.UPLOAD)
        self.assertFalse(records[0].success)
        self.assertEqual(list(self.server.storage.incoming_dir.iterdir()), [])
        self.assertTrue(records[1].not_found)

    async def test_quit_closes_connection(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.QUIT)
        self.assertEqual(await protocol.connection.reader.read(), b'')
        await protocol.close()


class TestTimeouts(ServerTestCase):

    io_timeout = 0.2

    async def test_stalled_upload_times_out(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='slow.bin', size=100))

        records = await self.wait_for_records(1)
        self.assertFalse(records[0].success)
        self.assertIn('timed out', records[0].error)
        self.assertFalse(self.stored('slow.bin').exists())

        with self.assertRaises((ConnectionClosed, TransferTimeout)):
            await protocol.receive_size()
        await protocol.close()

    async def test_idle_connection_is_not_timed_out(self):
        protocol = await self.raw_protocol()
        await asyncio.sleep(0.5)

        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='late.bin', size=2))
        await protocol.connection.write_exact(b'ok')
        await protocol.send_command(Command.QUIT)
        await protocol.close()

        records = await self.wait_for_records(1)
        self.assertTrue(records[0].success)


class TestIdleTimeout(ServerTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.config.idle_timeout = 0.2

    async def test_idle_connection_is_closed(self):
        protocol = await self.raw_protocol()
        self.assertEqual(await protocol.connection.reader.read(), b'')
        await protocol.close()
        self.assertEqual(self.records, [])


class TestConnectionLimit(ServerTestCase):

    max_connections = 1

    async def test_second_connection_waits_for_slot(self):
        self.server.storage.resolve('x.txt').write_bytes(b'xyz')

        first = await self.raw_protocol()
        await first.send_command(Command.DOWNLOAD)
        await first.send_filename('x.txt')
        self.assertEqual(await first.receive_size(), 3)
        await first.connection.read_exact(3)

        second = await self.raw_protocol()
        await second.send_command(Command.DOWNLOAD)
        await second.send_filename('x.txt')
        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(second.receive_size(), 0.2)
        self.assertEqual(self.server.get_stats()['active_connections'], 1)

        await first.send_command(Command.QUIT)
        await first.close()

        self.assertEqual(await second.receive_size(), 3)
        self.assertEqual(await second.connection.read_exact(3), b'xyz')
        await second.close()


class TestLifecycle(ServerTestCase):

    async def test_stop_aborts_open_connections(self):
        protocol = await self.raw_protocol()
        await protocol.send_command(Command.UPLOAD)
        await protocol.send_header(TransferHeader(filename='never.bin', size=1000))
        await asyncio.sleep(0.05)

        await self.server.stop()

        self.assertFalse(self.server.is_running)
        self.assertEqual(self.server.get_stats()['active_connections'], 0)
        self.assertFalse(self.stored('never.bin').exists())
        await protocol.close()


if __name__ == '__main__':
    unittest.main()
