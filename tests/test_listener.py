"""
Tests for the Unix socket listener.
"""

import asyncio
import errno
import os
import shutil
import socket
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from keyhold.daemon.listener import (
    SOCKET_MODE,
    ListenerState,
    SocketListener,
    _start_error,
    authorize_peer,
)
from keyhold.errors import (
    DaemonStartError,
    ListenerClosedError,
    PeerAuthorizationError,
    SocketInUseError,
    SocketPathError,
    SocketPermissionError,
)


class ListenerTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix="kh")
        self.socket_path = Path(self.temp_dir) / "d.sock"
        self.writers = []

    async def asyncTearDown(self):
        for writer in self.writers:
            writer.close()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def _connect(self):
        reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        self.writers.append(writer)
        return reader, writer


class TestStart(ListenerTestCase):

    async def test_socket_is_owner_only(self):
        listener = SocketListener(self.socket_path)
        await listener.start()
        try:
            mode = os.stat(self.socket_path).st_mode
            self.assertTrue(stat.S_ISSOCK(mode))
            self.assertEqual(stat.S_IMODE(mode), SOCKET_MODE)
            self.assertEqual(listener.state, ListenerState.LISTENING)
            self.assertEqual(listener.address, self.socket_path)
        finally:
            listener.close()

    async def test_stale_entry_is_replaced(self):
        self.socket_path.write_text("left over")

        listener = SocketListener(self.socket_path)
        await listener.start()
        try:
            self.assertTrue(stat.S_ISSOCK(os.stat(self.socket_path).st_mode))
        finally:
            listener.close()

    async def test_missing_parent_directory(self):
        listener = SocketListener(Path(self.temp_dir) / "nope" / "d.sock")
        with self.assertRaises(SocketPathError):
            await listener.start()
        self.assertEqual(listener.state, ListenerState.CLOSED)

    async def test_path_too_long(self):
        listener = SocketListener(Path(self.temp_dir) / ("s" * 120))
        with self.assertRaises(SocketPathError):
            await listener.start()

    async def test_start_twice_raises(self):
        listener = SocketListener(self.socket_path)
        await listener.start()
        try:
            with self.assertRaises(DaemonStartError):
                await listener.start()
        finally:
            listener.close()

    async def test_relative_path_is_made_absolute(self):
        listener = SocketListener(os.path.relpath(self.socket_path))
        await listener.start()
        try:
            self.assertTrue(listener.address.is_absolute())
        finally:
            listener.close()


class TestStartFailures(ListenerTestCase):
    """Start-up failures are reported as path, permission or in-use errors."""

    @unittest.skipIf(os.geteuid() == 0, "root ignores directory permissions")
    async def test_read_only_directory_is_permission_error(self):
        locked = Path(self.temp_dir) / "locked"
        locked.mkdir(mode=0o500)
        self.addCleanup(os.chmod, locked, 0o700)

        listener = SocketListener(locked / "d.sock")
        with self.assertRaises(SocketPermissionError):
            await listener.start()
        self.assertEqual(listener.state, ListenerState.CLOSED)

    async def test_chmod_failure_is_permission_error(self):
        denied = PermissionError(errno.EPERM, "Operation not permitted")
        listener = SocketListener(self.socket_path)
        with patch("keyhold.daemon.listener.os.chmod", side_effect=denied):
            with self.assertRaises(SocketPermissionError) as ctx:
                await listener.start()
        self.assertEqual(ctx.exception.path, str(self.socket_path))
        self.assertEqual(listener.state, ListenerState.CLOSED)

    async def test_address_in_use(self):
        in_use = OSError(errno.EADDRINUSE, "Address already in use")
        listener = SocketListener(self.socket_path)
        with patch("keyhold.daemon.listener.asyncio.start_unix_server", side_effect=in_use):
            with self.assertRaises(SocketInUseError):
                await listener.start()
        self.assertEqual(listener.state, ListenerState.CLOSED)

    def test_errno_classification(self):
        cases = [
            (errno.EADDRINUSE, SocketInUseError),
            (errno.EACCES, SocketPermissionError),
            (errno.EROFS, SocketPermissionError),
            (errno.ENOENT, SocketPathError),
            (errno.ENAMETOOLONG, SocketPathError),
            (None, SocketPathError),
        ]
        for code, expected in cases:
            with self.subTest(errno=code):
                error = _start_error(OSError(code, "boom"), "bind", "/tmp/d.sock")
                self.assertIs(type(error), expected)

        other = _start_error(OSError(errno.EIO, "I/O error"), "bind", "/tmp/d.sock")
        self.assertIs(type(other), DaemonStartError)


class TestAccept(ListenerTestCase):

    async def asyncSetUp(self):
        self.listener = SocketListener(self.socket_path)
        await self.listener.start()

    async def asyncTearDown(self):
        await super().asyncTearDown()
        self.listener.close()

    async def test_connections_are_numbered_from_one(self):
        for _ in range(5):
            await self._connect()

        ids = []
        for _ in range(5):
            conn = await asyncio.wait_for(self.listener.accept(), timeout=2)
            ids.append(conn.client_id)
            await conn.close()

        self.assertEqual(sorted(ids), [1, 2, 3, 4, 5])
        self.assertEqual(self.listener.client_count, 5)

    async def test_close_wakes_blocked_accept(self):
        waiters = [asyncio.create_task(self.listener.accept()) for _ in range(2)]
        await asyncio.sleep(0)

        self.listener.close()

        for waiter in waiters:
            with self.assertRaises(ListenerClosedError):
                await asyncio.wait_for(waiter, timeout=2)

    async def test_close_is_idempotent_and_removes_socket(self):
        self.listener.close()
        self.listener.close()

        self.assertFalse(self.socket_path.exists())
        self.assertEqual(self.listener.state, ListenerState.CLOSED)
        with self.assertRaises(ListenerClosedError):
            await self.listener.accept()

    @unittest.skipUnless(hasattr(socket, "SO_PEERCRED"), "requires SO_PEERCRED")
    async def test_authorize_peer_same_user(self):
        await self._connect()
        conn = await asyncio.wait_for(self.listener.accept(), timeout=2)
        try:
            creds = authorize_peer(conn)
            self.assertEqual(creds.uid, os.getuid())
            self.assertEqual(creds.pid, os.getpid())

            with self.assertRaises(PeerAuthorizationError):
                authorize_peer(conn, allowed_uid=os.getuid() + 1)
        finally:
            await conn.close()


if __name__ == "__main__":
    unittest.main()
