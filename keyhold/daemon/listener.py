"""
Unix socket listener for the keyhold daemon.

SocketListener owns the daemon's single rendezvous socket:

    UNBOUND -> STARTING -> LISTENING -> CLOSED

Start-up removes any stale entry at the configured path (refusing to clobber
a live daemon is the caller's job, via the PID file), binds, and restricts
the socket to owner-only permissions. Those permissions are advisory: some
platforms ignore them on sockets, so every accepted connection must also
pass authorize_peer().
"""

import asyncio
import errno
from dataclasses import dataclass
from enum import Enum
import logging
import os
from pathlib import Path
import socket
import struct
import sys
from typing import Any, Dict, Optional, Union

from keyhold.daemon.protocol import read_frame
from keyhold.errors import (
    DaemonStartError,
    ListenerClosedError,
    PeerAuthorizationError,
    SocketInUseError,
    SocketPathError,
    SocketPermissionError,
)

logger = logging.getLogger(__name__)

SOCKET_MODE = 0o600

# sockaddr_un.sun_path size, including the trailing NUL
_MAX_SOCKET_PATH = 104 if sys.platform == "darwin" else 108

_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}
_PATH_ERRNOS = {
    errno.ENOENT, errno.ENOTDIR, errno.ENAMETOOLONG,
    errno.EISDIR, errno.ELOOP, errno.EINVAL,
}

# struct ucred { pid_t pid; uid_t uid; gid_t gid; }
_UCRED = struct.Struct("3i")


def _start_error(exc: OSError, action: str, path: Union[str, Path]) -> DaemonStartError:
    message = f"Failed to {action} {path}: {exc.strerror or exc}"
    if exc.errno == errno.EADDRINUSE:
        return SocketInUseError(message, str(path))
    if exc.errno in _PERMISSION_ERRNOS:
        return SocketPermissionError(message, str(path))
    if exc.errno in _PATH_ERRNOS or exc.errno is None:
        return SocketPathError(message, str(path))
    return DaemonStartError(message, str(path))


@dataclass(frozen=True)
class PeerCredentials:
    pid: int
    uid: int
    gid: int


class Connection:
    """One accepted local client. ``client_id`` is never reused."""

    def __init__(
        self,
        client_id: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        self.client_id = client_id
        self.reader = reader
        self.writer = writer

    def __repr__(self) -> str:
        return f"Connection(client_id={self.client_id})"

    def peer_credentials(self) -> PeerCredentials:
        """
        Return the kernel-reported credentials of the connecting process.

        Raises:
            PeerAuthorizationError: the platform cannot report them
        """
        sock = self.writer.get_extra_info("socket")
        if sock is None or not hasattr(socket, "SO_PEERCRED"):
            raise PeerAuthorizationError("Peer credentials are not available on this platform")
        try:
            raw = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _UCRED.size)
        except OSError as e:
            raise PeerAuthorizationError(f"Could not read peer credentials: {e}") from e
        return PeerCredentials(*_UCRED.unpack(raw))

    async def read_message(self) -> Optional[Dict[str, Any]]:
        return await read_frame(self.reader)

    async def write_message(self, frame: bytes) -> None:
        self.writer.write(frame)
        await self.writer.drain()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug("Client %d closed with error: %s", self.client_id, e)


def authorize_peer(connection: Connection, allowed_uid: Optional[int] = None) -> PeerCredentials:
    """
    Allow only processes running as ``allowed_uid`` (default: our own uid).

    Raises:
        PeerAuthorizationError: credentials unavailable or uid mismatch
    """
    expected = os.getuid() if allowed_uid is None else allowed_uid
    creds = connection.peer_credentials()
    if creds.uid != expected:
        raise PeerAuthorizationError(
            f"Client {connection.client_id} runs as uid {creds.uid}, expected {expected}"
        )
    return creds


class ListenerState(str, Enum):
    UNBOUND = "unbound"
    STARTING = "starting"
    LISTENING = "listening"
    CLOSED = "closed"


class SocketListener:
    """
    Accepts local client connections on a Unix socket.

    Connections are numbered from 1 in arrival order by the event loop's
    connection callback, which is the counter's only writer.
    """

    def __init__(self, socket_path: Union[str, Path]):
        self.socket_path = socket_path
        self.state = ListenerState.UNBOUND
        self._path: Optional[Path] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._pending: "asyncio.Queue[Optional[Connection]]" = asyncio.Queue()
        self._client_count = 0

    def __str__(self) -> str:
        return str(self._path or self.socket_path)

    @property
    def client_count(self) -> int:
        """Number of connections accepted so far."""
        return self._client_count

    @property
    def address(self) -> Optional[Path]:
        return self._path

    def _resolve(self) -> Path:
        try:
            path = Path(os.path.abspath(os.path.expanduser(os.fspath(self.socket_path))))
        except (OSError, TypeError, ValueError) as e:
            raise SocketPathError(f"Cannot resolve socket path {self.socket_path!r}: {e}") from e

        if not path.parent.is_dir():
            raise SocketPathError(
                f"Socket directory does not exist: {path.parent}", str(path)
            )
        if len(os.fsencode(path)) >= _MAX_SOCKET_PATH:
            raise SocketPathError(
                f"Socket path is too long ({len(os.fsencode(path))} bytes): {path}", str(path)
            )
        return path

    def _remove_stale(self, path: Path) -> None:
        try:
            os.lstat(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise _start_error(e, "stat", path) from e

        logger.info("Removing stale socket %s", path)
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise _start_error(e, "remove stale entry", path) from e

    async def start(self) -> None:
        """
        Bind and listen.

        Raises:
            SocketPathError: path cannot be resolved, parent missing, too long
            SocketPermissionError: not allowed to stat/remove/bind/chmod
            SocketInUseError: address in use
            DaemonStartError: any other start-up failure
        """
        if self.state is not ListenerState.UNBOUND:
            raise DaemonStartError(f"Listener is already {self.state.value}")
        self.state = ListenerState.STARTING

        try:
            path = self._resolve()
            self._remove_stale(path)

            try:
                self._server = await asyncio.start_unix_server(self._on_connect, path=str(path))
            except OSError as e:
                raise _start_error(e, "bind", path) from e

            # Advisory only; BSD-derived systems ignore socket permissions
            try:
                os.chmod(path, SOCKET_MODE)
            except OSError as e:
                self._server.close()
                raise _start_error(e, "chmod", path) from e
        except DaemonStartError:
            self.state = ListenerState.CLOSED
            raise

        self._path = path
        self.state = ListenerState.LISTENING
        logger.info("Listening on %s", path)

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.state is not ListenerState.LISTENING:
            writer.close()
            return
        self._client_count += 1
        self._pending.put_nowait(Connection(self._client_count, reader, writer))

    async def accept(self) -> Connection:
        """
        Wait for the next client connection.

        Raises:
            ListenerClosedError: the listener is (or becomes) closed
        """
        if self.state is not ListenerState.LISTENING:
            raise ListenerClosedError(f"Listener is {self.state.value}")
        conn = await self._pending.get()
        if conn is None:
            # Pass the wake-up on to any other waiter
            self._pending.put_nowait(None)
            raise ListenerClosedError("Listener closed")
        return conn

    def close(self) -> None:
        """Stop listening, wake blocked accept() calls and remove the socket file."""
        if self.state is ListenerState.CLOSED:
            return
        self.state = ListenerState.CLOSED

        if self._server is not None:
            self._server.close()

        while not self._pending.empty():
            conn = self._pending.get_nowait()
            if conn is not None:
                conn.writer.close()
        self._pending.put_nowait(None)

        if self._path is not None:
            try:
                os.unlink(self._path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove socket %s: %s", self._path, e)
