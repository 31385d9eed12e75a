"""Blocking CLI-side client for the keyhold daemon.

Each call opens a fresh Unix socket connection, sends one framed request
and reads one framed response. Only the standard library socket module is
imported here, keeping CLI start-up cheap.

Usage:
    client = DaemonClient(config.socket_path)
    if client.ensure_daemon_running():
        creds = client.call("credentials.get", path="/org/proj/dev/*/*/*")
"""

import itertools
import os
from pathlib import Path
import socket
import subprocess
import sys
import time
from typing import Any, Dict, Optional

from keyhold.daemon.protocol import recv_frame, serialize_request
from keyhold.errors import ErrorKind, KeyholdError, TransportError


class DaemonRequestError(KeyholdError):
    """The daemon answered a request with an error.

    ``kind`` mirrors the daemon-side error class.
    """

    def __init__(self, kind: str, message: str, error_type: str = ""):
        super().__init__(message)
        try:
            self.kind = ErrorKind(kind)
        except ValueError:
            self.kind = ErrorKind.INTERNAL
        self.error_type = error_type


class DaemonClient:
    """
    One-request-per-connection client used by the CLI.

    Requests are numbered per client instance so responses can be matched
    in daemon logs.
    """

    def __init__(
        self,
        socket_path: Path,
        pid_path: Optional[Path] = None,
        timeout: float = 30.0,
    ):
        """
        Args:
            socket_path: Daemon's Unix socket
            pid_path: Daemon PID file, used to clear out a dead daemon
            timeout: Per-request socket timeout in seconds
        """
        self.socket_path = socket_path
        self.pid_path = pid_path
        self.timeout = timeout
        self._ids = itertools.count(1)

    def is_daemon_running(self) -> bool:
        """True when the socket exists and the daemon answers a health request."""
        if not self.socket_path.exists():
            return False

        try:
            self.call("health", timeout=2.0)
            return True
        except (TransportError, DaemonRequestError):
            return False

    def ensure_daemon_running(self, auto_start: bool = True) -> bool:
        """
        Make sure a healthy daemon is listening.

        With ``auto_start`` a new daemon is spawned when none answers; a PID
        file left behind by a dead daemon is removed first.
        """
        if self.is_daemon_running():
            return True

        if not auto_start:
            return False

        if self.pid_path is not None and self.pid_path.exists():
            try:
                pid = int(self.pid_path.read_text().strip())
                os.kill(pid, 0)
            except (ValueError, ProcessLookupError):
                self.pid_path.unlink(missing_ok=True)
                self.socket_path.unlink(missing_ok=True)
            except PermissionError:
                # Alive but owned by someone else
                return False

        return self._spawn()

    def _spawn(self) -> bool:
        cmd = [
            sys.executable,
            "-m",
            "keyhold.daemon.server",
            "--socket-path",
            str(self.socket_path),
            "--daemonize",
        ]
        if self.pid_path is not None:
            cmd += ["--pid-path", str(self.pid_path)]

        try:
            subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError:
            return False

        # Poll for up to 5s
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            time.sleep(0.1)
            if self.is_daemon_running():
                return True

        return False

    def call(self, command: str, timeout: Optional[float] = None, **params: Any) -> Any:
        """
        Send one request and return its result.

        Raises:
            TransportError: daemon not reachable or connection dropped
            DaemonRequestError: daemon reported an error
        """
        response = self._send_request(command, params, timeout=timeout)
        if response.get("status") == "ok":
            return response.get("result")

        error = response.get("error") or {}
        raise DaemonRequestError(
            error.get("kind", ErrorKind.INTERNAL.value),
            error.get("message", "Unknown error"),
            error.get("type", ""),
        )

    def _send_request(
        self,
        command: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        request_id = str(next(self._ids))
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout or self.timeout)

        try:
            sock.connect(str(self.socket_path))
            sock.sendall(serialize_request(command, params, request_id))
            response = recv_frame(sock)
        except OSError as e:
            raise TransportError(f"Daemon connection failed: {e}") from e
        finally:
            sock.close()

        if response is None:
            raise TransportError("Daemon closed the connection without responding")
        return response


def is_daemon_enabled() -> bool:
    """Daemon mode needs Unix sockets; Windows is not supported."""
    return sys.platform != "win32"
