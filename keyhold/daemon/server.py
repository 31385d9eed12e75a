"""Async Unix socket server for the keyhold daemon.

The daemon process:
1. Holds the login session and key material in memory only
2. Accepts local CLI connections on an owner-only Unix socket
3. Verifies each peer, then serves its requests against the registry

Usage:
    python -m keyhold.daemon.server [--socket-path PATH] [--idle-timeout SECONDS]

    Or use the CLI:
    keyhold daemon start
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Optional, Set

import httpx
import setproctitle

from keyhold.core.configs import DaemonConfig, get_daemon_config, load_raw_config
from keyhold.daemon.handlers import DaemonHandlers
from keyhold.daemon.listener import Connection, SocketListener, authorize_peer
from keyhold.daemon.protocol import error_payload, serialize_response
from keyhold.daemon.state import DaemonState
from keyhold.errors import (
    DaemonStartError,
    FrameError,
    KeyholdError,
    ListenerClosedError,
    PeerAuthorizationError,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def ensure_not_running(pid_path: Path) -> None:
    """
    Refuse to start while another daemon owns this PID file.

    The listener unconditionally replaces its socket path, so this check is
    what keeps a second daemon from stealing a live one's socket.
    """
    try:
        pid = int(pid_path.read_text().strip())
    except FileNotFoundError:
        return
    except ValueError:
        logger.info("Ignoring malformed PID file %s", pid_path)
        return

    if pid == os.getpid():
        return
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        logger.info("Removing stale PID file for pid %d", pid)
        return
    except PermissionError:
        pass
    raise DaemonStartError(f"Daemon already running (pid {pid})", str(pid_path))


class DaemonServer:
    """
    Serves local CLI clients over the listener socket.

    One accept loop task; one task per connection, so a slow client never
    holds up new accepts. Requests on a single connection are answered in
    order.
    """

    def __init__(
        self,
        config: DaemonConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        allowed_uid: Optional[int] = None,
    ):
        """
        Initialize daemon server.

        Args:
            config: Daemon configuration (socket/PID paths, registry URL)
            transport: Optional httpx transport for the registry client
            allowed_uid: uid allowed to connect (default: the daemon's own)
        """
        self.config = config
        self.allowed_uid = allowed_uid
        self.state = DaemonState(config, transport=transport)
        self.listener = SocketListener(config.socket_path)
        self.handlers = DaemonHandlers(
            self.state,
            request_shutdown=self.request_shutdown,
            client_count=lambda: self.listener.client_count,
        )
        self.last_request_time: float = time.time()
        self._shutdown_event: asyncio.Event = asyncio.Event()
        self._connections: Set[asyncio.Task] = set()

    async def start(self) -> None:
        """Bring up the listener and write the PID file."""
        logger.info("Starting keyhold daemon...")
        ensure_not_running(self.config.pid_path)
        await self.listener.start()
        self.config.pid_path.write_text(str(os.getpid()))
        logger.info("Daemon ready on %s (pid %d)", self.listener.address, os.getpid())

    async def serve(self) -> None:
        """Start, serve until shutdown is requested, then clean up."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        accept_task = asyncio.create_task(self._accept_loop())
        idle_task = None
        if self.config.idle_timeout > 0:
            idle_task = asyncio.create_task(self._idle_watcher())

        try:
            await self._shutdown_event.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            if idle_task is not None:
                idle_task.cancel()
            await self._cleanup(accept_task)

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _accept_loop(self) -> None:
        while True:
            try:
                conn = await self.listener.accept()
            except ListenerClosedError:
                logger.debug("Accept loop stopped")
                return
            task = asyncio.create_task(self._handle_client(conn))
            self._connections.add(task)
            task.add_done_callback(self._connections.discard)

    async def _handle_client(self, conn: Connection) -> None:
        """Authorize one connection, then answer its requests until EOF."""
        try:
            try:
                creds = authorize_peer(conn, self.allowed_uid)
            except PeerAuthorizationError as e:
                logger.warning("Rejected client %d: %s", conn.client_id, e)
                await conn.write_message(
                    serialize_response(None, "error", error=error_payload(e))
                )
                return
            logger.debug("Client %d connected (pid %d)", conn.client_id, creds.pid)

            while True:
                try:
                    message = await conn.read_message()
                except FrameError as e:
                    logger.warning("Client %d sent a bad frame: %s", conn.client_id, e)
                    await conn.write_message(
                        serialize_response(None, "error", error=error_payload(e))
                    )
                    return
                if message is None:
                    return

                self.last_request_time = time.time()
                response = await self.handlers.dispatch(message)
                await conn.write_message(response)
        except (ConnectionError, OSError) as e:
            logger.debug("Client %d dropped: %s", conn.client_id, e)
        except KeyholdError as e:
            logger.error("Client %d aborted: %s", conn.client_id, e)
        finally:
            await conn.close()

    async def _idle_watcher(self) -> None:
        """Stop the daemon once no request has arrived for idle_timeout seconds."""
        interval = min(60.0, self.config.idle_timeout)
        while not self._shutdown_event.is_set():
            await asyncio.sleep(interval)

            idle_time = time.time() - self.last_request_time
            if idle_time > self.config.idle_timeout and not self._connections:
                logger.info(
                    "Idle timeout reached (%.0fs > %.0fs), shutting down",
                    idle_time, self.config.idle_timeout,
                )
                self._shutdown_event.set()
                break

    async def _cleanup(self, accept_task: asyncio.Task) -> None:
        """Stop accepting, drop open connections, clear secrets and remove the PID file."""
        logger.info("Shutting down listener and %d connections", len(self._connections))

        self.listener.close()
        await accept_task

        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)

        await self.state.close()

        try:
            self.config.pid_path.unlink()
        except FileNotFoundError:
            pass

        logger.info("Daemon stopped")


def _daemonize(log_path) -> None:
    # Double-fork to detach from the controlling terminal
    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    os.setsid()

    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    sys.stdin.close()

    # stdout and stderr go to the daemon log
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_file = open(log_path, "a")
    os.dup2(log_file.fileno(), sys.stdout.fileno())
    os.dup2(log_file.fileno(), sys.stderr.fileno())


def run_daemon(
    config: Optional[DaemonConfig] = None,
    daemonize: bool = False,
) -> None:
    """
    Run the daemon server.

    Args:
        config: Daemon configuration (default: loaded from config file/env)
        daemonize: Fork to background (Unix only)
    """
    config = config or get_daemon_config(load_raw_config())

    # The socket directory holds secrets-adjacent files; keep it private
    config.socket_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if daemonize:
        _daemonize(config.log_path)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    setproctitle.setproctitle("keyhold-daemon")

    async def _main() -> None:
        server = DaemonServer(config)
        await server.serve()

    asyncio.run(_main())


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="keyhold daemon server")
    parser.add_argument(
        "--socket-path",
        help="Override the socket path",
    )
    parser.add_argument(
        "--pid-path",
        help="Override the PID file path",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        help="Exit after this many idle seconds (0 disables)",
    )
    parser.add_argument(
        "--daemonize",
        action="store_true",
        help="Detach and log to the daemon log file",
    )

    args = parser.parse_args()

    raw = load_raw_config()
    if args.socket_path:
        raw["socket_path"] = args.socket_path
    if args.pid_path:
        raw["pid_path"] = args.pid_path
    if args.idle_timeout is not None:
        raw["idle_timeout"] = str(args.idle_timeout)

    try:
        daemon_config = get_daemon_config(raw)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    run_daemon(daemon_config, daemonize=args.daemonize)
