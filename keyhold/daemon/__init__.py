"""Daemon architecture for keyhold.

A long-running background process holds the login session and key material
in memory and serves the CLI over a Unix socket.

Architecture:
- SocketListener: owner-only Unix socket, numbered connections
- DaemonServer: accept loop, peer checks, request routing
- DaemonState: session and registry client for the daemon's lifetime
- DaemonClient: thin blocking client used by the CLI
"""

from keyhold.daemon.client import DaemonClient, DaemonRequestError
from keyhold.daemon.listener import Connection, PeerCredentials, SocketListener, authorize_peer
from keyhold.daemon.protocol import (
    serialize_request,
    serialize_response,
    read_frame,
    recv_frame,
)

__all__ = [
    "Connection",
    "DaemonClient",
    "DaemonRequestError",
    "PeerCredentials",
    "SocketListener",
    "authorize_peer",
    "serialize_request",
    "serialize_response",
    "read_frame",
    "recv_frame",
]
