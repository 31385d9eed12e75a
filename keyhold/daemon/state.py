"""In-memory state for the daemon.

Holds everything that lives for the daemon's lifetime: the login session
(token, user record, credential cipher), the registry client built on top
of it, and request counters for the health check.

Nothing here is written to disk; logging out or stopping the daemon drops
all secret material.
"""

import time
from typing import Any, Dict, Optional

import httpx

from keyhold.core.configs import DaemonConfig
from keyhold.core.session import Session
from keyhold.registry import RegistryClient


class DaemonState:
    """
    Per-process daemon state.

    Thread safety: request handlers run on a single asyncio loop. The
    session carries its own lock because login and logout can interleave
    with in-flight registry calls.
    """

    def __init__(
        self,
        config: DaemonConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize daemon state.

        Args:
            config: Daemon configuration
            transport: Optional httpx transport for the registry client
        """
        self.config = config
        self.start_time = time.time()
        self.requests_served = 0

        self.session = Session()
        self.registry = RegistryClient(
            config.registry_url,
            self.session,
            timeout=config.request_timeout,
            transport=transport,
        )

    async def close(self) -> None:
        self.session.logout()
        await self.registry.aclose()

    def get_stats(self, client_count: int = 0) -> Dict[str, Any]:
        """Counters reported by the health command."""
        return {
            "uptime_seconds": time.time() - self.start_time,
            "requests_served": self.requests_served,
            "clients_accepted": client_count,
            "logged_in": self.session.is_active,
            "registry_url": self.config.registry_url,
        }
