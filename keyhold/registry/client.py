"""
Async HTTP client for the keyhold registry.

All registry calls go through RegistryClient.new_request() and
RegistryClient.do():

- new_request() builds the httpx.Request, attaches the bearer token from the
  shared Session (failing before any I/O if there is none) and assigns a
  request id to every mutating call.
- do() sends it under a deadline, reports progress, and maps every failure
  to a distinct keyhold error class.

Usage:
    async with RegistryClient(config.registry_url, session) as registry:
        creds = await registry.credentials.get("/org/project/dev/*/*/*")
"""

import asyncio
import base64
from dataclasses import dataclass
import logging
import secrets
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import httpx

from keyhold import __version__
from keyhold.core.session import Session
from keyhold.envelope import EntityType, Envelope, load
from keyhold.errors import (
    RegistryDecodeError,
    RegistryStatusError,
    RegistryTimeoutError,
    RegistryTransportError,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

QueryValue = Union[str, int, List[str], Tuple[str, ...], None]


def new_request_id() -> str:
    """Return a 128-bit random identifier (lowercase base32, unpadded)."""
    raw = secrets.token_bytes(16)
    return base64.b32encode(raw).decode("ascii").rstrip("=").lower()


@dataclass(frozen=True)
class ProgressEvent:
    request_id: Optional[str]
    step: str
    message: str


ProgressSink = Union[Callable[[ProgressEvent], None], "asyncio.Queue[ProgressEvent]"]


class Progress:
    """
    Delivers progress events to a caller-supplied callback or queue.

    Queue delivery never waits: when the queue is full the event is dropped,
    so a caller that stops consuming cannot stall a registry call.
    """

    def __init__(self, sink: Optional[ProgressSink] = None):
        self._sink = sink

    @classmethod
    def wrap(cls, sink: Union["Progress", ProgressSink, None]) -> "Progress":
        if isinstance(sink, Progress):
            return sink
        return cls(sink)

    def emit(self, request_id: Optional[str], step: str, message: str = "") -> None:
        if self._sink is None:
            return
        event = ProgressEvent(request_id=request_id, step=step, message=message)
        if isinstance(self._sink, asyncio.Queue):
            try:
                self._sink.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Progress queue full, dropping %s event", step)
            return
        try:
            self._sink(event)
        except Exception:
            logger.exception("Progress callback failed on %s event", step)


def _build_params(query: Optional[Mapping[str, QueryValue]]) -> List[Tuple[str, str]]:
    """Flatten a query mapping; list values add one parameter per item."""
    params: List[Tuple[str, str]] = []
    for key, value in (query or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            params.extend((key, str(item)) for item in value)
        else:
            params.append((key, str(value)))
    return params


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or "unknown error"
    if isinstance(data, dict):
        message = data.get("error") or data.get("message")
        if isinstance(message, list):
            return "; ".join(str(m) for m in message)
        if message:
            return str(message)
    return response.reason_phrase or "unknown error"


def load_response(data: Any, entity_type: EntityType) -> Envelope:
    """Decode and validate one envelope from a registry response."""
    if not isinstance(data, dict):
        raise RegistryDecodeError(f"Expected a {entity_type.value} envelope object")
    return load(data, data.get("version"), entity_type)


def load_response_list(data: Any, entity_type: EntityType) -> List[Envelope]:
    if not isinstance(data, list):
        raise RegistryDecodeError(f"Expected a list of {entity_type.value} envelopes")
    return [load_response(item, entity_type) for item in data]


class RegistryClient:
    """
    Typed access to the registry.

    Sub-clients:
        credentials: keyhold.registry.credentials.CredentialsClient
        invites: keyhold.registry.invites.InvitesClient
        users: keyhold.registry.users.UsersClient
    """

    def __init__(
        self,
        base_url: str,
        session: Session,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize registry client.

        Args:
            base_url: Registry root URL (e.g. https://registry.keyhold.dev/v1)
            session: Shared session providing the bearer token
            timeout: Default per-call deadline in seconds
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        from keyhold.registry.credentials import CredentialsClient
        from keyhold.registry.invites import InvitesClient
        from keyhold.registry.users import UsersClient

        self.base_url = base_url.rstrip("/")
        self.session = session
        self.timeout = timeout
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout),
            headers={
                "Accept": "application/json",
                "User-Agent": f"keyhold/{__version__}",
            },
        )

        self.credentials = CredentialsClient(self)
        self.invites = InvitesClient(self)
        self.users = UsersClient(self)

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def new_request(
        self,
        method: str,
        path: str,
        query: Optional[Mapping[str, QueryValue]] = None,
        body: Any = None,
        authenticated: bool = True,
    ) -> Tuple[httpx.Request, Optional[str]]:
        """
        Build a registry request.

        Returns:
            (request, request_id). request_id is None for non-mutating methods.

        Raises:
            NotLoggedInError: authenticated request without a session
        """
        method = method.upper()
        headers: Dict[str, str] = {}

        if authenticated:
            headers["Authorization"] = f"Bearer {self.session.token}"

        request_id = None
        if method in MUTATING_METHODS:
            request_id = new_request_id()
            headers[REQUEST_ID_HEADER] = request_id

        kwargs: Dict[str, Any] = {"params": _build_params(query), "headers": headers}
        if body is not None:
            kwargs["json"] = body

        return self._http.build_request(method, path, **kwargs), request_id

    async def do(
        self,
        request: httpx.Request,
        request_id: Optional[str] = None,
        progress: Union[Progress, ProgressSink, None] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a request and return the decoded JSON body (None if empty).

        Cancelling the calling task aborts the underlying I/O.

        Raises:
            RegistryTimeoutError: deadline exceeded
            RegistryTransportError: connection-level failure
            RegistryStatusError: non-2xx response
            RegistryDecodeError: response body is not JSON
        """
        progress = Progress.wrap(progress)
        deadline = self.timeout if timeout is None else timeout
        target = f"{request.method} {request.url.path}"
        # Native httpx timeouts follow the deadline so wait_for governs the call
        request.extensions["timeout"] = httpx.Timeout(deadline).as_dict()

        progress.emit(request_id, "request", target)
        try:
            response = await asyncio.wait_for(self._http.send(request), deadline)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Registry call %s timed out (request %s)", target, request_id)
            raise RegistryTimeoutError(f"{target} timed out after {deadline:g}s") from None
        except httpx.HTTPError as e:
            logger.warning("Registry call %s failed (request %s): %s", target, request_id, e)
            raise RegistryTransportError(f"{target} failed: {e}") from e

        progress.emit(request_id, "response", str(response.status_code))

        if not response.is_success:
            message = _error_message(response)
            logger.warning(
                "Registry call %s returned %d (request %s)",
                target, response.status_code, request_id,
            )
            raise RegistryStatusError(response.status_code, message, request_id)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RegistryDecodeError(f"{target} returned invalid JSON") from e
