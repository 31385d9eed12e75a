"""Process-wide login session held by the daemon.

One Session instance is created by the daemon and passed by reference to
everything that needs the token. The daemon's login/logout handlers are the
only writers; registry calls only read. All access goes through a lock so a
concurrent logout is never observed half-way.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import threading
from typing import Any, Dict, Optional

from keyhold.envelope import Envelope, UserBody, validate_user
from keyhold.envelope.sealing import Cipher
from keyhold.errors import NotLoggedInError


class SessionType(str, Enum):
    USER = "user"
    MACHINE = "machine"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable copy of the session for reporting."""
    active: bool
    session_type: Optional[SessionType]
    username: Optional[str]
    name: Optional[str]
    email: Optional[str]
    expires_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "type": self.session_type.value if self.session_type else None,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class Session:
    """
    Authentication state shared by all registry calls.

    Lifecycle: set on login, read by every authenticated call, cleared on
    logout or once ``expires_at`` has passed.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._token: Optional[str] = None
        self._user: Optional[Envelope] = None
        self._type: Optional[SessionType] = None
        self._expires_at: Optional[datetime] = None
        self._cipher: Optional[Cipher] = None

    def login(
        self,
        token: str,
        user: Optional[Envelope] = None,
        session_type: SessionType = SessionType.USER,
        expires_at: Optional[datetime] = None,
        cipher: Optional[Cipher] = None,
    ) -> None:
        if not token:
            raise ValueError("token must not be empty")
        if user is not None:
            validate_user(user)
        with self._lock:
            self._token = token
            self._user = user
            self._type = session_type
            self._expires_at = expires_at
            self._cipher = cipher

    def logout(self) -> None:
        with self._lock:
            self._token = None
            self._user = None
            self._type = None
            self._expires_at = None
            self._cipher = None

    def _expired(self) -> bool:
        return self._expires_at is not None and datetime.now(timezone.utc) >= self._expires_at

    def _require(self) -> None:
        if self._token is None:
            raise NotLoggedInError()
        if self._expired():
            self.logout()
            raise NotLoggedInError("Session has expired; log in again")

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._token is not None and not self._expired()

    @property
    def token(self) -> str:
        """Current bearer token. Raises NotLoggedInError if there is none."""
        with self._lock:
            self._require()
            return self._token

    @property
    def session_type(self) -> SessionType:
        with self._lock:
            self._require()
            return self._type

    @property
    def user(self) -> Optional[Envelope]:
        with self._lock:
            self._require()
            return self._user

    @property
    def cipher(self) -> Cipher:
        with self._lock:
            self._require()
            if self._cipher is None:
                raise NotLoggedInError("Session holds no key material; log in with a key")
            return self._cipher

    def update_user(self, user: Envelope) -> None:
        """Replace the cached user record after a refresh."""
        validate_user(user)
        with self._lock:
            self._require()
            self._user = user

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            active = self._token is not None and not self._expired()
            body: Optional[UserBody] = self._user.body if (active and self._user) else None
            return SessionSnapshot(
                active=active,
                session_type=self._type if active else None,
                username=body.username if body else None,
                name=body.name if body else None,
                email=body.email if body else None,
                expires_at=self._expires_at if active else None,
            )
