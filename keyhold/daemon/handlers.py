"""Request handlers for the daemon.

Each handler takes the request's params dict and returns a JSON-compatible
result. Errors are raised, and dispatch() turns them into error responses
that keep the error kind.
"""

import base64
import binascii
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Dict, List

import pydantic

from keyhold.core.crypto import AesGcmCipher
from keyhold.core.profile import update_profile
from keyhold.core.session import SessionType
from keyhold.daemon.protocol import error_payload, serialize_response
from keyhold.daemon.state import DaemonState
from keyhold.envelope import Envelope, MasterKey, open_credential
from keyhold.errors import FrameError, KeyholdError, PreconditionError, ProtocolError
from keyhold.registry import ProgressEvent, SignupRequest

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def _require(params: Dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise ProtocolError(f"Missing '{name}' parameter")
    return value


def _invite_dict(envelope: Envelope) -> Dict[str, Any]:
    data = envelope.body.model_dump(mode="json")
    data["id"] = envelope.id
    data["state"] = envelope.body.state.value
    return data


def _user_dict(envelope: Envelope) -> Dict[str, Any]:
    body = envelope.body
    return {"id": envelope.id, "username": body.username, "name": body.name,
            "email": body.email, "state": body.state}


class DaemonHandlers:
    """Routes commands to handlers."""

    def __init__(self, state: DaemonState, request_shutdown: Callable[[], None], client_count: Callable[[], int] = lambda: 0):
        self.state = state
        self._request_shutdown = request_shutdown
        self._client_count = client_count
        self.routes: Dict[str, Handler] = {
            "health": self.health,
            "shutdown": self.shutdown,
            "login": self.login,
            "logout": self.logout,
            "session.status": self.session_status,
            "credentials.get": self.credentials_get,
            "credentials.set": self.credentials_set,
            "credentials.unset": self.credentials_unset,
            "profile.update": self.profile_update,
            "invites.list": self.invites_list,
            "invites.send": self.invites_send,
            "invites.accept": self.invites_accept,
            "invites.associate": self.invites_associate,
            "invites.approve": self.invites_approve,
            "signup": self.signup,
            "users.verify": self.users_verify,
        }

    async def dispatch(self, message: Dict[str, Any]) -> bytes:
        """Handle one request message and return the serialized response."""
        request_id = message.get("id", "")
        command = message.get("command", "")
        params = message.get("params") or {}

        handler = self.routes.get(command)
        if handler is None:
            error = error_payload(ProtocolError(f"Unknown command: {command}"))
            return serialize_response(request_id, "error", error=error)
        if not isinstance(params, dict):
            error = error_payload(ProtocolError("'params' must be an object"))
            return serialize_response(request_id, "error", error=error)

        self.state.requests_served += 1
        try:
            result = await handler(params)
        except KeyholdError as e:
            logger.info("Command %s failed (%s): %s", command, e.kind.value, e)
            return serialize_response(request_id, "error", error=error_payload(e))
        except pydantic.ValidationError as e:
            invalid = ProtocolError(f"Invalid parameters for {command} ({e.error_count()} errors)")
            return serialize_response(request_id, "error", error=error_payload(invalid))
        except Exception as e:
            logger.exception("Error in handler for %s: %s", command, e)
            return serialize_response(request_id, "error", error=error_payload(e))
        try:
            return serialize_response(request_id, "ok", result=result)
        except FrameError as e:
            logger.warning("Result of %s cannot be sent: %s", command, e)
            return serialize_response(request_id, "error", error=error_payload(e))

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------

    async def health(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.state.get_stats(self._client_count())

    async def shutdown(self, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Shutdown requested via socket")
        self._request_shutdown()
        return {"message": "Shutting down"}

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store a session token (and optional key material) obtained by the CLI.

        For user sessions the user record is fetched and validated before
        the login is accepted; on any failure the session is cleared.
        """
        token = _require(params, "token")
        try:
            session_type = SessionType(params.get("type", SessionType.USER.value))
        except ValueError:
            raise ProtocolError(f"Unknown session type: {params.get('type')!r}") from None

        expires_at = None
        if params.get("expires_at"):
            try:
                expires_at = datetime.fromisoformat(params["expires_at"])
            except ValueError:
                raise ProtocolError("'expires_at' must be an ISO-8601 timestamp") from None
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)

        cipher = None
        if params.get("key"):
            try:
                cipher = AesGcmCipher(base64.b64decode(params["key"], validate=True))
            except (binascii.Error, ValueError) as e:
                raise ProtocolError(f"Invalid key material: {e}") from None

        session = self.state.session
        session.login(token, session_type=session_type, expires_at=expires_at, cipher=cipher)
        if session_type is SessionType.USER:
            try:
                session.update_user(await self.state.registry.users.get_self())
            except KeyholdError:
                session.logout()
                raise
        return session.snapshot().to_dict()

    async def logout(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.state.session.logout()
        return {"logged_out": True}

    async def session_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.state.session.snapshot().to_dict()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def credentials_get(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        path = _require(params, "path")
        cipher = self.state.session.cipher
        sealed = await self.state.registry.credentials.get(path)

        results = []
        for envelope in sealed:
            cred = open_credential(envelope.body, cipher)
            results.append({
                "id": envelope.id,
                "name": cred.name,
                "pathexp": cred.pathexp,
                "unset": cred.is_unset,
                "type": cred.value.type if cred.value else None,
                "value": cred.value.value if cred.value else None,
            })
        return results

    async def credentials_set(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = _require(params, "name")
        pathexp = _require(params, "pathexp")
        value = _require(params, "value")
        envelope = await self.state.registry.credentials.set(
            name, pathexp, str(value),
            cipher=self.state.session.cipher,
            value_type=params.get("type", "string"),
        )
        return {"id": envelope.id, "name": name, "pathexp": pathexp}

    async def credentials_unset(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = _require(params, "name")
        pathexp = _require(params, "pathexp")
        envelope = await self.state.registry.credentials.unset(
            name, pathexp, cipher=self.state.session.cipher
        )
        return {"id": envelope.id, "name": name, "pathexp": pathexp, "unset": True}

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def profile_update(self, params: Dict[str, Any]) -> Dict[str, Any]:
        result = await update_profile(
            self.state.registry.users,
            self.state.session,
            name=params.get("name"),
            email=params.get("email"),
        )
        return {"changed": result.changed, "email_changed": result.email_changed}

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    async def invites_list(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        org_id = _require(params, "org_id")
        states = params.get("states") or []
        invites = await self.state.registry.invites.list(org_id, states)
        return [_invite_dict(e) for e in invites]

    async def invites_send(self, params: Dict[str, Any]) -> Dict[str, Any]:
        user = self.state.session.user
        if user is None or user.id is None:
            raise PreconditionError("Only users with a profile can send invites")
        envelope = await self.state.registry.invites.send(
            _require(params, "email"),
            _require(params, "org_id"),
            user.id,
            params.get("team_ids") or [],
        )
        return _invite_dict(envelope)

    async def invites_accept(self, params: Dict[str, Any]) -> Dict[str, Any]:
        await self.state.registry.invites.accept(
            _require(params, "org"), _require(params, "email"), _require(params, "code")
        )
        return {"accepted": True}

    async def invites_associate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        envelope = await self.state.registry.invites.associate(
            _require(params, "org"), _require(params, "email"), _require(params, "code")
        )
        return _invite_dict(envelope)

    async def invites_approve(self, params: Dict[str, Any]) -> Dict[str, Any]:
        events: List[ProgressEvent] = []
        await self.state.registry.invites.approve(_require(params, "invite_id"), events.append)
        return {"approved": True, "progress": [e.step for e in events]}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def signup(self, params: Dict[str, Any]) -> Dict[str, Any]:
        master = _require(params, "master")
        signup = SignupRequest(
            username=_require(params, "username"),
            name=_require(params, "name"),
            email=_require(params, "email"),
            master=MasterKey.model_validate(master),
            invite_code=params.get("invite_code"),
            org_name=params.get("org_name"),
        )
        events: List[ProgressEvent] = []
        user = await self.state.registry.users.signup(signup, events.append)
        result = _user_dict(user)
        result["progress"] = [e.message or e.step for e in events]
        return result

    async def users_verify(self, params: Dict[str, Any]) -> Dict[str, Any]:
        await self.state.registry.users.verify_email(_require(params, "code"))
        return {"verified": True}
