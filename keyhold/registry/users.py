"""Registry user endpoints: signup, verification, profile, self.

Every user record returned here has passed validate_user(); a record with a
missing or unrecognized master key section never reaches the caller.
"""

from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel

from keyhold.envelope import CURRENT_VERSION, EntityType, Envelope, MasterKey, UserBody, to_wire
from keyhold.registry.client import Progress, load_response, new_request_id

if TYPE_CHECKING:
    from keyhold.registry.client import RegistryClient


class SignupRequest(BaseModel):
    """Signup details. ``master`` is derived by the CLI before it gets here."""
    username: str
    name: str
    email: str
    master: MasterKey
    invite_code: Optional[str] = None
    org_name: Optional[str] = None


class UsersClient:
    def __init__(self, client: "RegistryClient"):
        self._client = client

    async def signup(self, signup: SignupRequest, progress=None) -> Envelope:
        """
        Register a new account.

        Reports progress for each step (prepare, request, response, verify).
        """
        progress = Progress.wrap(progress)

        user = Envelope(
            id=new_request_id(),
            version=CURRENT_VERSION,
            body=UserBody(
                username=signup.username,
                name=signup.name,
                email=signup.email,
                master=signup.master,
            ),
        )
        payload = {"user": to_wire(user)}
        if signup.invite_code:
            payload["invite_code"] = signup.invite_code
            payload["org_name"] = signup.org_name

        request, request_id = self._client.new_request(
            "POST", "/signup", body=payload, authenticated=False
        )
        progress.emit(request_id, "prepare", f"Creating account {signup.username}")
        data = await self._client.do(request, request_id, progress)

        progress.emit(request_id, "verify", "Verifying account record")
        return load_response(data, EntityType.USER)

    async def create(self, user: Envelope) -> Envelope:
        request, request_id = self._client.new_request(
            "POST", "/users", body=to_wire(user), authenticated=False
        )
        data = await self._client.do(request, request_id)
        return load_response(data, EntityType.USER)

    async def verify_email(self, code: str) -> None:
        request, request_id = self._client.new_request(
            "POST", "/users/verify", body={"code": code}
        )
        await self._client.do(request, request_id)

    async def get_self(self) -> Envelope:
        """Return the logged-in user."""
        request, _ = self._client.new_request("GET", "/users/self")
        data = await self._client.do(request)
        return load_response(data, EntityType.USER)

    async def update_email(self, email: str) -> Envelope:
        return await self._patch_self({"email": email})

    async def update_name(self, name: str) -> Envelope:
        return await self._patch_self({"name": name})

    async def _patch_self(self, fields: dict) -> Envelope:
        request, request_id = self._client.new_request("PATCH", "/users/self", body=fields)
        data = await self._client.do(request, request_id)
        return load_response(data, EntityType.USER)
