"""Registry /org-invites endpoints.

Send, accept, associate and approve are separate single-step calls. Each one
either succeeds as a whole or raises; no partial state is assumed locally.
"""

from datetime import datetime, timezone
import re
from typing import TYPE_CHECKING, Iterable, List, Optional

from pydantic import BaseModel

from keyhold.envelope import CURRENT_VERSION, EntityType, Envelope, OrgInviteBody, to_wire
from keyhold.errors import PreconditionError
from keyhold.registry.client import load_response, load_response_list, new_request_id

if TYPE_CHECKING:
    from keyhold.registry.client import RegistryClient

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class InviteAccept(BaseModel):
    """Payload shared by accept and associate."""
    org: str
    email: str
    code: str


def _check_id(value: str, what: str) -> str:
    if not _ID_PATTERN.match(value or ""):
        raise PreconditionError(f"Invalid {what}: {value!r}")
    return value


class InvitesClient:
    def __init__(self, client: "RegistryClient"):
        self._client = client

    async def list(self, org_id: str, states: Optional[Iterable[str]] = None) -> List[Envelope]:
        """List invites for an org. Each state is sent as its own filter."""
        query = {"org_id": _check_id(org_id, "org id"), "state": list(states or [])}
        request, _ = self._client.new_request("GET", "/org-invites", query=query)
        data = await self._client.do(request)
        return load_response_list(data, EntityType.ORG_INVITE)

    async def send(
        self,
        email: str,
        org_id: str,
        inviter_id: str,
        team_ids: Iterable[str] = (),
    ) -> Envelope:
        """Create a new invite. Lifecycle fields start out null."""
        body = OrgInviteBody(
            org_id=_check_id(org_id, "org id"),
            inviter_id=_check_id(inviter_id, "inviter id"),
            pending_teams=list(team_ids),
            email=email,
            created=datetime.now(timezone.utc),
        )
        envelope = Envelope(id=new_request_id(), version=CURRENT_VERSION, body=body)
        request, request_id = self._client.new_request(
            "POST", "/org-invites", body=to_wire(envelope)
        )
        await self._client.do(request, request_id)
        return envelope

    async def accept(self, org: str, email: str, code: str) -> None:
        data = InviteAccept(org=org, email=email, code=code)
        request, request_id = self._client.new_request(
            "POST", "/org-invites/accept", body=data.model_dump()
        )
        await self._client.do(request, request_id)

    async def associate(self, org: str, email: str, code: str) -> Envelope:
        data = InviteAccept(org=org, email=email, code=code)
        request, request_id = self._client.new_request(
            "POST", "/org-invites/associate", body=data.model_dump()
        )
        result = await self._client.do(request, request_id)
        return load_response(result, EntityType.ORG_INVITE)

    async def approve(self, invite_id: str, progress=None) -> None:
        invite_id = _check_id(invite_id, "invite id")
        request, request_id = self._client.new_request(
            "POST", f"/org-invites/{invite_id}/approve"
        )
        await self._client.do(request, request_id, progress)
