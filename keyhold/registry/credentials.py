"""Registry /credentials endpoints.

Only sealed credentials cross this boundary; sealing and opening happen in
the caller with the session's cipher.
"""

from typing import TYPE_CHECKING, List

from keyhold.envelope import (
    CURRENT_VERSION,
    CredentialBody,
    CredentialValue,
    EntityType,
    Envelope,
    SealedCredentialBody,
    seal_credential,
    to_wire,
)
from keyhold.envelope.sealing import Cipher
from keyhold.registry.client import load_response, load_response_list

if TYPE_CHECKING:
    from keyhold.registry.client import RegistryClient


class CredentialsClient:
    def __init__(self, client: "RegistryClient"):
        self._client = client

    async def get(self, path: str) -> List[Envelope]:
        """Return all sealed credentials matching the given path expression."""
        request, _ = self._client.new_request("GET", "/credentials", query={"path": path})
        data = await self._client.do(request)
        return load_response_list(data, EntityType.SEALED_CREDENTIAL)

    async def create(self, body: SealedCredentialBody, progress=None) -> Envelope:
        """Store a sealed credential. Returns the persisted envelope."""
        envelope = Envelope(version=CURRENT_VERSION, body=body)
        request, request_id = self._client.new_request(
            "POST", "/credentials", body=to_wire(envelope)
        )
        data = await self._client.do(request, request_id, progress)
        return load_response(data, EntityType.SEALED_CREDENTIAL)

    async def set(
        self,
        name: str,
        pathexp: str,
        value: str,
        cipher: Cipher,
        value_type: str = "string",
        progress=None,
    ) -> Envelope:
        credential = CredentialBody(
            name=name,
            pathexp=pathexp,
            value=CredentialValue(type=value_type, value=value),
        )
        return await self.create(seal_credential(credential, cipher), progress)

    async def unset(
        self,
        name: str,
        pathexp: str,
        cipher: Cipher,
        progress=None,
    ) -> Envelope:
        """Unset a credential: store a new version with no value."""
        credential = CredentialBody(name=name, pathexp=pathexp, value=None)
        return await self.create(seal_credential(credential, cipher), progress)
