"""Envelope and body models.

An envelope wraps a typed body with an id and a version tag. The set of
bodies is closed: each (version, entity type) pair maps to exactly one model
in keyhold.envelope.codec.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from keyhold.errors import InviteLifecycleError


class EntityType(str, Enum):
    USER = "user"
    CREDENTIAL = "credential"
    SEALED_CREDENTIAL = "sealed_credential"
    ORG_INVITE = "org_invite"


class MasterKey(BaseModel):
    """Master-key derivation section of a user record."""

    model_config = ConfigDict(frozen=True)

    alg: str
    # Key material stays out of reprs and therefore out of logs
    value: str = Field(repr=False)


class UserBody(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    name: str
    email: str
    state: str = "unverified"
    master: Optional[MasterKey] = None


class CredentialValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "string"
    value: str = Field(repr=False)


class CredentialBody(BaseModel):
    """Plaintext credential. Held by the daemon, never sent to the registry."""

    model_config = ConfigDict(frozen=True)

    name: str
    pathexp: str
    project_id: Optional[str] = None
    org_id: Optional[str] = None
    value: Optional[CredentialValue] = None

    @property
    def is_unset(self) -> bool:
        return self.value is None


class SealedValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    alg: str
    nonce: str
    ciphertext: str


class SealedCredentialBody(BaseModel):
    """Encrypted credential as stored by the registry."""

    model_config = ConfigDict(frozen=True)

    name: str
    pathexp: str
    project_id: Optional[str] = None
    org_id: Optional[str] = None
    value: SealedValue


class InviteState(str, Enum):
    PENDING = "pending"
    ASSOCIATED = "associated"
    ACCEPTED = "accepted"
    APPROVED = "approved"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrgInviteBody(BaseModel):
    """Organization invitation.

    Lifecycle: created -> accepted -> approved. Each step fills one
    timestamp and one identity; a step cannot be taken before the previous
    one.
    """

    model_config = ConfigDict(frozen=True)

    org_id: str
    inviter_id: str
    invitee_id: Optional[str] = None
    approver_id: Optional[str] = None
    pending_teams: List[str] = Field(default_factory=list)
    email: str
    created: datetime
    accepted: Optional[datetime] = None
    approved: Optional[datetime] = None

    @property
    def state(self) -> InviteState:
        if self.approved is not None:
            return InviteState.APPROVED
        if self.accepted is not None:
            return InviteState.ACCEPTED
        if self.invitee_id is not None:
            return InviteState.ASSOCIATED
        return InviteState.PENDING

    def accept(self, invitee_id: str, at: Optional[datetime] = None) -> "OrgInviteBody":
        if self.accepted is not None:
            raise InviteLifecycleError("Invite has already been accepted")
        if not invitee_id:
            raise InviteLifecycleError("Accepting an invite requires an invitee")
        return self.model_copy(update={"invitee_id": invitee_id, "accepted": at or _now()})

    def approve(self, approver_id: str, at: Optional[datetime] = None) -> "OrgInviteBody":
        if self.accepted is None:
            raise InviteLifecycleError("Invite must be accepted before it is approved")
        if self.approved is not None:
            raise InviteLifecycleError("Invite has already been approved")
        if not approver_id:
            raise InviteLifecycleError("Approving an invite requires an approver")
        return self.model_copy(update={"approver_id": approver_id, "approved": at or _now()})


Body = Union[UserBody, CredentialBody, SealedCredentialBody, OrgInviteBody]

_ENTITY_BY_BODY = {
    UserBody: EntityType.USER,
    CredentialBody: EntityType.CREDENTIAL,
    SealedCredentialBody: EntityType.SEALED_CREDENTIAL,
    OrgInviteBody: EntityType.ORG_INVITE,
}


class Envelope(BaseModel):
    """Versioned wrapper around a secret body.

    ``id`` is None until the record has been persisted by the registry.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    version: int
    body: Optional[Body] = None

    @property
    def entity_type(self) -> Optional[EntityType]:
        if self.body is None:
            return None
        return _ENTITY_BY_BODY[type(self.body)]
