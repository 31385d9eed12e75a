"""Versioned envelope codec for keyhold.

- models: typed bodies (user, credential, sealed credential, org invite)
- codec: decode / validate / encode / load
- sealing: plaintext <-> sealed credential conversion via a Cipher
"""

from keyhold.envelope.models import (
    CredentialBody,
    CredentialValue,
    EntityType,
    Envelope,
    InviteState,
    MasterKey,
    OrgInviteBody,
    SealedCredentialBody,
    SealedValue,
    UserBody,
)
from keyhold.envelope.codec import (
    CURRENT_VERSION,
    MASTER_KEY_ALGORITHMS,
    decode,
    encode,
    load,
    to_wire,
    validate,
    validate_user,
)
from keyhold.envelope.sealing import Cipher, open_credential, seal_credential

__all__ = [
    "CURRENT_VERSION",
    "MASTER_KEY_ALGORITHMS",
    "Cipher",
    "CredentialBody",
    "CredentialValue",
    "EntityType",
    "Envelope",
    "InviteState",
    "MasterKey",
    "OrgInviteBody",
    "SealedCredentialBody",
    "SealedValue",
    "UserBody",
    "decode",
    "encode",
    "load",
    "open_credential",
    "seal_credential",
    "to_wire",
    "validate",
    "validate_user",
]
