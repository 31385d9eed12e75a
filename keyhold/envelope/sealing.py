"""Convert credentials between plaintext and sealed (encrypted) form.

The encryption itself is a capability passed in by the caller; any object
with the Cipher shape works.
"""

import base64
import binascii
import json
from typing import Protocol, Tuple

from keyhold.envelope.models import (
    CredentialBody,
    CredentialValue,
    SealedCredentialBody,
    SealedValue,
)
from keyhold.errors import MalformedEnvelopeError


class Cipher(Protocol):
    def encrypt(self, plaintext: bytes) -> Tuple[str, bytes, bytes]:
        """Return (algorithm tag, nonce, ciphertext)."""
        ...

    def decrypt(self, alg: str, nonce: bytes, ciphertext: bytes) -> bytes:
        ...


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def seal_credential(body: CredentialBody, cipher: Cipher) -> SealedCredentialBody:
    """Encrypt a plaintext credential for the registry.

    An unset credential is sealed as JSON null, so the registry cannot tell
    set and unset values apart.
    """
    payload = body.value.model_dump() if body.value is not None else None
    alg, nonce, ciphertext = cipher.encrypt(json.dumps(payload).encode("utf-8"))
    return SealedCredentialBody(
        name=body.name,
        pathexp=body.pathexp,
        project_id=body.project_id,
        org_id=body.org_id,
        value=SealedValue(alg=alg, nonce=_b64(nonce), ciphertext=_b64(ciphertext)),
    )


def open_credential(sealed: SealedCredentialBody, cipher: Cipher) -> CredentialBody:
    """Decrypt a sealed credential.

    Raises:
        MalformedEnvelopeError: if the sealed value cannot be decoded or
            decrypted. The underlying cipher error is chained, not echoed.
    """
    try:
        nonce = base64.b64decode(sealed.value.nonce, validate=True)
        ciphertext = base64.b64decode(sealed.value.ciphertext, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedEnvelopeError(f"Sealed value for {sealed.name} is not valid base64") from None

    try:
        plaintext = cipher.decrypt(sealed.value.alg, nonce, ciphertext)
    except Exception as e:
        raise MalformedEnvelopeError(f"Could not decrypt credential {sealed.name}") from e

    try:
        payload = json.loads(plaintext)
        value = CredentialValue.model_validate(payload) if payload is not None else None
    except ValueError:
        raise MalformedEnvelopeError(f"Decrypted credential {sealed.name} is malformed") from None

    return CredentialBody(
        name=sealed.name,
        pathexp=sealed.pathexp,
        project_id=sealed.project_id,
        org_id=sealed.org_id,
        value=value,
    )
