"""
AES-GCM cipher adapter used to seal credentials.

The daemon receives key material from the CLI at login (the CLI does the
passphrase derivation). A per-purpose key is derived from it with
HKDF-SHA256 and used with AES-256-GCM.

Security Note:
    Never log plaintext, ciphertext or key material.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""

import os
from typing import Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

ALGORITHM = "aes256gcm-hkdf-sha256"
NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
MIN_KEY_MATERIAL = 16


def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte key using HKDF-SHA256.

    Args:
        seed: Input key material supplied at login.
        context: Context string for domain separation.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


class AesGcmCipher:
    """Cipher capability for keyhold.envelope.seal_credential/open_credential."""

    def __init__(self, key_material: bytes, context: str = "keyhold-credentials"):
        if len(key_material) < MIN_KEY_MATERIAL:
            raise ValueError(f"key material must be at least {MIN_KEY_MATERIAL} bytes")
        self._aead = AESGCM(derive_key(key_material, context))

    def __repr__(self) -> str:
        return f"AesGcmCipher(alg={ALGORITHM!r})"

    def encrypt(self, plaintext: bytes) -> Tuple[str, bytes, bytes]:
        nonce = os.urandom(NONCE_SIZE)
        return ALGORITHM, nonce, self._aead.encrypt(nonce, plaintext, None)

    def decrypt(self, alg: str, nonce: bytes, ciphertext: bytes) -> bytes:
        if alg != ALGORITHM:
            raise ValueError(f"Unsupported credential algorithm: {alg}")
        if len(nonce) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
        return self._aead.decrypt(nonce, ciphertext, None)
