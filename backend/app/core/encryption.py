"""Credential vault: authenticated symmetric encryption of secrets at rest.

Sealed values are ``base64(nonce || ciphertext || tag)`` produced with
ChaCha20-Poly1305 and a fresh random nonce per call. The key is a single
process-wide 32-byte secret supplied as 64 hex characters in
``ENCRYPTION_KEY``. There is no key versioning: rotating the key makes every
previously sealed value unrecoverable.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from app.core.config import settings
from app.core.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12


def parse_hex_key(hex_key: str) -> bytes:
    """Decode a 64-char hex string into a 32-byte key."""
    try:
        key = bytes.fromhex(hex_key.strip())
    except ValueError as exc:
        raise ConfigurationError("ENCRYPTION_KEY must be a hex string") from exc
    if len(key) != KEY_BYTES:
        raise ConfigurationError(
            "ENCRYPTION_KEY must be a 64-char hex string (32 bytes)"
        )
    return key


class CredentialVault:
    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise ConfigurationError("Vault key must be exactly 32 bytes")
        self._aead = ChaCha20Poly1305(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> "CredentialVault":
        return cls(parse_hex_key(hex_key))

    def seal(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def unseal(self, sealed: str) -> str:
        try:
            combined = base64.b64decode(sealed.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise DecryptionError("Sealed value is not valid base64") from exc
        if len(combined) <= NONCE_BYTES:
            raise DecryptionError("Sealed value is too short")

        nonce, ciphertext = combined[:NONCE_BYTES], combined[NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError("Decryption failed: invalid key or corrupted data") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid UTF-8") from exc


_vault: CredentialVault | None = None


def get_vault() -> CredentialVault:
    """Return the process-wide vault, building it from settings on first use."""
    global _vault
    if _vault is None:
        _vault = CredentialVault.from_hex(settings.ENCRYPTION_KEY)
    return _vault


def encrypt_value(plaintext: str) -> str:
    """Seal a string value for storage."""
    return get_vault().seal(plaintext)


def decrypt_value(ciphertext: str) -> str:
    """Unseal a stored value. Raises DecryptionError on tampered/wrong-key input."""
    return get_vault().unseal(ciphertext)


def try_decrypt_value(value: str) -> str:
    """Unseal, falling back to the raw value for rows written before encryption."""
    try:
        return decrypt_value(value)
    except DecryptionError:
        logger.debug("Value is not sealed; treating it as legacy plaintext")
        return value
