"""AES-256-GCM encryption for stored provider tokens.

Ciphertext layout: 12-byte random nonce followed by the GCM output
(ciphertext + 16-byte tag). The key is a base64-encoded 32-byte value,
loaded once at startup and handed to the vault explicitly.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ampel_sync.exceptions import DecryptionError, ValidationError

NONCE_SIZE = 12
KEY_SIZE = 32


class TokenCipher:
    """Authenticated encryption of token strings.

    Instances are immutable and safe to share between coroutines.

    Usage:
        cipher = TokenCipher.from_base64(settings.encryption_key)
        blob = cipher.encrypt("ghp_secret")
        cipher.decrypt(blob)  # "ghp_secret"
    """

    __slots__ = ("_aead",)

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValidationError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded: str) -> "TokenCipher":
        """Build a cipher from the configured base64 key.

        Raises:
            ValidationError: If the key is missing, not base64, or the wrong size
        """
        if not encoded:
            raise ValidationError("No encryption key configured (AMPEL_ENCRYPTION_KEY)")
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("Encryption key is not valid base64") from e
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        """A fresh random key, base64-encoded for AMPEL_ENCRYPTION_KEY."""
        return base64.b64encode(AESGCM.generate_key(bit_length=KEY_SIZE * 8)).decode("ascii")

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt with a fresh random nonce (never reused)."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)

    def decrypt(self, blob: bytes) -> str:
        """Decrypt a stored token.

        Raises:
            DecryptionError: On tampering, truncation or a key mismatch
        """
        if len(blob) <= NONCE_SIZE:
            raise DecryptionError("Stored token is truncated")
        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, None).decode("utf-8")
        except InvalidTag:
            raise DecryptionError(
                "Failed to decrypt stored token: key mismatch or corrupted data"
            ) from None
