"""
Authenticated encryption for Canvas tokens at rest.

Each value is encrypted with AES-256-GCM under a fresh 16-byte random nonce. The stored
form is ``hex(nonce):hex(tag):hex(ciphertext)``.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from edu.canvasmcp.bridge.errors import ConfigurationError, IntegrityError

KEY_SIZE = 32
NONCE_SIZE = 16
TAG_SIZE = 16
DELIMITER = ":"


class TokenCipher:
    """AES-256-GCM cipher bound to a single 32-byte key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ConfigurationError.encryption_key_malformed(len(key))
        self._aead = AESGCM(key)

    @classmethod
    def from_base64_key(cls, value: Optional[str]) -> "TokenCipher":
        """
        Build a cipher from the base64 encoded ENCRYPTION_KEY setting.

        Raises:
            ConfigurationError: If the key is absent, not base64, or not exactly 32 bytes
        """
        if value is None or len(value.strip()) == 0:
            raise ConfigurationError.encryption_key_missing()
        try:
            key = base64.b64decode(value.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError.encryption_key_malformed(0)
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")

    def encrypt_bytes(self, plaintext: bytes) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return DELIMITER.join([nonce.hex(), tag.hex(), ciphertext.hex()])

    def decrypt_bytes(self, blob: str) -> bytes:
        parts = blob.split(DELIMITER)
        if len(parts) != 3:
            raise IntegrityError.malformed()
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise IntegrityError.malformed()
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise IntegrityError.malformed()
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise IntegrityError.tag_mismatch()

    def encrypt(self, plaintext: str) -> str:
        return self.encrypt_bytes(plaintext.encode("utf-8"))

    def decrypt(self, blob: str) -> str:
        return self.decrypt_bytes(blob).decode("utf-8")
