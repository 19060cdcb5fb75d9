"""At-rest encryption for stored OAuth refresh tokens.

AES-256-CBC with a random 16-byte IV and PKCS7 padding. Ciphertexts are
stored as ``"<iv hex>:<ciphertext hex>"``. The key is a 64-character hex
string read from ``ENCRYPTION_KEY``.
"""

from __future__ import annotations

import os
import re

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from koordi.config import ENCRYPTION_KEY_ENV
from koordi.errors import ConfigurationError, EncryptionError

_IV_LENGTH = 16
_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class TokenCipher:
    """Encrypts and decrypts short secrets with a fixed AES-256 key."""

    def __init__(self, key_hex: str) -> None:
        if not _KEY_PATTERN.fullmatch(key_hex or ""):
            raise ConfigurationError(
                "ENCRYPTION_KEY not properly configured. Must be a 64-character hex string.",
                context={"key_length": len(key_hex or "")},
            )
        self._key = bytes.fromhex(key_hex)

    @classmethod
    def from_env(cls) -> TokenCipher:
        return cls(os.environ.get(ENCRYPTION_KEY_ENV, "").strip())

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        parts = token.split(":")
        if len(parts) != 2:
            raise EncryptionError(
                "Invalid encrypted text format. Expected format: iv:encryptedData",
                context={"parts_count": len(parts)},
            )
        try:
            iv = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as exc:
            raise EncryptionError(
                "Failed to decrypt data", context={"original_error": type(exc).__name__}
            ) from exc
