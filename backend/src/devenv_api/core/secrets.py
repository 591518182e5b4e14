"""Encryption of per-environment secrets at rest.

Secrets are encrypted with AES-256-CBC under a key derived from the
application secret. Each value gets a fresh random IV and is serialized as
``<hex iv>:<hex ciphertext>``.
"""

import logging
import os
import secrets

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from devenv_api.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

IV_SIZE = 16
KDF_ITERATIONS = 480000


class SecretDecryptionError(Exception):
    """Raised when a stored secret is malformed or was encrypted under another key."""

    pass


def derive_key(secret_key: str, salt: str) -> bytes:
    """Derive a 256-bit AES key from the application secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret_key.encode())


class SecretCipher:
    """AES-256-CBC cipher for short secrets such as VM access tokens.

    Example:
        ```python
        cipher = get_secret_cipher()
        stored = cipher.encrypt("s3cr3t")   # "9f0c...:4ab1..."
        cipher.decrypt(stored)              # "s3cr3t"
        ```
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("AES-256 requires a 32-byte key")
        self._key = key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string under a fresh random IV."""
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """Decrypt a value produced by :meth:`encrypt`.

        Raises:
            SecretDecryptionError: If the value is malformed or the key is wrong
        """
        try:
            iv_hex, ciphertext_hex = token.split(":", 1)
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as e:
            raise SecretDecryptionError("Encrypted value is malformed") from e

        if len(iv) != IV_SIZE or not ciphertext or len(ciphertext) % IV_SIZE:
            raise SecretDecryptionError("Encrypted value is malformed")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        try:
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as e:
            # Bad padding or bytes that are not UTF-8 mean a different key
            raise SecretDecryptionError("Failed to decrypt secret") from e


def generate_access_token() -> str:
    """Generate a random URL-safe access token for a new environment."""
    return secrets.token_urlsafe(32)


# Global cipher instance
_secret_cipher: SecretCipher | None = None


def get_secret_cipher(settings: Settings | None = None) -> SecretCipher:
    """Get the global SecretCipher keyed from the application secret."""
    global _secret_cipher
    if _secret_cipher is None:
        settings = settings or get_settings()
        _secret_cipher = SecretCipher(derive_key(settings.secret_key, settings.secret_salt))
    return _secret_cipher
