"""
Cryptographic utilities for the Melody Map token service.

Streaming-platform access and refresh tokens are encrypted at rest with Fernet
(AES 128 in CBC mode with HMAC-SHA256 authentication). MultiFernet lets old keys
keep decrypting while the newest key encrypts, so keys can be rotated without a
data migration.
"""

import os
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class CryptoServiceError(Exception):
    """Base exception for CryptoService operations."""

    pass


class DecryptionError(CryptoServiceError):
    """Raised when decryption fails (invalid ciphertext, wrong key, etc.)."""

    pass


class CryptoService:
    """
    Encrypts and decrypts platform tokens with automatic key rotation support.

    Key Management:
    - Primary key from the constructor or FERNET_KEY (newest, used for encryption)
    - Older keys from FERNET_KEYS (comma-separated), used for decryption only

    Usage:
        crypto = CryptoService(settings.fernet_key)
        ciphertext = crypto.encrypt_token("spotify-access-token")
        plaintext = crypto.decrypt_token(ciphertext)
    """

    def __init__(
        self,
        primary_key_b64: Optional[str] = None,
        additional_keys_b64: Optional[str] = None,
    ):
        """
        Initialize CryptoService with a provided key or environment variables.

        Args:
            primary_key_b64: Base64-encoded Fernet key. Falls back to FERNET_KEY.
            additional_keys_b64: Comma-separated retired keys. Falls back to FERNET_KEYS.
        """
        primary_key_b64 = primary_key_b64 or os.getenv("FERNET_KEY")
        if not primary_key_b64:
            raise CryptoServiceError(
                "FERNET_KEY environment variable is required. "
                "Generate one with: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )

        keys: List[Fernet] = []

        try:
            keys.append(Fernet(primary_key_b64.encode()))
        except Exception as e:
            raise CryptoServiceError(f"Invalid FERNET_KEY: {e}") from e

        if additional_keys_b64 is None:
            additional_keys_b64 = os.getenv("FERNET_KEYS", "")
        if additional_keys_b64:
            keys.extend(self._load_additional_keys(additional_keys_b64))

        # First key encrypts, all keys are tried for decryption
        self._multi_fernet = MultiFernet(keys)
        self._key_count = len(keys)

    def _load_additional_keys(self, keys_string: str) -> List[Fernet]:
        """Load retired keys used only for decryption."""
        additional_keys = []

        for key_b64 in keys_string.split(","):
            key_b64 = key_b64.strip()
            if not key_b64:
                continue

            try:
                additional_keys.append(Fernet(key_b64.encode()))
            except Exception as e:
                raise CryptoServiceError(f"Invalid key in FERNET_KEYS: {e}") from e

        return additional_keys

    def encrypt_token(self, plaintext_token: str) -> bytes:
        """
        Encrypt a token with the newest key.

        Raises:
            CryptoServiceError: If the token is empty or encryption fails
        """
        if not plaintext_token:
            raise CryptoServiceError("Cannot encrypt empty token")

        try:
            return self._multi_fernet.encrypt(plaintext_token.encode("utf-8"))
        except Exception as e:
            raise CryptoServiceError(f"Encryption failed: {e}") from e

    def decrypt_token(self, ciphertext: bytes) -> str:
        """
        Decrypt a token, trying every configured key.

        Raises:
            DecryptionError: If decryption fails with all available keys
        """
        if not ciphertext:
            raise DecryptionError("Cannot decrypt empty ciphertext")

        try:
            return self._multi_fernet.decrypt(ciphertext).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(
                f"Failed to decrypt token with any of the {self._key_count} available keys. "
                "Token may be corrupted or encrypted with a key not in the current key set."
            ) from e
        except Exception as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

    def get_key_count(self) -> int:
        """Number of configured keys (for diagnostics)."""
        return self._key_count


def generate_fernet_key() -> str:
    """Generate a new base64-encoded Fernet key suitable for FERNET_KEY."""
    return Fernet.generate_key().decode()
