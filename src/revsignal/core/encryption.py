"""Symmetric encryption of provider OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the cryptography package.
The key is process-wide: a TokenCipher is constructed once at startup from
settings and passed by reference into the CredentialVault and the OAuth
callback handler. Construction fails fast when the key is absent or malformed.
"""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from src.revsignal.core.errors import MissingEncryptionKey


class TokenCipher:
    """Encrypt/decrypt provider credentials for database storage.

    Args:
        key: URL-safe base64-encoded 32-byte Fernet key.

    Raises:
        MissingEncryptionKey: If the key is empty or not a valid Fernet key.
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise MissingEncryptionKey(
                "CREDENTIAL_ENCRYPTION_KEY not set. Generate one with: "
                "python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as exc:
            raise MissingEncryptionKey(f"CREDENTIAL_ENCRYPTION_KEY is not a valid Fernet key: {exc}") from exc

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential (access or refresh token)."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored credential.

        Raises:
            ValueError: If the ciphertext was produced with a different key
                or has been tampered with.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise ValueError("Stored credential could not be decrypted with the configured key") from exc


def generate_key() -> str:
    """Generate a new Fernet key (for provisioning scripts and tests)."""
    return Fernet.generate_key().decode()
