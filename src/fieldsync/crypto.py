"""
Encryption of target api keys at rest.

Keys are stored in sync_configurations.api_key as Fernet tokens. The
Fernet key itself comes from FIELDSYNC_ENCRYPTION_KEY and never touches
the database. Generate one with:

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from fieldsync.config import get_settings


class MissingEncryptionKeyError(RuntimeError):
    """Raised when an api key must be encrypted or decrypted but no key is configured."""


class CredentialDecryptError(RuntimeError):
    """Raised when a stored api key cannot be decrypted with the configured key."""


class CredentialCipher:
    """Fernet wrapper for api keys. Plaintext is str, ciphertext is str."""

    def __init__(self, encryption_key: Optional[str] = None):
        key = encryption_key if encryption_key is not None else get_settings().encryption_key
        self._fernet = Fernet(key.encode()) if key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def _require(self) -> Fernet:
        if self._fernet is None:
            raise MissingEncryptionKeyError(
                "FIELDSYNC_ENCRYPTION_KEY is not set; api keys cannot be stored or read."
            )
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        return self._require().encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._require().decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise CredentialDecryptError(
                "Stored api key could not be decrypted (encryption key rotated?)"
            ) from exc
