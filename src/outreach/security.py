"""
Credential encryption at rest.

Platform API keys are stored Fernet-encrypted on SyncConnection. The key
comes from CREDENTIAL_KEY; when it is unset (local development) the
credential is stored as-is so the service still runs without setup.
"""
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from outreach.config import get_settings


class CredentialDecryptError(RuntimeError):
    """Raised when a stored credential cannot be decrypted with the configured key."""


def _fernet(key: Optional[str] = None) -> Optional[Fernet]:
    key = get_settings().credential_key if key is None else key
    if not key:
        return None
    return Fernet(key.encode())


def encrypt_credential(plaintext: str, key: Optional[str] = None) -> str:
    fernet = _fernet(key)
    if fernet is None:
        return plaintext
    return fernet.encrypt(plaintext.encode()).decode("ascii")


def decrypt_credential(token: str, key: Optional[str] = None) -> str:
    fernet = _fernet(key)
    if fernet is None:
        return token
    try:
        return fernet.decrypt(token.encode()).decode("utf-8")
    except InvalidToken as exc:
        raise CredentialDecryptError("stored credential does not match CREDENTIAL_KEY") from exc
