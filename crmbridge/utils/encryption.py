"""
Credential encryption for stored CRM secrets (AmoCRM API keys, LPTracker password).

Fernet symmetric encryption keyed by ENCRYPTION_KEY. Secrets stay encrypted
at rest and in caches; connectors call decrypt_credential() right before
building a request and never keep the plaintext on the instance.
"""
import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


@lru_cache()
def _cipher(key: str) -> Optional[Fernet]:
    if not key:
        return None
    return Fernet(key.encode())


def _current_cipher() -> Optional[Fernet]:
    from crmbridge.config import get_settings
    return _cipher(get_settings().encryption_key)


def encrypt_credential(plaintext: str) -> str:
    """
    Encrypt a secret for storage.
    Without ENCRYPTION_KEY the value is stored as-is (development only).
    """
    if not plaintext:
        return plaintext

    cipher = _current_cipher()
    if cipher is None:
        logger.warning("ENCRYPTION_KEY not configured, storing credential unencrypted")
        return plaintext
    return cipher.encrypt(plaintext.encode()).decode()


def decrypt_credential(stored: Optional[str], label: str = "credential") -> Optional[str]:
    """
    Decrypt a stored secret at call time.

    Legacy rows written before encryption was enabled hold plaintext; those
    fail token validation and are returned unchanged.
    """
    if not stored:
        return stored

    cipher = _current_cipher()
    if cipher is None:
        return stored

    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken:
        logger.debug("%s is not a Fernet token, using stored value", label)
        return stored
