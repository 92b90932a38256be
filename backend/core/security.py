"""
StockPulse Security Utilities

Encryption for shop access tokens stored in shop_connections.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from core.config import DEFAULT_ENCRYPTION_KEY, get_settings


def _fernet() -> Fernet:
    # Dev key must be deterministic so the worker and the beat process
    # can both decrypt tokens written by the other.
    settings = get_settings()
    if settings.encryption_key == DEFAULT_ENCRYPTION_KEY:
        dev_key = base64.urlsafe_b64encode(hashlib.sha256(b"stockpulse-dev-key-not-for-production").digest())
        return Fernet(dev_key)
    return Fernet(settings.encryption_key.encode())


def encrypt(plaintext: str) -> str:
    """Encrypt sensitive data (shop access tokens)."""
    return _fernet().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    """Decrypt sensitive data. Raises ValueError on a corrupt or foreign token."""
    try:
        return _fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Access token could not be decrypted with the configured key") from exc
