"""
Field-level encryption for Login-with-Amazon secrets stored on credentials.

Fernet symmetric encryption keyed by ENCRYPTION_KEY. Without a key (local
development only) values pass through unchanged.
"""

import logging
from cryptography.fernet import Fernet, InvalidToken
from report_sync.config import get_settings

logger = logging.getLogger(__name__)

_fernet = None
_warned_plaintext = False


def _cipher() -> Fernet | None:
    global _fernet, _warned_plaintext
    if _fernet is not None:
        return _fernet

    settings = get_settings()
    if not settings.encryption_key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _warned_plaintext:
            logger.warning("ENCRYPTION_KEY not set; credential tokens are stored in plaintext.")
            _warned_plaintext = True
        return None

    try:
        _fernet = Fernet(settings.encryption_key.encode())
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
    return _fernet


def encrypt_value(plaintext: str | None) -> str | None:
    if plaintext is None:
        return None
    cipher = _cipher()
    return cipher.encrypt(plaintext.encode()).decode() if cipher else plaintext


def decrypt_value(ciphertext: str | None) -> str | None:
    """Decrypt a stored secret. Rows written before a key was configured come back as-is."""
    if ciphertext is None:
        return None
    cipher = _cipher()
    if cipher is None:
        return ciphertext
    try:
        return cipher.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.warning("Stored credential value is not Fernet ciphertext; using it unchanged.")
        return ciphertext


def reset_cipher() -> None:
    """Forget the cached key (settings reloaded, tests)."""
    global _fernet, _warned_plaintext
    _fernet = None
    _warned_plaintext = False
