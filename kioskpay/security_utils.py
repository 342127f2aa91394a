"""
Security helpers: encryption of OAuth tokens at rest and masking for logs
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from .config import SECRET_KEY, SQUARE_ENCRYPTION_KEY

logger = logging.getLogger(__name__)


def _build_cipher() -> Fernet:
    if SQUARE_ENCRYPTION_KEY:
        return Fernet(SQUARE_ENCRYPTION_KEY.encode())
    logger.warning("⚠️ SQUARE_ENCRYPTION_KEY not set, deriving token encryption key from SECRET_KEY")
    derived = base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest())
    return Fernet(derived)


# Encryption for tokens
cipher_suite = _build_cipher()


class TokenDecryptionError(Exception):
    """Raised when a stored token cannot be decrypted (key rotated or data corrupted)"""

    pass


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage"""
    return cipher_suite.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a stored token"""
    try:
        return cipher_suite.decrypt(encrypted_token.encode()).decode()
    except InvalidToken as e:
        logger.error("❌ Failed to decrypt stored token")
        raise TokenDecryptionError("Stored token could not be decrypted") from e


def decrypt_optional(encrypted_token):
    return decrypt_token(encrypted_token) if encrypted_token else None


def mask_sensitive_data(data: str, visible_chars: int = 8) -> str:
    """Mask a secret for logging, keeping only a short prefix"""
    if not data:
        return ""
    if len(data) <= visible_chars:
        return "*" * len(data)
    return data[:visible_chars] + "..."
