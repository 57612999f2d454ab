"""
Encryption service for OAuth tokens.
Uses Fernet symmetric encryption so access/refresh tokens are only ever
plain text in memory.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from configuration.

    Raises:
        EncryptionError: If encryption key is missing or malformed
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token string for BYTEA storage.

    Raises:
        EncryptionError: If the token is empty or encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    return _get_fernet().encrypt(token.encode("utf-8"))


def decrypt_token(encrypted_token: bytes) -> str:
    """
    Decrypt a token read from storage.

    Raises:
        EncryptionError: If the ciphertext is empty, tampered with, or was
            written under a different key
    """
    if not encrypted_token:
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet().decrypt(bytes(encrypted_token)).decode("utf-8")
    except InvalidToken as e:
        logger.error("Failed to decrypt token - invalid token or key")
        raise EncryptionError("Invalid encrypted token or wrong encryption key") from e


def encrypt_oauth_tokens(
    access_token: str, refresh_token: str | None = None
) -> tuple[bytes, bytes | None]:
    """
    Encrypt OAuth access and refresh tokens.

    Returns:
        tuple: (encrypted_access_token, encrypted_refresh_token or None)
    """
    encrypted_access = encrypt_token(access_token)
    encrypted_refresh = encrypt_token(refresh_token) if refresh_token else None
    return encrypted_access, encrypted_refresh


def decrypt_oauth_tokens(
    encrypted_access: bytes, encrypted_refresh: bytes | None = None
) -> tuple[str, str | None]:
    """
    Decrypt OAuth access and refresh tokens.

    Returns:
        tuple: (access_token, refresh_token or None)
    """
    access_token = decrypt_token(encrypted_access)
    refresh_token = decrypt_token(encrypted_refresh) if encrypted_refresh else None
    return access_token, refresh_token


def validate_encryption_config() -> bool:
    """Round-trip a dummy value to confirm the configured key works."""
    try:
        probe = "encryption-probe"
        is_valid = decrypt_token(encrypt_token(probe)) == probe
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False

    if is_valid:
        logger.info("Encryption configuration validated successfully")
    else:
        logger.error("Encryption validation failed - data mismatch")
    return is_valid
