"""Security utilities for bearer tokens and credential encryption."""

from datetime import datetime, timedelta, timezone
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt

from azpulse.core.config import settings


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """
    Create a JWT access token.

    Tokens are normally minted by the identity provider fronting the
    dashboards; this helper exists for service accounts and tests.

    Args:
        data: Claims to encode (``sub`` and ``capabilities``)
        expires_delta: Token expiration time delta

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any] | None:
    """
    Decode and verify a JWT token.

    Args:
        token: JWT token to decode

    Returns:
        Decoded token data or None if invalid
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


class CredentialDecryptionError(Exception):
    """Stored secret cannot be decrypted with the configured key."""

    pass


# Fernet encryption for tenant secrets
class CredentialEncryption:
    """Handles encryption and decryption of tenant secrets."""

    def __init__(self, key: str | None = None) -> None:
        """Initialize Fernet cipher with encryption key from settings."""
        self.cipher = Fernet((key or settings.ENCRYPTION_KEY).encode())

    def encrypt(self, data: str) -> bytes:
        """
        Encrypt sensitive data.

        Args:
            data: Plain text data to encrypt

        Returns:
            Encrypted data as bytes
        """
        return self.cipher.encrypt(data.encode())

    def decrypt(self, encrypted_data: bytes) -> str:
        """
        Decrypt encrypted data.

        Args:
            encrypted_data: Encrypted data as bytes

        Returns:
            Decrypted plain text data

        Raises:
            CredentialDecryptionError: If the key changed or the blob is corrupt
        """
        try:
            return self.cipher.decrypt(encrypted_data).decode()
        except InvalidToken as e:
            raise CredentialDecryptionError("Stored secret could not be decrypted") from e


# Create global encryption instance
credential_encryption = CredentialEncryption()
