"""Fernet encryption helpers for storing broker webhook keys at rest.

Uses Fernet symmetric encryption (AES-128-CBC + HMAC-SHA256).
Keys are encrypted before being written to ``broker_master`` and
decrypted only in-memory when the sweep dispatcher calls a broker webhook.

Usage:
    from stockloyal.common.encryption import encrypt_api_key, decrypt_api_key

    broker.encrypted_api_key = encrypt_api_key(raw_key)
    api_key = decrypt_api_key(broker.encrypted_api_key)
"""

from __future__ import annotations

from cryptography.fernet import Fernet

from stockloyal.common.config import get_settings


def _get_fernet() -> Fernet:
    """Create a Fernet instance from the app encryption key."""
    settings = get_settings()
    return Fernet(settings.encryption_key.encode())


def encrypt_api_key(plaintext: str) -> str:
    """Encrypt a broker API key for database storage.

    Args:
        plaintext: The raw API key.

    Returns:
        Base64-encoded encrypted string (safe for VARCHAR storage).
    """
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_api_key(ciphertext: str) -> str:
    """Decrypt a broker API key from database storage.

    Raises:
        cryptography.fernet.InvalidToken: If the ciphertext is invalid or
            was encrypted with a different key.
    """
    return _get_fernet().decrypt(ciphertext.encode()).decode()
