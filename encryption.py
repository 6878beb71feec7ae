"""
smartseek/encryption.py

Integration access and refresh tokens are stored encrypted. Each user gets
its own Fernet key, stretched with PBKDF2 from ENCRYPTION_KEY and the user
id, so a row copied onto another account cannot be read back.

Usage:
    from encryption import get_token_cipher

    cipher = get_token_cipher()
    stored = cipher.encrypt(user_id, access_token)
    access_token = cipher.decrypt(user_id, stored)
"""

import os
import base64
import secrets
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class TokenEncryption:
    """
    Per-user token cipher.

    Without ENCRYPTION_KEY a throwaway secret is generated and stored tokens
    stop decrypting after a restart.
    """

    KDF_ITERATIONS = 100_000

    def __init__(self, master_secret: Optional[str] = None):
        self._master_secret = self._load_master_secret(master_secret)

    def _load_master_secret(self, master_secret: Optional[str]) -> bytes:
        key = master_secret or os.environ.get('ENCRYPTION_KEY', '')

        if not key:
            print("[Encryption] ENCRYPTION_KEY missing; integration tokens will not survive a restart")
            key = secrets.token_hex(32)

        return key.encode('utf-8')

    def _derive_key(self, user_id: int) -> bytes:
        """Derive the Fernet key for one user (PBKDF2, user ID as salt)."""
        return _derive(self._master_secret, f'user:{user_id}'.encode('utf-8'), self.KDF_ITERATIONS)

    def encrypt(self, user_id: int, token: Optional[str]) -> Optional[str]:
        """
        Encrypt a token for storage.

        Returns:
            URL-safe text, or None when token is None
        """
        if token is None:
            return None
        fernet = Fernet(self._derive_key(user_id))
        return fernet.encrypt(token.encode('utf-8')).decode('ascii')

    def decrypt(self, user_id: int, stored: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Returns:
            The token, or None if missing or decryption fails
        """
        if stored is None:
            return None
        try:
            fernet = Fernet(self._derive_key(user_id))
            return fernet.decrypt(stored.encode('ascii')).decode('utf-8')
        except InvalidToken:
            print(f"[Encryption] Decryption failed for user {user_id}")
            return None


@lru_cache(maxsize=1024)
def _derive(master_secret: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(master_secret))


_cipher: Optional[TokenEncryption] = None


def get_token_cipher() -> TokenEncryption:
    """Get or create the token cipher singleton."""
    global _cipher
    if _cipher is None:
        _cipher = TokenEncryption()
    return _cipher
