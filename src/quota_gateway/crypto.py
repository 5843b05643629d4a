from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken


class CredentialCipher:
    """Fernet wrapper for account files. Without a key, bytes pass through unchanged."""

    def __init__(self, key_str: str | None):
        self._fernet = Fernet(key_str.encode("utf-8")) if key_str else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, data: bytes) -> bytes:
        if self._fernet is None:
            return data
        return self._fernet.encrypt(data)

    def decrypt(self, token: bytes) -> bytes:
        if self._fernet is None:
            return token
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as e:
            raise ValueError("Failed to decrypt account file (wrong key or corrupted file).") from e
