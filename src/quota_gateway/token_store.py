from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

import structlog
from pydantic import ValidationError

from .crypto import CredentialCipher
from .errors import ConfigError
from .models import Account, utcnow

log = structlog.get_logger()

_UNSAFE_ID_RE = re.compile(r"[^A-Za-z0-9_-]")


class TokenStore:
    """
    Durable per-account records, one file per account under `directory`.

    Files are `<id>.json`, or `<id>.enc` (Fernet) when a cipher key is configured.
    Reads are served from an in-memory copy loaded on first use; every write hits
    disk before the cached copy changes, so callers only ever see persisted state.
    """

    def __init__(self, directory: str, cipher: CredentialCipher | None = None):
        self.directory = Path(directory)
        self._cipher = cipher or CredentialCipher(None)
        self._lock = threading.RLock()
        self._accounts: dict[str, Account] | None = None

    @property
    def _suffix(self) -> str:
        return ".enc" if self._cipher.enabled else ".json"

    def _path(self, account_id: str) -> Path:
        return self.directory / f"{_UNSAFE_ID_RE.sub('_', account_id)}{self._suffix}"

    def _read_file(self, path: Path) -> Account | None:
        try:
            raw = self._cipher.decrypt(path.read_bytes())
            return Account.model_validate(json.loads(raw.decode("utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            log.warning("account_file_invalid", file=path.name, error=type(e).__name__)
            return None

    def _write_file(self, account: Account) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        data = self._cipher.encrypt(account.model_dump_json(indent=2).encode("utf-8"))
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path(account.id))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _loaded(self) -> dict[str, Account]:
        if self._accounts is None:
            accounts: dict[str, Account] = {}
            if self.directory.exists():
                for path in sorted(self.directory.glob(f"*{self._suffix}")):
                    account = self._read_file(path)
                    if account is not None:
                        accounts[account.id] = account
            self._accounts = accounts
        return self._accounts

    def list_accounts(self, provider: str | None = None) -> list[Account]:
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in sorted(self._loaded().values(), key=lambda a: a.id)
                if provider is None or a.provider == provider
            ]

    def get(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._loaded().get(account_id)
            return account.model_copy(deep=True) if account else None

    def save(self, account: Account) -> None:
        with self._lock:
            accounts = self._loaded()
            for other in accounts.values():
                if other.id != account.id and self._path(other.id) == self._path(account.id):
                    raise ConfigError(f"Account id {account.id!r} collides with existing account file.")
            self._write_file(account)
            accounts[account.id] = account.model_copy(deep=True)

    def update(self, account_id: str, mutate: Callable[[Account], None]) -> Account | None:
        """Read-modify-write one record under the store lock. Returns None when the account is gone."""
        with self._lock:
            current = self._loaded().get(account_id)
            if current is None:
                return None
            updated = current.model_copy(deep=True)
            mutate(updated)
            updated.updated_at = utcnow()
            self._write_file(updated)
            self._loaded()[account_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, account_id: str) -> bool:
        with self._lock:
            removed = self._loaded().pop(account_id, None)
            self._path(account_id).unlink(missing_ok=True)
            return removed is not None
