"""
File-backed API key store for the gateway.

Readers never take a lock: the table is an immutable mapping that writers
replace wholesale. Writers (add, delete, reload) serialise on one lock, build
the next table off to the side, persist it, and only then swap the reference.
"""

from __future__ import annotations

import os
import secrets
import tempfile
import threading
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from shared.errors import CredentialParseError, CredentialPersistError
from shared.logging import get_logger

KEY_BYTES = 24


class Credential(BaseModel):
    """A single API key and the account it identifies."""

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    created_at: datetime


_CREDENTIAL_LIST = TypeAdapter(List[Credential])


def generate_key() -> str:
    """Return a fresh hex-encoded random key (192 bits)."""
    return secrets.token_hex(KEY_BYTES)


def read_credentials(path: str, *, missing_ok: bool = True) -> Dict[str, Credential]:
    """Parse a credential file into a key -> Credential table."""
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except FileNotFoundError:
        if missing_ok:
            return {}
        raise CredentialParseError(path, "file not found")
    except OSError as exc:
        raise CredentialParseError(path, exc.strerror or str(exc)) from exc

    try:
        credentials = _CREDENTIAL_LIST.validate_json(data)
    except PydanticValidationError as exc:
        raise CredentialParseError(path, f"{exc.error_count()} validation error(s)") from exc

    return {credential.key: credential for credential in credentials}


class CredentialStore:
    """Concurrency-safe, persisted mapping of API key to account name."""

    def __init__(self, path: str, credentials: Optional[Mapping[str, Credential]] = None):
        self.path = path
        self.logger = get_logger("gateway.credential_store")
        self._credentials: Mapping[str, Credential] = MappingProxyType(dict(credentials or {}))
        self._write_lock = threading.Lock()

    @classmethod
    def load(cls, path: str) -> "CredentialStore":
        """Build a store from ``path``; a missing file yields an empty store."""
        store = cls(path, read_credentials(path, missing_ok=True))
        store.logger.info("Credentials loaded", path=path, count=len(store))
        return store

    def __len__(self) -> int:
        return len(self._credentials)

    def valid(self, key: Optional[str]) -> Tuple[Optional[str], bool]:
        """Return ``(account name, True)`` for a known key, ``(None, False)`` otherwise."""
        if not key:
            return None, False
        credential = self._credentials.get(key)
        if credential is None:
            return None, False
        return credential.name, True

    def list(self) -> List[Credential]:
        """Snapshot of all credentials, oldest first."""
        return sorted(self._credentials.values(), key=lambda c: c.created_at)

    def add(self, name: str) -> Credential:
        """Create, persist and return a credential for ``name``.

        Raises CredentialPersistError if the table could not be written; the
        in-memory table is left as it was in that case.
        """
        name = name.strip()
        if not name:
            raise ValueError("credential name must not be empty")

        with self._write_lock:
            table = dict(self._credentials)
            key = generate_key()
            while key in table:
                key = generate_key()
            credential = Credential(key=key, name=name, created_at=datetime.now(timezone.utc))
            table[key] = credential
            self._persist(table)
            self._credentials = MappingProxyType(table)

        self.logger.info("Credential added", name=name, key_prefix=key[:8])
        return credential

    def delete(self, key: str) -> bool:
        """Revoke ``key``. Returns False if it was not present.

        Raises CredentialPersistError if the table could not be written.
        """
        with self._write_lock:
            if key not in self._credentials:
                return False
            table = dict(self._credentials)
            removed = table.pop(key)
            self._persist(table)
            self._credentials = MappingProxyType(table)

        self.logger.info("Credential deleted", name=removed.name, key_prefix=key[:8])
        return True

    def reload(self, path: Optional[str] = None) -> int:
        """Re-read the credential file and swap it in as a whole.

        On CredentialParseError the current table stays in place untouched.
        Returns the number of credentials now loaded.
        """
        source = path or self.path
        with self._write_lock:
            table = read_credentials(source, missing_ok=False)
            self._credentials = MappingProxyType(table)
            self.path = source
        return len(table)

    def _persist(self, table: Mapping[str, Credential]) -> None:
        """Write ``table`` to a temp file next to the target, then rename over it."""
        payload = _CREDENTIAL_LIST.dump_json(list(table.values()), indent=2)
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            # mkstemp creates the file with mode 0600
            fd, tmp_path = tempfile.mkstemp(prefix=".credentials-", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("Credential persist failed", path=self.path, error=str(exc))
            raise CredentialPersistError(self.path, exc.strerror or str(exc)) from exc
