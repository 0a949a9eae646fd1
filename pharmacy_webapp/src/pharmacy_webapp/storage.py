# src/pharmacy_webapp/storage.py
"""
Browser-style key-value storage for credentials and session state.

Two interchangeable stores exist: a persistent one (survives a reload, like
localStorage) and an ephemeral one (per session, like sessionStorage). Which
one holds the credentials is decided by the ``rememberMe`` flag, which itself
always lives in the persistent store so the choice survives a reload.
"""

import abc
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .models import CredentialRecord

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
REFRESH_TOKEN_KEY = "refresh_token"
EXPIRES_AT_KEY = "expires_at"
USER_KEY = "user"
REMEMBER_ME_KEY = "rememberMe"
ACTIVITY_KEY = "last_activity"

CREDENTIAL_KEYS = (TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY, EXPIRES_AT_KEY)


class StorageUnavailableError(Exception):
    """The backing store could not be read or written."""


class KeyValueStore(abc.ABC):
    """Flat string-to-string store."""

    @abc.abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abc.abstractmethod
    def remove_item(self, key: str) -> None:
        ...

    @abc.abstractmethod
    def clear(self) -> None:
        ...

    def set_items(self, items: Dict[str, str]) -> None:
        """Write several keys at once."""
        for key, value in items.items():
            self.set_item(key, value)


class EphemeralStore(KeyValueStore):
    """In-memory store scoped to the running session."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class PersistentStore(KeyValueStore):
    """JSON-file store that survives process restarts."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageUnavailableError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageUnavailableError(f"Unexpected content in {self.path}")
        return data

    def _write(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".storage-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write {self.path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        self.set_items({key: value})

    def set_items(self, items: Dict[str, str]) -> None:
        # One read and one atomic replace for the whole batch
        data = self._read()
        data.update((key, str(value)) for key, value in items.items())
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def clear(self) -> None:
        self._write({})


class CredentialStore:
    """
    Reads and writes the credential record in whichever store the
    ``rememberMe`` flag selects. The selection is made once, at construction
    (i.e. on "page load"), and changed only by :meth:`begin_session`.
    """

    def __init__(self, persistent: KeyValueStore, ephemeral: KeyValueStore):
        self.persistent = persistent
        self.ephemeral = ephemeral
        try:
            self.remember_me = persistent.get_item(REMEMBER_ME_KEY) == "true"
        except StorageUnavailableError as e:
            logger.warning("Persistent storage unavailable (%s); using session storage", e)
            self.remember_me = False

    @property
    def active(self) -> KeyValueStore:
        return self.persistent if self.remember_me else self.ephemeral

    @property
    def inactive(self) -> KeyValueStore:
        return self.ephemeral if self.remember_me else self.persistent

    def begin_session(self, remember_me: bool) -> None:
        """
        Select the store for a fresh sign-in and persist that choice. Any
        credentials left in the other store are dropped, so only one record
        exists across both.
        """
        self.remember_me = remember_me
        self.persistent.set_item(REMEMBER_ME_KEY, "true" if remember_me else "false")
        for key in CREDENTIAL_KEYS:
            self.inactive.remove_item(key)
        logger.debug("Session storage selected: %s", "persistent" if remember_me else "ephemeral")

    def save(self, record: CredentialRecord) -> None:
        self.begin_session(record.remember_me)
        self.update_tokens(record.access_token, record.refresh_token, record.expires_at)

    def update_tokens(self, access_token: str, refresh_token: str, expires_at: int) -> None:
        self.active.set_items(
            {
                TOKEN_KEY: access_token,
                REFRESH_TOKEN_KEY: refresh_token,
                EXPIRES_AT_KEY: str(int(expires_at)),
            }
        )

    def load(self) -> Optional[CredentialRecord]:
        store = self.active
        access_token = store.get_item(TOKEN_KEY)
        refresh_token = store.get_item(REFRESH_TOKEN_KEY)
        if not access_token or not refresh_token:
            return None
        try:
            return CredentialRecord(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=int(store.get_item(EXPIRES_AT_KEY) or 0),
                remember_me=self.remember_me,
            )
        except (ValueError, ValidationError):
            logger.warning("Stored credential record is corrupt; ignoring it")
            return None

    @property
    def access_token(self) -> Optional[str]:
        return self.active.get_item(TOKEN_KEY)

    @property
    def refresh_token(self) -> Optional[str]:
        return self.active.get_item(REFRESH_TOKEN_KEY)

    @property
    def expires_at(self) -> Optional[int]:
        raw = self.active.get_item(EXPIRES_AT_KEY)
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    def save_user(self, user: Dict[str, Any]) -> None:
        self.active.set_item(USER_KEY, json.dumps(user))

    def load_user(self) -> Optional[Dict[str, Any]]:
        raw = self.active.get_item(USER_KEY)
        if not raw:
            return None
        try:
            user = json.loads(raw)
        except ValueError:
            return None
        return user if isinstance(user, dict) else None

    def clear(self) -> None:
        """Remove the credential record from both stores."""
        for key in CREDENTIAL_KEYS:
            self.persistent.remove_item(key)
            self.ephemeral.remove_item(key)
        self.persistent.remove_item(REMEMBER_ME_KEY)
        self.remember_me = False
