# =============================================================================
# Resilink -- Credential Store
# =============================================================================
#
# Holds the current tokens and user snapshot.  Persisted as
# {"state": {"token", "refreshToken", "user", "lastRefresh"}} under one key,
# the same shape the web client keeps in localStorage.
# =============================================================================

from __future__ import annotations

import json
import math
import os
import time
from pathlib import Path
from typing import Any, Protocol

from ._logging import logger
from .constants import STORAGE_KEY
from .types import Credential


class KeyValueStorage(Protocol):
    """String key/value storage, like browser localStorage."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage.  Nothing survives a restart."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage:
    """JSON file holding a flat ``{key: string}`` mapping.

    Writes go through a temp file and ``os.replace`` so a crash never
    leaves a half-written file behind.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get_item(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._dump(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if items.pop(key, None) is not None:
            self._dump(items)

    def _load(self) -> dict[str, Any]:
        """Read the mapping; a missing or unparseable file reads as empty."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as exc:
            logger.warning("Ignoring unreadable storage file %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, items: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(items), encoding="utf-8")
        os.replace(tmp, self._path)


class CredentialStore:
    """Owner of the current :class:`Credential`.

    ``get()`` never raises: unreadable storage or malformed data reads as
    "logged out".

    Args:
        storage: Backing storage. Default: :class:`MemoryStorage`.
        key: Storage key for the persisted state.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        *,
        key: str = STORAGE_KEY,
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self._key = key

    @property
    def is_authenticated(self) -> bool:
        return self.get() is not None

    def get(self) -> Credential | None:
        try:
            raw = self._storage.get_item(self._key)
            if raw is None:
                return None
            return _decode(raw)
        except (
            OSError,
            ValueError,
            TypeError,
            AttributeError,
            OverflowError,
            RecursionError,
        ) as exc:
            logger.debug("Ignoring unreadable credential state: %s", exc)
            return None

    def set(self, credential: Credential) -> None:
        if credential.last_refresh_at is None:
            credential = Credential(
                access_token=credential.access_token,
                refresh_token=credential.refresh_token,
                user=credential.user,
                last_refresh_at=int(time.time() * 1000),
            )
        self._storage.set_item(self._key, _encode(credential))
        logger.debug("Credential stored (has_refresh=%s)", bool(credential.refresh_token))

    def clear(self) -> None:
        self._storage.remove_item(self._key)
        logger.debug("Credential cleared")


def _encode(credential: Credential) -> str:
    return json.dumps(
        {
            "state": {
                "token": credential.access_token,
                "refreshToken": credential.refresh_token,
                "user": credential.user,
                "lastRefresh": credential.last_refresh_at,
            }
        }
    )


def _decode(raw: str) -> Credential | None:
    state = json.loads(raw).get("state")
    if not isinstance(state, dict):
        return None
    token = state.get("token")
    if not isinstance(token, str) or not token:
        return None
    refresh = state.get("refreshToken")
    user = state.get("user")
    last = state.get("lastRefresh")
    return Credential(
        access_token=token,
        refresh_token=refresh if isinstance(refresh, str) and refresh else None,
        user=user if isinstance(user, dict) else None,
        last_refresh_at=_timestamp(last),
    )


def _timestamp(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None
