"""
Key/value stores consumed by the security components.

Two scopes exist:

* a **persistent** store that survives restarts (``MemoryStore`` for tests
  and embedded use, ``FileStore`` for a JSON file on disk);
* a **session** store (``SessionStore``) that holds the session key and the
  CSRF token and is wiped by ``invalidate()`` when the session ends.

All of them are ``MutableMapping[str, str]``: values are always strings
holding serialized records.
"""
import os
import uuid
import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union
from datetime import datetime, timezone
from collections.abc import Iterator, Mapping, MutableMapping

import orjson

from . import conf

logger = logging.getLogger("navigator.storage")


class MemoryStore(MutableMapping[str, str]):
    """In-memory string store."""

    def __init__(self, data: Optional[Mapping[str, str]] = None) -> None:
        self._data: dict[str, str] = {}
        if data:
            for key, value in data.items():
                self[key] = value

    def __repr__(self) -> str:
        return f'<{type(self).__name__} keys={list(self._data.keys())}>'

    def _check(self, key: str, value: str) -> None:
        if not isinstance(key, str):
            raise TypeError(f"Store keys must be str, got {type(key).__name__}")
        if not isinstance(value, str):
            raise TypeError(
                f"Store values must be str, got {type(value).__name__}"
            )

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        # snapshot, callers remove entries while iterating
        return iter(list(self._data))

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        self._check(key, value)
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]


class FileStore(MemoryStore):
    """Persistent store backed by a single JSON document.

    Every mutation rewrites the document through a temporary file and
    ``os.replace`` so a reader never sees a half-written file.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        super().__init__()
        self._data = self._load()

    @classmethod
    def from_env(cls) -> "FileStore":
        """Create a FileStore at NAVIGATOR_SECURITY_STORAGE_PATH."""
        return cls(conf.SECURITY_STORAGE_PATH)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            parsed = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as err:
            logger.error("Unreadable store file %s: %s", self._path, err)
            return {}
        if not isinstance(parsed, dict):
            logger.error("Store file %s is not a JSON object", self._path)
            return {}
        return {
            key: value for key, value in parsed.items()
            if isinstance(key, str) and isinstance(value, str)
        }

    def _flush(self) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}."
            )
            try:
                with os.fdopen(fd, "wb") as fp:
                    fp.write(orjson.dumps(self._data))
                os.replace(tmp, self._path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

    def __setitem__(self, key: str, value: str) -> None:
        super().__setitem__(key, value)
        self._flush()

    def __delitem__(self, key: str) -> None:
        super().__delitem__(key)
        self._flush()

    def clear(self) -> None:
        self._data = {}
        self._flush()


class SessionStore(MemoryStore):
    """Session-scoped store.

    Holds secrets that must not outlive the session (session key, CSRF
    token). ``invalidate()`` ends the session and wipes every entry.
    """

    def __init__(
        self,
        data: Optional[Mapping[str, str]] = None,
        id: Optional[str] = None,
    ) -> None:
        super().__init__(data)
        self._id_ = id or uuid.uuid4().hex
        self._logon_time = datetime.now(timezone.utc)
        self._created = int(self._logon_time.timestamp())
        self._active = True

    def __repr__(self) -> str:
        return (
            f'<NAV-SessionStore [id:{self._id_}, created:{self._created}] '
            f'keys={list(self._data.keys())}>'
        )

    @property
    def session_id(self) -> str:
        return self._id_

    @property
    def created(self) -> int:
        return self._created

    @property
    def logon_time(self) -> datetime:
        return self._logon_time

    @property
    def active(self) -> bool:
        return self._active

    @property
    def empty(self) -> bool:
        return not bool(self._data)

    def invalidate(self) -> None:
        """End the session: drop every session-scoped secret."""
        self._data = {}
        self._active = False
        logger.debug("Session %s invalidated", self._id_)
