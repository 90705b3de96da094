from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable


logger = logging.getLogger(__name__)


class SubstrateError(ValueError):
    """Raised when stored bytes cannot be turned back into a string value."""


@runtime_checkable
class KeyValueSubstrate(Protocol):
    """The only primitives the local table store relies on."""

    def get_string(self, key: str) -> Optional[str]: ...

    def set_string(self, key: str, value: str) -> None: ...

    def remove_string(self, key: str) -> None: ...


class MemorySubstrate:
    """Dict-backed substrate. Nothing survives the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get_string(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_string(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_string(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileSubstrate:
    """
    Substrate persisted as a single JSON object file: { key: value, ... }.

    - Loaded lazily on first access and kept in memory afterwards.
    - Every mutation rewrites the whole file atomically (temp file + replace).
    - A missing or corrupt file reads as an empty mapping; the corrupt file is
      left in place until the next successful write replaces it.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)
        self._data: Dict[str, str] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable substrate file %s: %s", self._path, exc)
            return
        if isinstance(raw, dict):
            self._data = {str(k): v for k, v in raw.items() if isinstance(v, str)}
        else:
            logger.warning("Ignoring substrate file %s: top level is not an object", self._path)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except BaseException:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise

    def get_string(self, key: str) -> Optional[str]:
        self._ensure_loaded()
        return self._data.get(key)

    def set_string(self, key: str, value: str) -> None:
        self._ensure_loaded()
        self._data[key] = value
        self._save()

    def remove_string(self, key: str) -> None:
        self._ensure_loaded()
        if key in self._data:
            del self._data[key]
            self._save()
