"""JSON file helpers and a TTL cache persisted on top of them."""

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def load_json_dict(path: PathLike) -> Dict[str, Any]:
    """Read a JSON object from `path`; missing or unreadable files yield {}."""
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load JSON from {p}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def write_json_atomic(path: PathLike, data: Dict[str, Any]) -> None:
    """Write `data` to `path` via a temp file and rename, so readers never see partial files."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{p.name}.", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            json.dump(data, tmp, ensure_ascii=False, indent=2)
        os.replace(tmp_path, p)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class PersistentCache:
    """JSON-backed cache of dict entries with a TTL per entry.

    Entries carry a 'cached_at' unix timestamp, added on set() when missing.
    A TTL of 0 keeps entries forever.
    """

    def __init__(self, path: PathLike, ttl_seconds: int = 7 * 24 * 60 * 60):
        """Initialize the cache and load existing entries from `path`."""
        self._path = Path(path)
        self._ttl = int(ttl_seconds)
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = load_json_dict(self._path)

    def _fresh(self, entry: Any) -> bool:
        if not isinstance(entry, dict):
            return False
        try:
            cached_at = int(entry.get("cached_at", 0))
        except (TypeError, ValueError):
            return False
        return self._ttl == 0 or cached_at + self._ttl > int(time.time())

    def get(self, key: str, default: Any = None) -> Any:
        """Return the entry for `key`, or `default` if missing or expired."""
        with self._lock:
            entry = self._data.get(key)
            return entry if self._fresh(entry) else default

    def set(self, key: str, value: Dict[str, Any]) -> None:
        """Store `value` under `key` and persist the cache.

        Persistence failures are logged; the in-memory entry is kept.
        """
        with self._lock:
            entry = dict(value)
            entry.setdefault("cached_at", int(time.time()))
            self._data[key] = entry
            try:
                write_json_atomic(self._path, self._data)
            except OSError as e:
                logger.warning(f"Failed to save cache to {self._path}: {e}")
