"""File-backed stand-in for a cloud API.

Keeps records in named collections persisted to a single JSON file so
that separate engine runs observe the same "actual" infrastructure.
Used by the google provider when no other backend is supplied.
"""

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class LocalCloud:
    """JSON-file record store with collection/key addressing.

    All mutations are saved immediately. A process-wide lock serializes
    access from executor worker threads.
    """

    def __init__(self, path: Optional[Path] = None):
        """Initialize the store.

        Args:
            path: JSON file to persist to; None keeps records in memory only
        """
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._data: dict[str, dict[str, dict]] = {}
        if self.path is not None and self.path.exists():
            with open(self.path, encoding='utf-8') as f:
                self._data = json.load(f)
            logger.debug(f"Loaded local cloud from {self.path}")

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            record = self._data.get(collection, {}).get(key)
            return copy.deepcopy(record) if record is not None else None

    def exists(self, collection: str, key: str) -> bool:
        with self._lock:
            return key in self._data.get(collection, {})

    def put(self, collection: str, key: str, record: dict) -> None:
        with self._lock:
            self._data.setdefault(collection, {})[key] = copy.deepcopy(record)
            self._save()

    def delete(self, collection: str, key: str) -> bool:
        """Remove a record. Returns False if it did not exist."""
        with self._lock:
            removed = self._data.get(collection, {}).pop(key, None) is not None
            if removed:
                self._save()
            return removed

    def keys(self, collection: str, prefix: str = '') -> list[str]:
        with self._lock:
            return sorted(k for k in self._data.get(collection, {}) if k.startswith(prefix))

    def transaction(self) -> threading.RLock:
        """Lock to hold across a read-check-write sequence."""
        return self._lock
