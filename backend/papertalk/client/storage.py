"""
Key-value persistence for the offline submission buffer.

Values are strings (JSON documents). Both stores can be given a byte quota and
raise ``StorageQuotaExceeded`` when a write would exceed it, the way browser
storage rejects writes once it is full.
"""

import json
import os
from pathlib import Path
from typing import Dict, Optional


class StorageQuotaExceeded(Exception):
    """Write rejected because the store is full."""


class KeyValueStore:
    """Port for the client's durable storage."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


def _size_of(items: Dict[str, str]) -> int:
    return sum(len(k.encode("utf-8")) + len(v.encode("utf-8")) for k, v in items.items())


class MemoryKeyValueStore(KeyValueStore):

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        candidate = {**self._items, key: value}
        if self.quota_bytes is not None and _size_of(candidate) > self.quota_bytes:
            raise StorageQuotaExceeded(f"Writing {key} would exceed {self.quota_bytes} bytes")
        self._items = candidate

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """All keys in one JSON file, replaced atomically on every write."""

    def __init__(self, path, quota_bytes: Optional[int] = None):
        self.path = Path(path)
        self.quota_bytes = quota_bytes

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, items: Dict[str, str]) -> None:
        if self.quota_bytes is not None and _size_of(items) > self.quota_bytes:
            raise StorageQuotaExceeded(f"{self.path} would exceed {self.quota_bytes} bytes")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(items, f)
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._save(items)

    def delete(self, key: str) -> None:
        items = self._load()
        if key in items:
            del items[key]
            self._save(items)
