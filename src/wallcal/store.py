from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional
import json
import os
import threading

from .models import EventCache


class JsonEventStore:
    """EventCache persisted as one JSON document, replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> EventCache:
        if not self.path.exists():
            return EventCache()
        data: Dict[str, Any] = json.loads(self.path.read_text(encoding="utf-8"))
        return EventCache.from_dict(data)

    def save(self, cache: EventCache) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(cache.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)


class MemoryEventStore:
    def __init__(self, cache: Optional[EventCache] = None) -> None:
        self._cache = cache or EventCache()
        self._lock = threading.Lock()
        self.saves = 0

    def load(self) -> EventCache:
        with self._lock:
            return self._cache

    def save(self, cache: EventCache) -> None:
        with self._lock:
            self._cache = cache
            self.saves += 1
