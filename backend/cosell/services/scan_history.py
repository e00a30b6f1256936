"""
Scan history for incremental scans.

Each source type has its own key holding the end of its last successful
scan, plus one key for the last full scan. Writes touch a single key, so
scans of different sources never overwrite each other's marker.
"""
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from cosell.core.config import get_settings
from cosell.models.schemas import CommunicationType, as_utc

logger = logging.getLogger(__name__)

KEY_PREFIX = "scan-history"
FULL_SCAN_KEY = f"{KEY_PREFIX}:full"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self):
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """
    Durable key-value store in a single JSON file.

    Each operation reloads the file and rewrites only the touched key under
    a process-wide lock; the scheduler thread and request handlers share it.
    """

    _lock = threading.Lock()

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Scan history file unreadable ({e}), starting fresh")
            return {}

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp.replace(self.path)

    async def get(self, key: str) -> Any:
        with self._lock:
            return self._load().get(key)

    async def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    async def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)


def _source_key(source: CommunicationType) -> str:
    return f"{KEY_PREFIX}:{CommunicationType(source).value}"


def _parse(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Ignoring unparseable scan history value {value!r}")
        return None


class ScanHistoryTracker:
    """Last-successful-scan timestamps per source, backed by a KeyValueStore."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get_last_scan_date(self, source: CommunicationType) -> Optional[datetime]:
        return _parse(await self.store.get(_source_key(source)))

    async def update_scan_date(self, source: CommunicationType, timestamp: datetime) -> None:
        await self.store.set(_source_key(source), as_utc(timestamp).isoformat())

    async def get_last_full_scan_date(self) -> Optional[datetime]:
        return _parse(await self.store.get(FULL_SCAN_KEY))

    async def update_full_scan_date(self, timestamp: datetime) -> None:
        await self.store.set(FULL_SCAN_KEY, as_utc(timestamp).isoformat())

    async def get_history(self) -> dict:
        """Snapshot for the status endpoint."""
        return {
            "last_scan_by_source": {
                source.value: await self.get_last_scan_date(source)
                for source in CommunicationType
            },
            "last_full_scan": await self.get_last_full_scan_date(),
        }

    async def clear(self) -> None:
        for source in CommunicationType:
            await self.store.delete(_source_key(source))
        await self.store.delete(FULL_SCAN_KEY)
        logger.info("Scan history cleared")


_tracker: Optional[ScanHistoryTracker] = None


def get_scan_history() -> ScanHistoryTracker:
    """Process-wide tracker on the configured JSON file."""
    global _tracker
    if _tracker is None:
        _tracker = ScanHistoryTracker(JsonFileKeyValueStore(get_settings().scan_history_file))
    return _tracker
