from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import threading
from typing import Iterator

from curation.core.errors import DatasetBusy


@dataclass(slots=True)
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class DatasetLockRegistry:
    """Process-local locks keyed by dataset id or upload fingerprint.

    An entry lives only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def is_held(self, key: int | str) -> bool:
        with self._lock:
            return str(key) in self._entries

    def _checkout(self, key: str) -> _LockEntry:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry) -> None:
        with self._lock:
            entry.users -= 1
            if entry.users <= 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @contextmanager
    def hold(self, key: int | str, *, timeout: float | None = None) -> Iterator[None]:
        name = str(key)
        entry = self._checkout(name)
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else max(0.0, timeout))
            if not acquired:
                raise DatasetBusy(
                    f"dataset {key} is locked by another ingestion or analysis",
                    dataset_id=key if isinstance(key, int) else None,
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(name, entry)


dataset_locks = DatasetLockRegistry()


def fingerprint_key(fingerprint: str) -> str:
    return f"fingerprint:{fingerprint}"
