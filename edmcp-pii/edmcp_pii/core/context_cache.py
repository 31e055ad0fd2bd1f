"""
Per (owner, course) cache of roster snapshots.

Snapshots are immutable and replaced whole, so a reader holding one never
sees a half-applied sync. Writers for the same key are serialized through
`writer()`; a cache miss reloads under the same per-key lock, so a reload
can never interleave with a sync and cache pre-sync data.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from functools import cached_property
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

from edmcp_pii.core.models import GroupEntry, RosterEntry, Variation
from edmcp_pii.core.roster_index import RosterIndex

CacheKey = Tuple[str, int]


@dataclass(frozen=True)
class CourseSnapshot:
    roster: Tuple[RosterEntry, ...] = ()
    groups: Tuple[GroupEntry, ...] = ()
    overrides: Tuple[Variation, ...] = ()
    fetched_at: float = 0.0

    @cached_property
    def index(self) -> RosterIndex:
        """Built on first use and kept for the life of the snapshot."""
        return RosterIndex(self.roster, self.groups, self.overrides)


SnapshotLoader = Callable[[str, int], CourseSnapshot]


class ContextCache:
    """TTL cache of course snapshots, passed by reference to whoever needs rosters."""

    def __init__(self, loader: SnapshotLoader, ttl_seconds: float = 300,
                 clock: Callable[[], float] = time.monotonic):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, CourseSnapshot] = {}
        self._lock = threading.Lock()
        # key -> (lock, writers holding or waiting for it)
        self._key_locks: Dict[CacheKey, Tuple[threading.RLock, int]] = {}

    def _fresh(self, key: CacheKey) -> Optional[CourseSnapshot]:
        with self._lock:
            snapshot = self._entries.get(key)
        if snapshot is not None and self._clock() - snapshot.fetched_at < self.ttl_seconds:
            return snapshot
        return None

    @contextmanager
    def writer(self, owner_id: str, course_id: int) -> Iterator[None]:
        """
        Serializes writers (syncs and reloads) for one key.

        A key's lock lives only while some writer holds or waits for it,
        so the lock table never outgrows the keys in use.
        """
        key = (owner_id, course_id)
        with self._lock:
            lock, users = self._key_locks.get(key, (None, 0))
            if lock is None:
                lock = threading.RLock()
            self._key_locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._lock:
                lock, users = self._key_locks[key]
                if users == 1:
                    del self._key_locks[key]
                else:
                    self._key_locks[key] = (lock, users - 1)

    def get(self, owner_id: str, course_id: int) -> CourseSnapshot:
        """Returns a fresh snapshot, loading it when missing or expired."""
        key = (owner_id, course_id)
        snapshot = self._fresh(key)
        if snapshot is not None:
            return snapshot

        with self.writer(owner_id, course_id):
            snapshot = self._fresh(key)
            if snapshot is not None:
                return snapshot
            loaded = self._loader(owner_id, course_id)
            return self.put(owner_id, course_id, loaded.roster, loaded.groups, loaded.overrides)

    def get_index(self, owner_id: str, course_id: int) -> RosterIndex:
        return self.get(owner_id, course_id).index

    def put(self, owner_id: str, course_id: int, roster: Iterable[RosterEntry],
            groups: Iterable[GroupEntry] = (), overrides: Iterable[Variation] = ()) -> CourseSnapshot:
        """Replaces the entry for a key with a new snapshot stamped now."""
        snapshot = CourseSnapshot(
            roster=tuple(roster),
            groups=tuple(groups),
            overrides=tuple(overrides),
            fetched_at=self._clock(),
        )
        with self._lock:
            self._entries[(owner_id, course_id)] = snapshot
        return snapshot

    def invalidate(self, owner_id: str, course_id: int) -> bool:
        """Drops the entry for a key; True if there was one."""
        with self._lock:
            return self._entries.pop((owner_id, course_id), None) is not None

    def invalidate_owner(self, owner_id: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k[0] == owner_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: CacheKey) -> bool:
        return self._fresh(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
