"""Per-entity locks for workflows that read, decide, then write."""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class EntityLocks:
    """
    Hands out one lock per (kind, id).

    Endpoints run in a threadpool, so two uploads for the same apprentice can
    interleave. Holding the apprentice's lock across reload + fill-if-blank +
    commit keeps the second one from overwriting what the first just filled.
    Never hold one of these across a network call.

    An entry lives only while someone holds or waits on it, so the map stays
    as small as the number of entities currently being worked on.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, int], _LockEntry] = {}

    @contextmanager
    def hold(self, kind: str, entity_id: int) -> Iterator[None]:
        key = (kind, entity_id)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    def is_held(self, kind: str, entity_id: int) -> bool:
        with self._guard:
            entry = self._locks.get((kind, entity_id))
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide, shared by every request's services
entity_locks = EntityLocks()
