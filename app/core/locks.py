"""
In-process keyed mutual exclusion.

Serializes work on a single business subscription or a single discount code
across request threads and scheduler workers of the same process. Across
processes the database row lock / version column is the serialization point.

Entries are reference counted and dropped when the last holder or waiter
leaves, so the table only holds keys that are in use.
"""
from contextlib import contextmanager
import threading


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


_locks = {}
_locks_guard = threading.Lock()


def _acquire_entry(name) -> _Entry:
    with _locks_guard:
        entry = _locks.get(name)
        if entry is None:
            entry = _locks[name] = _Entry()
        entry.users += 1
        return entry


def _release_entry(name, entry: _Entry) -> None:
    with _locks_guard:
        entry.users -= 1
        if entry.users == 0:
            del _locks[name]


@contextmanager
def keyed_lock(namespace: str, key):
    """Hold the lock for ``(namespace, key)`` for the duration of the block."""
    name = (namespace, str(key))
    entry = _acquire_entry(name)
    try:
        with entry.lock:
            yield
    finally:
        _release_entry(name, entry)


def active_lock_count() -> int:
    with _locks_guard:
        return len(_locks)


def subscription_lock(business_id):
    return keyed_lock("subscription", business_id)


def discount_code_lock(discount_code_id):
    return keyed_lock("discount_code", discount_code_id)
