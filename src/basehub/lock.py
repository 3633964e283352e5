"""Per-instance locks for lifecycle operations."""

import asyncio

_instance_locks: dict[str, asyncio.Lock] = {}


def get_instance_lock(instance_id: str) -> asyncio.Lock:
    """Get or create a per-instance lock.

    Serializes start/stop/delete on one instance so a stop cannot race a
    delete of the same record. Operations on different instances do not
    contend.
    """
    if instance_id not in _instance_locks:
        _instance_locks[instance_id] = asyncio.Lock()
    return _instance_locks[instance_id]


def discard_instance_lock(instance_id: str) -> None:
    """Forget the lock of a deleted instance."""
    _instance_locks.pop(instance_id, None)
