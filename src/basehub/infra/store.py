"""Durable snapshot store for the instance registry.

The registry persists one complete snapshot on every mutation. The store
only has to read and write that snapshot; swapping the backend does not
touch orchestration logic.
"""

import asyncio
import fcntl
import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path
from typing import Any

_LOCK_POLL_S = 0.05


class StoreReadError(Exception):
    """Snapshot exists but could not be read or parsed."""


class StoreLockError(OSError):
    """Exclusive access to the snapshot could not be obtained in time."""


class KeyValueStore(ABC):
    """Interface for a whole-snapshot key/value store.

    Implementations: JsonFileStore
    """

    @abstractmethod
    async def load(self) -> dict[str, Any]:
        """Return the full snapshot keyed by instance id.

        Returns:
            Empty dict when nothing has been stored yet.

        Raises:
            StoreReadError: If the snapshot exists but is unreadable.
        """
        ...

    @abstractmethod
    async def save(self, snapshot: dict[str, Any]) -> None:
        """Replace the stored snapshot with *snapshot*.

        Raises:
            OSError: If the write fails. The previous snapshot stays intact.
        """
        ...

    @abstractmethod
    def exclusive(self) -> AbstractAsyncContextManager[None]:
        """Hold the snapshot exclusively across processes.

        Raises:
            StoreLockError: If another holder keeps it past the lock timeout.
        """
        ...


class JsonFileStore(KeyValueStore):
    """Snapshot stored as a single JSON document.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so readers see either the old or the new
    snapshot, never a partial one.

    exclusive() takes an flock on a sibling ``<name>.lock`` file, so every
    process managing the same snapshot serializes its read-modify-write
    sequences there.
    """

    def __init__(self, path: Path, lock_timeout_s: float = 30.0) -> None:
        self._path = path.expanduser()
        self._lock_path = self._path.with_name(f"{self._path.name}.lock")
        self._lock_timeout_s = lock_timeout_s

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        fd = await asyncio.to_thread(self._open_lock_file)
        try:
            deadline = time.monotonic() + self._lock_timeout_s
            while not _try_flock(fd):
                if time.monotonic() >= deadline:
                    raise StoreLockError(
                        f"Timed out after {self._lock_timeout_s:.0f}s waiting for {self._lock_path}"
                    )
                await asyncio.sleep(_LOCK_POLL_S)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _open_lock_file(self) -> int:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        return os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o600)

    async def load(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, snapshot: dict[str, Any]) -> None:
        payload = json.dumps(snapshot, indent=2, default=str)
        await asyncio.to_thread(self._save_sync, payload)

    def _load_sync(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreReadError(f"Failed to read {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreReadError(f"Unexpected snapshot type in {self._path}: {type(data).__name__}")
        return data

    def _save_sync(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), prefix=f".{self._path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
            os.chmod(self._path, 0o600)
        finally:
            tmp_path.unlink(missing_ok=True)


def _try_flock(fd: int) -> bool:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True
