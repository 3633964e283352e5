"""Durable instance registry.

Single source of truth mapping instance id -> InstanceRecord. The full
snapshot is rewritten on every mutation.

Several processes may manage the same snapshot (every CLI invocation is
one). Read-check-then-write sequences therefore run inside transaction(),
which holds the store's cross-process lock and re-reads the snapshot
before the caller checks anything.

Failure policy:
- Read failures (missing or corrupt snapshot) degrade to an empty registry
  at load, and keep the previous view on a later refresh.
- Write failures raise PersistenceError and leave memory unchanged.
- Entries that fail validation are kept verbatim and written back with
  every snapshot. Their ports stay reserved.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, NamedTuple

from pydantic import ValidationError as PydanticValidationError

from basehub.errors import PersistenceError
from basehub.infra.store import KeyValueStore, StoreLockError, StoreReadError
from basehub.logging_schema import LogEvent
from basehub.metrics import INSTANCES_TOTAL
from basehub.models import InstanceRecord

logger = logging.getLogger(__name__)


class _Snapshot(NamedTuple):
    records: dict[str, InstanceRecord]
    unreadable: dict[str, Any]
    migrated: int


class InstanceRegistry:
    """In-memory view of the persisted snapshot.

    Plain reads use the view as of the last load or transaction. Mutations
    outside a transaction still persist, but do not see writes made by
    other processes since then.
    """

    def __init__(self, store: KeyValueStore, default_owner: str = "admin") -> None:
        self._store = store
        self._default_owner = default_owner
        self._records: dict[str, InstanceRecord] = {}
        self._unreadable: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _held(self) -> AsyncIterator[None]:
        async with self._lock, AsyncExitStack() as stack:
            try:
                await stack.enter_async_context(self._store.exclusive())
            except StoreLockError as exc:
                logger.error(
                    "Registry is locked by another process",
                    extra={"event": LogEvent.REGISTRY_LOCK_TIMEOUT, "error": str(exc)},
                )
                raise PersistenceError(f"Instance registry is busy: {exc}") from exc
            yield

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Hold the registry exclusively with a fresh view of the snapshot.

        Raises:
            PersistenceError: The snapshot stayed locked past the timeout.
        """
        async with self._held():
            await self._refresh()
            yield

    async def load(self) -> None:
        """Load the snapshot and migrate records missing an owner."""
        async with self._held():
            try:
                snapshot = await self._read()
            except StoreReadError as exc:
                logger.warning(
                    "Registry unreadable, starting empty",
                    extra={"event": LogEvent.REGISTRY_LOAD_FAILED, "error": str(exc)},
                )
                self._apply(_Snapshot({}, {}, 0))
                return

            if snapshot.migrated:
                await self._persist(snapshot.records, snapshot.unreadable)
                logger.info(
                    "Assigned default owner to legacy records",
                    extra={
                        "event": LogEvent.REGISTRY_MIGRATED,
                        "count": snapshot.migrated,
                        "owner": self._default_owner,
                    },
                )
            self._apply(snapshot)

        logger.info(
            "Registry loaded",
            extra={
                "event": LogEvent.REGISTRY_LOADED,
                "count": len(self._records),
                "unreadable": len(self._unreadable),
            },
        )

    async def _refresh(self) -> None:
        try:
            snapshot = await self._read()
        except StoreReadError as exc:
            logger.warning(
                "Registry unreadable, keeping previous view",
                extra={"event": LogEvent.REGISTRY_LOAD_FAILED, "error": str(exc)},
            )
            return
        # Legacy owners are written out with the caller's next mutation
        self._apply(snapshot)

    async def _read(self) -> _Snapshot:
        raw = await self._store.load()
        records: dict[str, InstanceRecord] = {}
        unreadable: dict[str, Any] = {}
        migrated = 0
        for key, entry in raw.items():
            if not isinstance(entry, dict):
                logger.warning(
                    "Keeping malformed registry entry untouched",
                    extra={"event": LogEvent.REGISTRY_LOAD_FAILED, "instance_id": key},
                )
                unreadable[key] = entry
                continue
            candidate = entry
            if not entry.get("owner"):
                candidate = {**entry, "owner": self._default_owner}
            try:
                record = InstanceRecord.model_validate(candidate)
            except PydanticValidationError as exc:
                logger.warning(
                    "Keeping invalid registry entry untouched",
                    extra={
                        "event": LogEvent.REGISTRY_LOAD_FAILED,
                        "instance_id": key,
                        "error": str(exc),
                    },
                )
                unreadable[key] = entry
                continue
            if candidate is not entry:
                migrated += 1
            records[key] = record
        return _Snapshot(records, unreadable, migrated)

    def _apply(self, snapshot: _Snapshot) -> None:
        self._records = snapshot.records
        self._unreadable = snapshot.unreadable
        INSTANCES_TOTAL.set(len(snapshot.records))

    def get(self, instance_id: str) -> InstanceRecord | None:
        return self._records.get(instance_id)

    def list(self) -> list[InstanceRecord]:
        return list(self._records.values())

    def count(self) -> int:
        return len(self._records)

    def is_taken(self, instance_id: str) -> bool:
        """True when *instance_id* is used by any entry, readable or not."""
        return instance_id in self._records or instance_id in self._unreadable

    def exists_by_name(self, name: str) -> bool:
        """Case-insensitive name lookup, including unreadable entries."""
        wanted = name.strip().casefold()
        names = [r.name for r in self._records.values()]
        names += [
            entry["name"]
            for entry in self._unreadable.values()
            if isinstance(entry, dict) and isinstance(entry.get("name"), str)
        ]
        return any(n.strip().casefold() == wanted for n in names)

    def unreadable_ports(self) -> set[int]:
        """Ports named by entries that failed validation, as far as legible."""
        ports: set[int] = set()
        for entry in self._unreadable.values():
            raw_ports = entry.get("ports") if isinstance(entry, dict) else None
            if not isinstance(raw_ports, dict):
                continue
            ports.update(
                port
                for port in raw_ports.values()
                if isinstance(port, int) and not isinstance(port, bool)
            )
        return ports

    async def put(self, instance_id: str, record: InstanceRecord) -> None:
        """Insert or fully overwrite *instance_id* and persist."""
        records = dict(self._records)
        records[instance_id] = record
        unreadable = {k: v for k, v in self._unreadable.items() if k != instance_id}
        await self._commit(records, unreadable)

    async def delete(self, instance_id: str) -> None:
        """Remove *instance_id* and persist. Missing ids are a no-op."""
        if instance_id not in self._records:
            return
        records = dict(self._records)
        del records[instance_id]
        await self._commit(records, self._unreadable)

    async def _commit(self, records: dict[str, InstanceRecord], unreadable: dict[str, Any]) -> None:
        await self._persist(records, unreadable)
        self._apply(_Snapshot(records, unreadable, 0))

    async def _persist(self, records: dict[str, InstanceRecord], unreadable: dict[str, Any]) -> None:
        snapshot: dict[str, Any] = dict(unreadable)
        snapshot.update((key, record.model_dump(mode="json")) for key, record in records.items())
        try:
            await self._store.save(snapshot)
        except OSError as exc:
            logger.error(
                "Failed to write registry",
                extra={"event": LogEvent.REGISTRY_WRITE_FAILED, "error": str(exc)},
            )
            raise PersistenceError(f"Failed to persist instance registry: {exc}") from exc
