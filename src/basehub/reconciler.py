"""Status reconciliation against the container runtime.

Algorithm:
1. No records -> return immediately, the runtime is never contacted.
2. Bounded ping. Unreachable -> a persisted RUNNING is reported as
   UNAVAILABLE, every other status is kept, and every view is flagged
   stale; the listing still succeeds.
3. Otherwise query each instance concurrently, each call bounded on its
   own. A running studio container means RUNNING; any other state or no
   container means STOPPED. A failed query keeps the persisted status,
   flagged stale.

Reconciled status is reported only, never written back to the registry.
"""

import asyncio
import logging

from basehub.config import DockerConfig
from basehub.errors import RuntimeUnavailableError
from basehub.infra.docker import ContainerAPI
from basehub.logging_schema import LogEvent
from basehub.models import InstanceRecord, InstanceStatus, InstanceView
from basehub.provisioning.naming import ArtifactNaming

logger = logging.getLogger(__name__)


class StatusReconciler:
    """Merges live container state into instance views."""

    def __init__(
        self,
        config: DockerConfig,
        containers: ContainerAPI | None = None,
        naming: ArtifactNaming | None = None,
    ) -> None:
        self._config = config
        self._containers = containers or ContainerAPI()
        self._naming = naming or ArtifactNaming()

    async def runtime_available(self) -> bool:
        try:
            return await asyncio.wait_for(
                self._containers.ping(), timeout=self._config.ping_timeout_s
            )
        except Exception as exc:
            logger.warning(
                "Container runtime unreachable",
                extra={
                    "event": LogEvent.RUNTIME_UNAVAILABLE,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return False

    async def ensure_runtime(self) -> None:
        """Raise RuntimeUnavailableError unless the runtime answers."""
        if not await self.runtime_available():
            raise RuntimeUnavailableError(
                f"Container runtime at {self._config.host} is not reachable"
            )

    async def observe(self, record: InstanceRecord) -> InstanceStatus:
        """Query the runtime for one instance.

        Raises:
            TimeoutError: The query exceeded list_timeout_s.
            httpx.HTTPError: The runtime rejected the query.
        """
        pattern = self._naming.studio_container(record.id)
        containers = await asyncio.wait_for(
            self._containers.list_by_name(pattern), timeout=self._config.list_timeout_s
        )
        if not containers:
            return InstanceStatus.STOPPED
        if containers[0].get("State") == "running":
            return InstanceStatus.RUNNING
        return InstanceStatus.STOPPED

    async def _view(self, record: InstanceRecord) -> InstanceView:
        if record.status == InstanceStatus.CREATING:
            return InstanceView.from_record(record)
        try:
            status = await self.observe(record)
        except Exception as exc:
            logger.warning(
                "Status query failed",
                extra={
                    "event": LogEvent.STATUS_QUERY_FAILED,
                    "instance_id": record.id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return InstanceView.from_record(record, stale=True)
        return InstanceView.from_record(record, status=status)

    async def reconcile(self, records: list[InstanceRecord]) -> tuple[list[InstanceView], bool]:
        """Return views with live status and whether the runtime answered."""
        if not records:
            return [], True

        if not await self.runtime_available():
            views = [
                InstanceView.from_record(record, status=_unconfirmed(record.status), stale=True)
                for record in records
            ]
            return views, False

        views = list(await asyncio.gather(*(self._view(record) for record in records)))
        logger.debug(
            "Reconciled instance status",
            extra={"event": LogEvent.RECONCILE_COMPLETE, "count": len(views)},
        )
        return views, True


def _unconfirmed(status: InstanceStatus) -> InstanceStatus:
    if status == InstanceStatus.RUNNING:
        return InstanceStatus.UNAVAILABLE
    return status
