"""Host port allocation.

Ports are never reserved in a separate table. The used set is recomputed
from a full registry scan each time allocation runs, so deleting a record
frees its ports implicitly. Callers must hold the registry lock from the
scan until the new record is persisted (InstanceRegistry.transaction).
"""

import logging
import secrets

from basehub.config import PortRange, PortsConfig
from basehub.errors import ResourceExhaustionError
from basehub.logging_schema import LogEvent
from basehub.metrics import PORT_ALLOCATION_ATTEMPTS
from basehub.models import ServicePorts, ServiceTag
from basehub.registry import InstanceRegistry

logger = logging.getLogger(__name__)


class PortAllocator:
    """Random per-service port allocator backed by the registry."""

    def __init__(self, config: PortsConfig, registry: InstanceRegistry) -> None:
        self._config = config
        self._registry = registry
        self._ranges = config.ranges()

    def range_for(self, tag: ServiceTag | str) -> PortRange:
        port_range = self._ranges.get(str(tag))
        if port_range is None:
            raise ValueError(f"Unknown service: {tag}")
        return port_range

    def used_ports(self) -> set[int]:
        """Return every port held by an entry in the registry.

        Entries the registry could not parse still reserve whatever ports
        they name.
        """
        used = self._registry.unreadable_ports()
        for record in self._registry.list():
            used.update(record.ports.values())
        return used

    def allocate(self, tag: ServiceTag | str, used: set[int] | None = None) -> int:
        """Pick a free port for *tag* and add it to *used*.

        Args:
            tag: Service tag.
            used: Working set of taken ports. Scanned from the registry
                when omitted.

        Raises:
            ResourceExhaustionError: No free port found within max_attempts.
        """
        port_range = self.range_for(tag)
        if used is None:
            used = self.used_ports()

        for _ in range(self._config.max_attempts):
            PORT_ALLOCATION_ATTEMPTS.labels(service=str(tag)).inc()
            candidate = port_range.min + secrets.randbelow(port_range.size)
            if candidate not in used:
                used.add(candidate)
                return candidate

        raise ResourceExhaustionError(
            f"No free port for {tag} in {port_range.min}-{port_range.max} "
            f"after {self._config.max_attempts} attempts"
        )

    def allocate_all(self) -> ServicePorts:
        """Allocate one port per service from a single registry scan."""
        used = self.used_ports()
        ports = {tag.value: self.allocate(tag, used) for tag in ServiceTag}
        logger.debug(
            "Ports allocated",
            extra={"event": LogEvent.PORT_ALLOCATED, "ports": ports},
        )
        return ServicePorts(**ports)
