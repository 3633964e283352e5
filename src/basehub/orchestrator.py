"""Instance lifecycle orchestration.

Composes port allocation, credential generation, the registry, the
provisioning driver and status reconciliation into create/start/stop/delete.

Creation sequence:
1. Inside a registry transaction: validate, allocate ports, forge credentials,
   persist the record as CREATING (crash-safe checkpoint).
2. Outside the transaction: run provisioning, so listing and other instances
   are not blocked for the duration of the script.
3. Success -> RUNNING. Failure -> ERROR with the message, then a
   compensating delete, then the original error is re-raised.

Only creation rolls back. start/stop/restart/delete failures propagate
unchanged. delete removes a record in any state, including one left in
CREATING by a process that died mid-provisioning.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from basehub.config import Settings, get_settings
from basehub.credentials import CredentialForge
from basehub.errors import (
    BaseHubError,
    ExternalToolError,
    InstanceNotFoundError,
    PersistenceError,
    ValidationError,
)
from basehub.infra.store import JsonFileStore
from basehub.lock import discard_instance_lock, get_instance_lock
from basehub.logging_schema import LogEvent
from basehub.metrics import OPERATION_DURATION, OPERATION_ERRORS, ROLLBACKS
from basehub.models import (
    ConnectionInfo,
    CreateResult,
    CredentialBundle,
    DatabaseInfo,
    HealthReport,
    InstanceCheck,
    InstanceListing,
    InstanceRecord,
    InstanceStats,
    InstanceStatus,
    InstanceUrls,
    InstanceView,
    ServicePorts,
)
from basehub.ports import PortAllocator
from basehub.provisioning import ArtifactNaming, ProvisioningDriver
from basehub.reconciler import StatusReconciler
from basehub.registry import InstanceRegistry

logger = logging.getLogger(__name__)


@contextmanager
def _track(operation: str) -> Iterator[None]:
    start = time.monotonic()
    try:
        yield
    except BaseHubError as exc:
        OPERATION_ERRORS.labels(operation=operation, error_code=exc.code.value).inc()
        raise
    except Exception:
        OPERATION_ERRORS.labels(operation=operation, error_code="UNEXPECTED").inc()
        raise
    finally:
        OPERATION_DURATION.labels(operation=operation).observe(time.monotonic() - start)


class LifecycleOrchestrator:
    """Create, start, stop, delete and list instances."""

    def __init__(
        self,
        settings: Settings,
        registry: InstanceRegistry,
        ports: PortAllocator,
        forge: CredentialForge,
        driver: ProvisioningDriver,
        reconciler: StatusReconciler,
        naming: ArtifactNaming | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._ports = ports
        self._forge = forge
        self._driver = driver
        self._reconciler = reconciler
        self._naming = naming or ArtifactNaming()

    @classmethod
    async def build(cls, settings: Settings | None = None) -> LifecycleOrchestrator:
        """Wire default collaborators and load the registry."""
        settings = settings or get_settings()
        registry = InstanceRegistry(
            JsonFileStore(settings.registry.path, lock_timeout_s=settings.registry.lock_timeout_s),
            default_owner=settings.registry.default_owner,
        )
        await registry.load()
        naming = ArtifactNaming()
        return cls(
            settings=settings,
            registry=registry,
            ports=PortAllocator(settings.ports, registry),
            forge=CredentialForge(settings.manager),
            driver=ProvisioningDriver(
                settings.provisioner, settings.health, settings.manager, naming=naming
            ),
            reconciler=StatusReconciler(settings.docker, naming=naming),
            naming=naming,
        )

    @property
    def creation_deadline_s(self) -> float:
        return self._settings.creation_deadline_s

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        owner: str | None = None,
    ) -> CreateResult:
        """Create, provision and start a new instance.

        Raises:
            ValidationError: Preflight failed; nothing was written.
            ResourceExhaustionError: No free port; nothing was written.
            ExternalToolError: Provisioning failed; the instance was rolled back.
            PersistenceError: The registry could not be written.
        """
        with _track("create"):
            project_name = (name or "").strip()
            options = dict(config or {})
            record_owner = owner or options.pop("owner", None) or self._settings.registry.default_owner

            async with self._registry.transaction():
                self._preflight(project_name)
                instance_id = self._new_instance_id()
                ports = self._ports.allocate_all()
                credentials = self._forge.generate(instance_id)
                record = self._assemble(
                    instance_id, project_name, record_owner, ports, credentials, options
                )
                await self._registry.put(instance_id, record)

            logger.info(
                "Instance checkpointed, provisioning",
                extra={
                    "event": LogEvent.INSTANCE_CREATING,
                    "instance_id": instance_id,
                    "instance_name": project_name,
                    "owner": record_owner,
                },
            )

            async with get_instance_lock(instance_id):
                try:
                    provisioned = await self._driver.provision(record)
                    running = provisioned.with_status(InstanceStatus.RUNNING)
                    async with self._registry.transaction():
                        if self._registry.get(instance_id) is None:
                            raise InstanceNotFoundError(
                                f"Instance {instance_id} was deleted while being created"
                            )
                        await self._registry.put(instance_id, running)
                except (Exception, asyncio.CancelledError) as exc:
                    logger.error(
                        "Instance creation failed",
                        extra={
                            "event": LogEvent.INSTANCE_CREATE_FAILED,
                            "instance_id": instance_id,
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        },
                    )
                    rolled_back = await self._rollback(record, exc)
                    if isinstance(exc, ExternalToolError):
                        exc.instance_id = instance_id
                    outcome = "rolled back" if rolled_back else "rollback failed, delete manually"
                    exc.add_note(f"while creating instance {instance_id} ({project_name!r}); {outcome}")
                    raise

            logger.info(
                "Instance created",
                extra={
                    "event": LogEvent.INSTANCE_CREATED,
                    "instance_id": instance_id,
                    "instance_name": project_name,
                },
            )
            return CreateResult(
                instance=running,
                message=f"Project {project_name!r} created. Studio: {running.urls.studio}",
            )

    def _preflight(self, name: str) -> None:
        if not name:
            raise ValidationError("Project name is required")
        limit = self._settings.manager.max_instances
        if self._registry.count() >= limit:
            raise ValidationError(f"Instance limit of {limit} reached")
        if self._registry.exists_by_name(name):
            raise ValidationError(f"A project named {name!r} already exists")
        if not self._driver.prerequisite_present():
            raise ValidationError(
                f"Provisioning script not found: {self._settings.provisioner.script_path}"
            )

    def _new_instance_id(self) -> str:
        while True:
            candidate = uuid.uuid4().hex[:8]
            if not self._registry.is_taken(candidate):
                return candidate

    def _assemble(
        self,
        instance_id: str,
        name: str,
        owner: str,
        ports: ServicePorts,
        credentials: CredentialBundle,
        options: dict[str, Any],
    ) -> InstanceRecord:
        host = self._settings.manager.server_ip
        urls = InstanceUrls(
            studio=f"http://{host}:{ports.kong_http}",
            api=f"http://{host}:{ports.kong_http}",
            db=f"postgresql://postgres:{credentials.postgres_password}@{host}:{ports.postgres_ext}/postgres",
        )
        config = {
            "organization": options.get("organization") or self._settings.manager.default_organization,
            "project": name,
            **{k: v for k, v in options.items() if k not in ("organization", "project")},
        }
        return InstanceRecord(
            id=instance_id,
            name=name,
            owner=owner,
            status=InstanceStatus.CREATING,
            ports=ports,
            credentials=credentials,
            urls=urls,
            docker=self._naming.refs(instance_id),
            config=config,
        )

    async def _rollback(self, record: InstanceRecord, exc: BaseException) -> bool:
        """Mark the record failed, then remove it completely.

        Errors here are logged and never replace the original failure.
        """
        if isinstance(exc, BaseHubError):
            message = exc.message
        elif isinstance(exc, asyncio.CancelledError):
            message = "Creation was cancelled"
        else:
            message = str(exc) or type(exc).__name__
        failed = record.with_status(InstanceStatus.ERROR, error_message=message)
        logger.info(
            "Rolling back failed instance",
            extra={"event": LogEvent.ROLLBACK_STARTED, "instance_id": record.id},
        )
        try:
            async with self._registry.transaction():
                await self._registry.put(record.id, failed)
        except PersistenceError:
            # Logged by the registry; teardown still runs
            pass
        try:
            await self._remove(failed)
        except Exception as cleanup_exc:
            ROLLBACKS.labels(result="failed").inc()
            logger.error(
                "Rollback failed, instance left for manual delete",
                extra={
                    "event": LogEvent.ROLLBACK_FAILED,
                    "instance_id": record.id,
                    "error_type": type(cleanup_exc).__name__,
                    "error": str(cleanup_exc),
                },
            )
            return False
        ROLLBACKS.labels(result="completed").inc()
        logger.info(
            "Rollback completed",
            extra={"event": LogEvent.ROLLBACK_COMPLETED, "instance_id": record.id},
        )
        return True

    # -------------------------------------------------------------------------
    # Start / Stop / Delete
    # -------------------------------------------------------------------------

    def _require(self, instance_id: str) -> InstanceRecord:
        record = self._registry.get(instance_id)
        if record is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        return record

    async def _current(self, instance_id: str, *, settled: bool = False) -> InstanceRecord:
        """Re-read *instance_id* from the snapshot.

        With settled, a record still in CREATING is refused so start/stop
        cannot race provisioning. delete accepts it: a creating record left
        behind by a crashed or cancelled run must stay removable.
        """
        async with self._registry.transaction():
            record = self._require(instance_id)
        if settled and record.status == InstanceStatus.CREATING:
            raise ValidationError(f"Instance {instance_id} is still being created")
        return record

    async def _settle(self, instance_id: str, status: InstanceStatus) -> InstanceRecord:
        async with self._registry.transaction():
            updated = self._require(instance_id).with_status(status)
            await self._registry.put(instance_id, updated)
        return updated

    async def start(self, instance_id: str) -> InstanceRecord:
        """Start a stopped instance. Readiness polling is advisory."""
        with _track("start"):
            async with get_instance_lock(instance_id):
                record = await self._current(instance_id, settled=True)
                await self._reconciler.ensure_runtime()
                ready = await self._driver.start(record)
                updated = await self._settle(instance_id, InstanceStatus.RUNNING)
            logger.info(
                "Instance started",
                extra={
                    "event": LogEvent.INSTANCE_STARTED,
                    "instance_id": instance_id,
                    "ready": ready,
                },
            )
            return updated

    async def stop(self, instance_id: str) -> InstanceRecord:
        """Stop an instance. Only status and updated_at change."""
        with _track("stop"):
            async with get_instance_lock(instance_id):
                record = await self._current(instance_id, settled=True)
                await self._reconciler.ensure_runtime()
                await self._driver.stop(record)
                updated = await self._settle(instance_id, InstanceStatus.STOPPED)
            logger.info(
                "Instance stopped",
                extra={"event": LogEvent.INSTANCE_STOPPED, "instance_id": instance_id},
            )
            return updated

    async def restart(self, instance_id: str) -> InstanceRecord:
        """Stop and start an instance without releasing its lock in between.

        A failed start leaves the record STOPPED, which matches the
        containers after the stop went through.
        """
        with _track("restart"):
            async with get_instance_lock(instance_id):
                record = await self._current(instance_id, settled=True)
                await self._reconciler.ensure_runtime()
                await self._driver.stop(record)
                await self._settle(instance_id, InstanceStatus.STOPPED)
                ready = await self._driver.start(record)
                updated = await self._settle(instance_id, InstanceStatus.RUNNING)
            logger.info(
                "Instance restarted",
                extra={
                    "event": LogEvent.INSTANCE_RESTARTED,
                    "instance_id": instance_id,
                    "ready": ready,
                },
            )
            return updated

    async def delete(self, instance_id: str) -> None:
        """Tear down and forget an instance in any state.

        A failure may leave partial state behind; calling delete again
        retries the remaining steps.
        """
        with _track("delete"):
            async with get_instance_lock(instance_id):
                record = await self._current(instance_id)
                await self._remove(record)
            logger.info(
                "Instance deleted",
                extra={
                    "event": LogEvent.INSTANCE_DELETED,
                    "instance_id": instance_id,
                    "instance_name": record.name,
                    "previous_status": record.status,
                },
            )

    async def _remove(self, record: InstanceRecord) -> None:
        await self._driver.teardown(record)
        async with self._registry.transaction():
            await self._registry.delete(record.id)
        discard_instance_lock(record.id)

    # -------------------------------------------------------------------------
    # Read-only accessors
    # -------------------------------------------------------------------------

    async def list(self) -> InstanceListing:
        """All instances with live status and aggregate counters."""
        with _track("list"):
            views, available = await self._reconciler.reconcile(self._registry.list())
            stats = InstanceStats(
                total=len(views),
                running=sum(1 for v in views if v.status == InstanceStatus.RUNNING),
                stopped=sum(1 for v in views if v.status == InstanceStatus.STOPPED),
                max_instances=self._settings.manager.max_instances,
            )
            return InstanceListing(instances=views, stats=stats, runtime_available=available)

    async def get(self, instance_id: str) -> InstanceView:
        record = self._require(instance_id)
        views, _ = await self._reconciler.reconcile([record])
        return views[0]

    def credentials(self, instance_id: str) -> ConnectionInfo:
        """Connection parameters addressed through the external host."""
        record = self._require(instance_id)
        host = self._settings.manager.external_ip
        creds = record.credentials
        base_url = f"http://{host}:{record.ports.kong_http}"
        return ConnectionInfo(
            instance_id=record.id,
            supabase_url=record.urls.studio or base_url,
            api_url=f"{base_url}/rest/v1",
            anon_key=creds.anon_key,
            service_role_key=creds.service_role_key,
            jwt_secret=creds.jwt_secret,
            dashboard_username=creds.dashboard_username,
            dashboard_password=creds.dashboard_password,
            database_url=(
                f"postgresql://postgres:{creds.postgres_password}"
                f"@{host}:{record.ports.postgres_ext}/postgres"
            ),
            database=DatabaseInfo(
                host=host,
                port=record.ports.postgres_ext,
                password=creds.postgres_password,
            ),
        )

    async def logs(self, instance_id: str, tail: int = 100) -> str:
        record = self._require(instance_id)
        return await self._driver.logs(record, tail=tail)

    async def health(self) -> HealthReport:
        return HealthReport(
            runtime_available=await self._reconciler.runtime_available(),
            instances_total=self._registry.count(),
            max_instances=self._settings.manager.max_instances,
            external_ip=self._settings.manager.external_ip,
            port_ranges={
                tag: {"min": r.min, "max": r.max}
                for tag, r in self._settings.ports.ranges().items()
            },
            provisioning_ready=self._driver.prerequisite_present(),
        )

    async def check(self, instance_id: str) -> InstanceCheck:
        """Quick health check: live status plus one request per HTTP service.

        A record still in CREATING is reported without probing.
        """
        with _track("check"):
            record = self._require(instance_id)
            views, _ = await self._reconciler.reconcile([record])
            view = views[0]
            services = []
            if view.status != InstanceStatus.CREATING:
                services = await self._driver.check_services(record)
            return InstanceCheck(
                instance_id=record.id,
                status=view.status,
                status_stale=view.status_stale,
                healthy=bool(services) and all(s.healthy for s in services),
                services=services,
            )

    def env_config(self, instance_id: str) -> str:
        """Client application settings in .env format."""
        record = self._require(instance_id)
        info = self.credentials(instance_id)
        return "\n".join(
            [
                f"# basehub instance - {record.name}",
                f"NEXT_PUBLIC_SUPABASE_URL={info.api_url.removesuffix('/rest/v1')}",
                f"NEXT_PUBLIC_SUPABASE_ANON_KEY={info.anon_key}",
                f"SUPABASE_SERVICE_ROLE_KEY={info.service_role_key}",
                f"DATABASE_URL={info.database_url}",
                "",
            ]
        )
