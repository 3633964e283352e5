"""Provisioning driver.

Wraps the external provisioning script and the compose tool. The script is
the only authority for creating an instance's artifacts; the driver runs
it, checks that the artifacts appeared, and later drives compose against
them. Every external call is timeout-bounded.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from basehub.errors import ExternalToolError
from basehub.infra.process import run_command
from basehub.logging_schema import LogEvent
from basehub.models import InstanceRecord, ServiceCheck
from basehub.provisioning.environment import ProvisioningEnvironment
from basehub.provisioning.naming import ArtifactNaming

if TYPE_CHECKING:
    from basehub.config import HealthConfig, ManagerConfig, ProvisionerConfig

logger = logging.getLogger(__name__)


class ProvisioningDriver:
    """Runs the provisioning script and compose commands for an instance."""

    def __init__(
        self,
        config: ProvisionerConfig,
        health: HealthConfig,
        manager: ManagerConfig,
        naming: ArtifactNaming | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._health = health
        self._manager = manager
        self._naming = naming or ArtifactNaming()
        self._http = http_client

    @property
    def work_dir(self) -> Path:
        return self._config.work_dir

    def prerequisite_present(self) -> bool:
        """Check that the provisioning entry point exists."""
        return self._config.script_path.is_file()

    def ensure_prerequisite(self) -> None:
        if not self.prerequisite_present():
            raise ExternalToolError(
                f"Provisioning script not found: {self._config.script_path}"
            )

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def provision(self, record: InstanceRecord) -> InstanceRecord:
        """Materialize and start *record* through the provisioning script.

        Returns:
            The record with its docker references set to the expected names.

        Raises:
            ExternalToolError: Missing script, non-zero exit, timeout, output
                overflow, or missing artifacts afterwards.
        """
        self.ensure_prerequisite()
        env = ProvisioningEnvironment.from_record(
            record,
            external_ip=self._manager.external_ip,
            default_organization=self._manager.default_organization,
        )

        logger.info(
            "Running provisioning script",
            extra={
                "event": LogEvent.PROVISION_STARTED,
                "instance_id": record.id,
                "script": str(self._config.script_path),
                "timeout_s": self._config.provision_timeout_s,
            },
        )
        result = await run_command(
            [self._config.shell, self._config.script],
            cwd=self.work_dir,
            env=env.to_env(),
            timeout=self._config.provision_timeout_s,
            max_output_bytes=self._config.max_output_bytes,
            label="provision",
        )
        if result.stderr:
            logger.debug("Provisioning stderr for %s: %s", record.id, result.stderr[-2000:])

        refs = self._naming.refs(record.id)
        for artifact in (refs.env_file, refs.compose_file):
            exists = await asyncio.to_thread((self.work_dir / artifact).is_file)
            if not exists:
                raise ExternalToolError(
                    f"Provisioning script did not create {artifact}",
                    instance_id=record.id,
                )

        logger.info(
            "Provisioning completed",
            extra={
                "event": LogEvent.PROVISION_COMPLETED,
                "instance_id": record.id,
                "duration_s": round(result.duration_s, 2),
            },
        )
        return record.model_copy(update={"docker": refs})

    # -------------------------------------------------------------------------
    # Compose lifecycle
    # -------------------------------------------------------------------------

    def _compose(self, record: InstanceRecord, *args: str) -> list[str]:
        return [
            *self._config.compose_command,
            "-f",
            record.docker.compose_file,
            "--env-file",
            record.docker.env_file,
            *args,
        ]

    async def start(self, record: InstanceRecord) -> bool:
        """Bring the instance up, then poll for readiness.

        Returns:
            Whether the instance answered its health endpoint in time. A
            False result is advisory and does not fail the start.
        """
        await run_command(
            self._compose(record, "up", "-d"),
            cwd=self.work_dir,
            timeout=self._config.compose_timeout_s,
            max_output_bytes=self._config.max_output_bytes,
            label="compose_up",
        )
        return await self.wait_ready(record)

    async def stop(self, record: InstanceRecord) -> None:
        """Graceful teardown, keeping volumes."""
        await run_command(
            self._compose(record, "down"),
            cwd=self.work_dir,
            timeout=self._config.compose_timeout_s,
            max_output_bytes=self._config.max_output_bytes,
            label="compose_down",
        )

    async def teardown(self, record: InstanceRecord) -> None:
        """Remove containers, volumes and all three artifacts.

        Ports are released implicitly once the caller drops the record.
        """
        compose_path = self.work_dir / record.docker.compose_file
        if await asyncio.to_thread(compose_path.is_file):
            await run_command(
                self._compose(record, "down", "-v", "--remove-orphans"),
                cwd=self.work_dir,
                timeout=self._config.compose_timeout_s,
                max_output_bytes=self._config.max_output_bytes,
                label="compose_teardown",
            )
        else:
            logger.info(
                "No compose file, skipping compose teardown",
                extra={"event": LogEvent.ARTIFACT_REMOVED, "instance_id": record.id},
            )
        await self.remove_artifacts(record)

    async def remove_artifacts(self, record: InstanceRecord) -> None:
        for name in (record.docker.compose_file, record.docker.env_file, record.docker.volumes_dir):
            await asyncio.to_thread(_remove_path, self.work_dir / name)
        logger.info(
            "Removed instance artifacts",
            extra={"event": LogEvent.ARTIFACT_REMOVED, "instance_id": record.id},
        )

    async def logs(self, record: InstanceRecord, tail: int = 100) -> str:
        result = await run_command(
            self._compose(record, "logs", f"--tail={tail}"),
            cwd=self.work_dir,
            timeout=self._config.compose_timeout_s,
            max_output_bytes=self._config.max_output_bytes,
            label="compose_logs",
        )
        return result.stdout

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def health_url(self, record: InstanceRecord) -> str:
        return f"http://{self._health.probe_host}:{record.ports.kong_http}{self._health.path}"

    async def wait_ready(self, record: InstanceRecord) -> bool:
        """Poll the gateway health endpoint a bounded number of times."""
        url = self.health_url(record)
        client = self._http or httpx.AsyncClient(timeout=self._health.request_timeout_s)
        try:
            for attempt in range(1, self._health.max_attempts + 1):
                try:
                    resp = await client.get(url, timeout=self._health.request_timeout_s)
                    # 404 means the gateway is up but has no health route
                    if resp.is_success or resp.status_code == 404:
                        logger.info(
                            "Instance is answering",
                            extra={
                                "event": LogEvent.READINESS_CONFIRMED,
                                "instance_id": record.id,
                                "attempt": attempt,
                            },
                        )
                        return True
                except httpx.HTTPError:
                    pass
                if attempt < self._health.max_attempts:
                    await asyncio.sleep(self._health.interval_s)
        finally:
            if self._http is None:
                await client.aclose()

        logger.warning(
            "Instance not ready after polling, continuing",
            extra={
                "event": LogEvent.READINESS_TIMEOUT,
                "instance_id": record.id,
                "attempts": self._health.max_attempts,
            },
        )
        return False

    # -------------------------------------------------------------------------
    # Service checks
    # -------------------------------------------------------------------------

    def service_urls(self, record: InstanceRecord) -> dict[str, str]:
        base = f"http://{self._health.probe_host}:{record.ports.kong_http}"
        return {
            "gateway": f"{base}/",
            "auth": f"{base}/auth/v1/health",
            "rest": f"{base}/rest/v1/",
        }

    async def check_services(self, record: InstanceRecord) -> list[ServiceCheck]:
        """Request the gateway, auth and REST services once each, concurrently."""
        headers = {"apikey": record.credentials.anon_key}
        client = self._http or httpx.AsyncClient(timeout=self._health.request_timeout_s)
        try:
            return list(
                await asyncio.gather(
                    *(
                        self._check_one(client, record, service, url, headers)
                        for service, url in self.service_urls(record).items()
                    )
                )
            )
        finally:
            if self._http is None:
                await client.aclose()

    async def _check_one(
        self,
        client: httpx.AsyncClient,
        record: InstanceRecord,
        service: str,
        url: str,
        headers: dict[str, str],
    ) -> ServiceCheck:
        start = time.monotonic()
        try:
            resp = await client.get(url, headers=headers, timeout=self._health.request_timeout_s)
        except httpx.HTTPError as exc:
            check = ServiceCheck(
                service=service, url=url, healthy=False, error=str(exc) or type(exc).__name__
            )
        else:
            check = ServiceCheck(
                service=service,
                url=url,
                healthy=resp.status_code < 500,
                status_code=resp.status_code,
                response_time_ms=round((time.monotonic() - start) * 1000, 1),
            )
        logger.debug(
            "Service checked",
            extra={
                "event": LogEvent.SERVICE_CHECKED,
                "instance_id": record.id,
                "service": service,
                "healthy": check.healthy,
            },
        )
        return check


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=False)
    else:
        path.unlink(missing_ok=True)
