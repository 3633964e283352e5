"""Instance data model.

InstanceRecord is the persisted shape, one entry per instance in the
registry snapshot. The remaining models are read views returned to callers.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class InstanceStatus(StrEnum):
    """Instance lifecycle status.

    absent -> CREATING -> {RUNNING, ERROR}
    RUNNING <-> STOPPED via stop/start
    any -> absent via delete
    UNAVAILABLE is only reported, never persisted.
    """

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


class ServiceTag(StrEnum):
    """Services that receive a host port."""

    KONG_HTTP = "kong_http"
    KONG_HTTPS = "kong_https"
    POSTGRES_EXT = "postgres_ext"
    SUPAVISOR = "supavisor"
    ANALYTICS = "analytics"


class ServicePorts(BaseModel):
    """Allocated host ports, one per ServiceTag."""

    kong_http: int
    kong_https: int
    postgres_ext: int
    supavisor: int
    analytics: int

    model_config = {"frozen": True}

    def values(self) -> list[int]:
        return [getattr(self, tag.value) for tag in ServiceTag]


class CredentialBundle(BaseModel):
    """Secrets and signed tokens for one instance. Immutable once created."""

    postgres_password: str
    jwt_secret: str
    anon_key: str
    service_role_key: str
    dashboard_username: str
    dashboard_password: str
    vault_enc_key: str
    logflare_api_key: str

    model_config = {"frozen": True}


class InstanceUrls(BaseModel):
    """Public URLs derived from ports and credentials."""

    studio: str
    api: str
    db: str

    model_config = {"frozen": True}


class DockerRefs(BaseModel):
    """Artifact names produced by the provisioning tool."""

    compose_file: str
    env_file: str
    volumes_dir: str

    model_config = {"frozen": True}


class InstanceRecord(BaseModel):
    """Persisted instance record."""

    id: str
    name: str
    owner: str
    status: InstanceStatus = InstanceStatus.CREATING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    ports: ServicePorts
    credentials: CredentialBundle
    urls: InstanceUrls
    docker: DockerRefs
    config: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None

    def with_status(self, status: InstanceStatus, error_message: str | None = None) -> "InstanceRecord":
        """Return a copy with a new status and a fresh updated_at."""
        return self.model_copy(
            update={
                "status": status,
                "updated_at": utcnow(),
                "error_message": error_message,
            }
        )


class InstanceView(InstanceRecord):
    """Record as returned by listing and detail accessors.

    status_stale is True when the status could not be confirmed against
    the container runtime and reflects the last persisted value instead.
    """

    studio_url: str
    status_stale: bool = False

    @classmethod
    def from_record(
        cls,
        record: InstanceRecord,
        *,
        status: InstanceStatus | None = None,
        stale: bool = False,
    ) -> "InstanceView":
        data = record.model_dump()
        if status is not None:
            data["status"] = status
        return cls(**data, studio_url=record.urls.studio, status_stale=stale)


class InstanceStats(BaseModel):
    """Aggregate counters for a listing."""

    total: int = 0
    running: int = 0
    stopped: int = 0
    max_instances: int


class InstanceListing(BaseModel):
    """Result of listing all instances."""

    instances: list[InstanceView] = Field(default_factory=list)
    stats: InstanceStats
    runtime_available: bool = True


class CreateResult(BaseModel):
    """Result of a successful creation."""

    instance: InstanceRecord
    message: str


class DatabaseInfo(BaseModel):
    """Direct database connection parameters."""

    host: str
    port: int
    name: str = "postgres"
    user: str = "postgres"
    password: str


class ConnectionInfo(BaseModel):
    """Credential retrieval view for application developers."""

    instance_id: str
    supabase_url: str
    api_url: str
    anon_key: str
    service_role_key: str
    jwt_secret: str
    dashboard_username: str
    dashboard_password: str
    database_url: str
    database: DatabaseInfo


class HealthReport(BaseModel):
    """Manager-level health summary."""

    runtime_available: bool
    instances_total: int
    max_instances: int
    external_ip: str
    port_ranges: dict[str, dict[str, int]]
    provisioning_ready: bool


class ServiceCheck(BaseModel):
    """One HTTP request against an instance service.

    Any answer below 500 counts as healthy: the gateway rejecting an
    unauthenticated request still proves the service is up.
    """

    service: str
    url: str
    healthy: bool
    status_code: int | None = None
    response_time_ms: float | None = None
    error: str | None = None


class InstanceCheck(BaseModel):
    """Quick per-instance health check."""

    instance_id: str
    checked_at: datetime = Field(default_factory=utcnow)
    status: InstanceStatus
    status_stale: bool = False
    healthy: bool
    services: list[ServiceCheck] = Field(default_factory=list)
