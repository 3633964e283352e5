"""Manager configuration using pydantic-settings.

Configuration hierarchy:
- PortsConfig: Host port ranges per service
- DockerConfig: Container runtime settings
- ProvisionerConfig: External provisioning/compose tooling
- HealthConfig: Readiness polling after start
- RegistryConfig: Durable instance registry
- LoggingConfig: Logging behavior
- ManagerConfig: Instance limits and public addresses
- Settings: Main config aggregating all sub-configs

Environment variable prefix: BASEHUB_
Example: BASEHUB_MANAGER_MAX_INSTANCES=20
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PortRange(BaseModel):
    """Inclusive host port range."""

    min: int
    max: int

    model_config = {"frozen": True}

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.min <= port <= self.max

    @property
    def size(self) -> int:
        return self.max - self.min + 1

    def overlaps(self, other: "PortRange") -> bool:
        return self.min <= other.max and other.min <= self.max


class PortsConfig(BaseSettings):
    """Host port ranges, one per exposed service.

    Ranges must not overlap so a port can never belong to two services.
    Override with JSON, e.g. BASEHUB_PORTS_KONG_HTTP='{"min": 9100, "max": 9199}'
    """

    model_config = SettingsConfigDict(env_prefix="BASEHUB_PORTS_")

    kong_http: PortRange = Field(default=PortRange(min=8100, max=8199))
    kong_https: PortRange = Field(default=PortRange(min=8400, max=8499))
    postgres_ext: PortRange = Field(default=PortRange(min=5500, max=5599))
    supavisor: PortRange = Field(default=PortRange(min=6500, max=6599))
    analytics: PortRange = Field(default=PortRange(min=4100, max=4199))

    max_attempts: int = Field(default=100, description="Random picks before giving up")

    @model_validator(mode="after")
    def _check_ranges(self) -> "PortsConfig":
        ranges = self.ranges()
        for tag, port_range in ranges.items():
            if port_range.min < 1 or port_range.max > 65535 or port_range.min > port_range.max:
                raise ValueError(f"Invalid port range for {tag}: {port_range.min}-{port_range.max}")
        tags = list(ranges)
        for i, first in enumerate(tags):
            for second in tags[i + 1 :]:
                if ranges[first].overlaps(ranges[second]):
                    raise ValueError(f"Port ranges for {first} and {second} overlap")
        return self

    def ranges(self) -> dict[str, PortRange]:
        """Return ranges keyed by service tag."""
        return {
            "kong_http": self.kong_http,
            "kong_https": self.kong_https,
            "postgres_ext": self.postgres_ext,
            "supavisor": self.supavisor,
            "analytics": self.analytics,
        }


class DockerConfig(BaseSettings):
    """Docker runtime configuration used for status reconciliation."""

    model_config = SettingsConfigDict(env_prefix="BASEHUB_DOCKER_")

    # Connection
    host: str = Field(
        default="unix:///var/run/docker.sock",
        description="Docker daemon socket or TCP address",
    )

    # Timeouts
    api_timeout: float = Field(default=30.0, description="Docker API call timeout (seconds)")
    ping_timeout_s: float = Field(default=5.0, description="Runtime ping timeout")
    list_timeout_s: float = Field(default=10.0, description="Per-instance container query timeout")


class ProvisionerConfig(BaseSettings):
    """External provisioning script and compose tooling.

    provision_timeout_s is the authoritative bound for instance creation.
    The caller-facing creation deadline is derived from it (see Settings).
    """

    model_config = SettingsConfigDict(env_prefix="BASEHUB_PROVISIONER_")

    work_dir: Path = Field(default=Path("/opt/basehub/docker"), description="Provisioning working directory")
    script: str = Field(default="generate.bash", description="Provisioning entry point")
    shell: str = Field(default="bash")
    compose_command: list[str] = Field(default=["docker", "compose"])

    provision_timeout_s: float = Field(default=900.0, description="Provisioning script timeout (15 min)")
    compose_timeout_s: float = Field(default=600.0, description="Compose up/down timeout (10 min)")
    max_output_bytes: int = Field(default=10 * 1024 * 1024, description="Subprocess output cap (10MB)")
    deadline_grace_s: float = Field(default=60.0, description="Slack added on top of tool timeouts")

    @property
    def script_path(self) -> Path:
        return self.work_dir / self.script


class HealthConfig(BaseSettings):
    """Best-effort readiness polling after an instance is started."""

    model_config = SettingsConfigDict(env_prefix="BASEHUB_HEALTH_")

    probe_host: str = Field(default="localhost")
    path: str = Field(default="/api/health")
    interval_s: float = Field(default=5.0)
    max_attempts: int = Field(default=60)
    request_timeout_s: float = Field(default=5.0)


class RegistryConfig(BaseSettings):
    """Durable instance registry."""

    model_config = SettingsConfigDict(env_prefix="BASEHUB_REGISTRY_")

    path: Path = Field(default=Path("/var/lib/basehub/instances.json"))
    default_owner: str = Field(default="admin", description="Owner assigned to legacy records")
    lock_timeout_s: float = Field(default=30.0, description="Wait for another process holding the registry")


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Supports both text and JSON formats for different environments:
    - text: Human-readable for local development
    - json: Structured logging for production (log aggregation)
    """

    model_config = SettingsConfigDict(env_prefix="BASEHUB_LOGGING_")

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="text", description="Log format (text, json)")
    service_name: str = Field(default="basehub", description="Service identifier in logs")


class ManagerConfig(BaseSettings):
    """Instance limits, public addresses and defaults for new instances."""

    model_config = SettingsConfigDict(env_prefix="BASEHUB_MANAGER_")

    max_instances: int = Field(default=50)
    server_ip: str = Field(default="127.0.0.1", description="Address used in instance URLs")
    external_ip: str = Field(default="127.0.0.1", description="Address handed to the provisioning tool")
    default_organization: str = Field(default="Default Organization")

    dashboard_username: str = Field(default="admin")
    dashboard_password: str = Field(default="admin")


class Settings(BaseSettings):
    """Main configuration aggregating all sub-configs.

    Environment variable prefix: BASEHUB_
    Sub-configs use their own prefixes (BASEHUB_PORTS_, BASEHUB_DOCKER_, etc.)
    """

    model_config = SettingsConfigDict(
        env_prefix="BASEHUB_",
        env_nested_delimiter="__",
    )

    ports: PortsConfig = Field(default_factory=PortsConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    provisioner: ProvisionerConfig = Field(default_factory=ProvisionerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    manager: ManagerConfig = Field(default_factory=ManagerConfig)

    @property
    def creation_deadline_s(self) -> float:
        """Caller-facing bound for one create call.

        Always strictly longer than the provisioning subprocess timeout plus
        one compose teardown, so the inner timeout fires first and rollback
        can finish.
        """
        p = self.provisioner
        return p.provision_timeout_s + p.compose_timeout_s + p.deadline_grace_s


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
