"""Environment contract handed to the provisioning tool.

The tool reads everything it needs from MANAGER_* variables. The set of
keys is fixed and versioned; bump SCHEMA_VERSION when a key is added,
renamed or removed so the tool can refuse an environment it does not know.
"""

from pydantic import BaseModel, Field

from basehub.models import InstanceRecord

SCHEMA_VERSION = 1


class ProvisioningEnvironment(BaseModel):
    """Typed MANAGER_* key/value schema (version 1)."""

    schema_version: int = Field(default=SCHEMA_VERSION, alias="MANAGER_ENV_SCHEMA")

    # Identity
    instance_id: str = Field(alias="MANAGER_INSTANCE_ID")
    project_name: str = Field(alias="MANAGER_PROJECT_NAME")
    organization_name: str = Field(alias="MANAGER_ORGANIZATION_NAME")

    # Credentials
    postgres_password: str = Field(alias="MANAGER_POSTGRES_PASSWORD")
    jwt_secret: str = Field(alias="MANAGER_JWT_SECRET")
    anon_key: str = Field(alias="MANAGER_ANON_KEY")
    service_role_key: str = Field(alias="MANAGER_SERVICE_ROLE_KEY")
    dashboard_username: str = Field(alias="MANAGER_DASHBOARD_USERNAME")
    dashboard_password: str = Field(alias="MANAGER_DASHBOARD_PASSWORD")
    vault_enc_key: str = Field(alias="MANAGER_VAULT_ENC_KEY")
    logflare_api_key: str = Field(alias="MANAGER_LOGFLARE_API_KEY")

    # Host ports
    postgres_port_ext: int = Field(alias="MANAGER_POSTGRES_PORT_EXT")
    pooler_port_ext: int = Field(alias="MANAGER_POOLER_PORT_EXT")
    kong_http_port: int = Field(alias="MANAGER_KONG_HTTP_PORT")
    kong_https_port: int = Field(alias="MANAGER_KONG_HTTPS_PORT")
    analytics_port: int = Field(alias="MANAGER_ANALYTICS_PORT")

    # Network
    external_ip: str = Field(alias="MANAGER_EXTERNAL_IP")

    model_config = {"frozen": True, "populate_by_name": True}

    @classmethod
    def from_record(
        cls,
        record: InstanceRecord,
        *,
        external_ip: str,
        default_organization: str = "Default Organization",
    ) -> "ProvisioningEnvironment":
        creds = record.credentials
        ports = record.ports
        return cls(
            instance_id=record.id,
            project_name=record.name,
            organization_name=str(record.config.get("organization") or default_organization),
            postgres_password=creds.postgres_password,
            jwt_secret=creds.jwt_secret,
            anon_key=creds.anon_key,
            service_role_key=creds.service_role_key,
            dashboard_username=creds.dashboard_username,
            dashboard_password=creds.dashboard_password,
            vault_enc_key=creds.vault_enc_key,
            logflare_api_key=creds.logflare_api_key,
            postgres_port_ext=ports.postgres_ext,
            pooler_port_ext=ports.supavisor,
            kong_http_port=ports.kong_http,
            kong_https_port=ports.kong_https,
            analytics_port=ports.analytics,
            external_ip=external_ip,
        )

    def to_env(self) -> dict[str, str]:
        """Render as environment variables."""
        return {key: str(value) for key, value in self.model_dump(by_alias=True).items()}
