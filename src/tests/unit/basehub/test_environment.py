"""Unit tests for ProvisioningEnvironment."""

from basehub.provisioning import SCHEMA_VERSION, ProvisioningEnvironment

EXPECTED_KEYS = {
    "MANAGER_ENV_SCHEMA",
    "MANAGER_INSTANCE_ID",
    "MANAGER_PROJECT_NAME",
    "MANAGER_ORGANIZATION_NAME",
    "MANAGER_POSTGRES_PASSWORD",
    "MANAGER_JWT_SECRET",
    "MANAGER_ANON_KEY",
    "MANAGER_SERVICE_ROLE_KEY",
    "MANAGER_DASHBOARD_USERNAME",
    "MANAGER_DASHBOARD_PASSWORD",
    "MANAGER_VAULT_ENC_KEY",
    "MANAGER_LOGFLARE_API_KEY",
    "MANAGER_POSTGRES_PORT_EXT",
    "MANAGER_POOLER_PORT_EXT",
    "MANAGER_KONG_HTTP_PORT",
    "MANAGER_KONG_HTTPS_PORT",
    "MANAGER_ANALYTICS_PORT",
    "MANAGER_EXTERNAL_IP",
}


class TestProvisioningEnvironment:
    """Tests for the MANAGER_* contract."""

    def test_key_set_is_fixed(self, make_record) -> None:
        env = ProvisioningEnvironment.from_record(make_record(), external_ip="203.0.113.7")

        assert set(env.to_env()) == EXPECTED_KEYS

    def test_values_rendered_as_strings(self, make_record) -> None:
        record = make_record()

        env = ProvisioningEnvironment.from_record(record, external_ip="203.0.113.7").to_env()

        assert env["MANAGER_ENV_SCHEMA"] == str(SCHEMA_VERSION)
        assert env["MANAGER_INSTANCE_ID"] == record.id
        assert env["MANAGER_PROJECT_NAME"] == "demo"
        assert env["MANAGER_ORGANIZATION_NAME"] == "Default Organization"
        assert env["MANAGER_KONG_HTTP_PORT"] == "8100"
        assert env["MANAGER_POOLER_PORT_EXT"] == "6500"
        assert env["MANAGER_POSTGRES_PASSWORD"] == "pgpass"
        assert env["MANAGER_EXTERNAL_IP"] == "203.0.113.7"
        assert all(isinstance(v, str) for v in env.values())

    def test_default_organization(self, make_record) -> None:
        record = make_record()
        record = record.model_copy(update={"config": {"project": "demo"}})

        env = ProvisioningEnvironment.from_record(
            record, external_ip="203.0.113.7", default_organization="Acme"
        )

        assert env.organization_name == "Acme"
