"""Artifact naming for provisioned instances."""

from basehub.models import DockerRefs


class ArtifactNaming:
    """Deterministic names the provisioning tool derives from an instance id."""

    STUDIO_CONTAINER_PREFIX = "supabase-studio-"

    def env_file(self, instance_id: str) -> str:
        return f".env-{instance_id}"

    def compose_file(self, instance_id: str) -> str:
        return f"docker-compose-{instance_id}.yml"

    def volumes_dir(self, instance_id: str) -> str:
        return f"volumes-{instance_id}"

    def refs(self, instance_id: str) -> DockerRefs:
        return DockerRefs(
            compose_file=self.compose_file(instance_id),
            env_file=self.env_file(instance_id),
            volumes_dir=self.volumes_dir(instance_id),
        )

    def studio_container(self, instance_id: str) -> str:
        """Container whose state stands for the whole instance."""
        return f"{self.STUDIO_CONTAINER_PREFIX}{instance_id}"
