"""Infrastructure layer."""

from basehub.infra.docker import (
    ContainerAPI,
    DockerClient,
    close_docker,
    get_docker_client,
)
from basehub.infra.process import CommandResult, run_command
from basehub.infra.store import JsonFileStore, KeyValueStore, StoreReadError

__all__ = [
    # Docker
    "ContainerAPI",
    "DockerClient",
    "close_docker",
    "get_docker_client",
    # Subprocess
    "CommandResult",
    "run_command",
    # Store
    "JsonFileStore",
    "KeyValueStore",
    "StoreReadError",
]
