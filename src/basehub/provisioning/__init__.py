"""Provisioning of instance artifacts through external tooling."""

from basehub.provisioning.driver import ProvisioningDriver
from basehub.provisioning.environment import SCHEMA_VERSION, ProvisioningEnvironment
from basehub.provisioning.naming import ArtifactNaming

__all__ = [
    "ArtifactNaming",
    "ProvisioningDriver",
    "ProvisioningEnvironment",
    "SCHEMA_VERSION",
]
