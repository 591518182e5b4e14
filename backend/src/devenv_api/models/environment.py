"""Environment model for on-demand development VMs."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from devenv_api.models.common import EnvironmentState


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


class ResourceSpec(BaseModel):
    """Compute resources requested for an environment.

    Example:
        ```python
        resources = ResourceSpec(vcpus=2, memoryMb=4096, diskGb=20)
        ```
    """

    vcpus: int = 2
    memory_mb: int = Field(default=4096, alias="memoryMb")
    disk_gb: int = Field(default=10, alias="diskGb")

    class Config:
        populate_by_name = True


class EnvironmentCreate(BaseModel):
    """Parameters accepted when creating an environment.

    Unset resource fields fall back to the configured defaults.
    """

    name: str | None = None
    resources: dict[str, int] | None = None
    duration_hours: int | None = Field(default=None, alias="durationHours")
    repository_url: str | None = Field(default=None, alias="repositoryUrl")
    init_script: str | None = Field(default=None, alias="initScript")
    environment_vars: dict[str, str] | None = Field(default=None, alias="environmentVars")

    class Config:
        populate_by_name = True


class Environment(BaseModel):
    """A disposable, user-owned development environment.

    Only ``state``, ``metadata`` and ``updated_at`` change after creation.
    Everything else is written once when the record is created.

    Attributes:
        id: Unique identifier for the environment
        user_id: ID of the owning user
        name: Human-readable label (not unique)
        resources: Compute resources, fixed at creation
        duration_hours: Requested lifetime used to compute expires_at
        repository_url: Optional repository cloned by the provisioning backend
        init_script: Optional first-boot script
        environment_vars: Optional variables injected into the VM
        state: Current lifecycle state
        metadata: Free-form details merged on every transition
        access_token_encrypted: Access token encrypted as ``iv:ciphertext``
        created_at: When the record was created
        updated_at: When the record last changed
        expires_at: When the expiry sweep may destroy the environment
    """

    id: str = Field(default_factory=generate_uuid)
    user_id: str = Field(alias="userId")
    name: str = "Dev Environment"
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    duration_hours: int = Field(default=24, alias="durationHours")
    repository_url: str | None = Field(default=None, alias="repositoryUrl")
    init_script: str | None = Field(default=None, alias="initScript")
    environment_vars: dict[str, str] | None = Field(default=None, alias="environmentVars")
    state: EnvironmentState = EnvironmentState.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    access_token_encrypted: str | None = Field(default=None, alias="accessTokenEncrypted")
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=datetime.utcnow, alias="updatedAt")
    expires_at: datetime = Field(default_factory=datetime.utcnow, alias="expiresAt")

    class Config:
        populate_by_name = True

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the requested lifetime has elapsed."""
        return (now or datetime.utcnow()) >= self.expires_at

    def to_public(self) -> dict[str, Any]:
        """Serialize for API responses, leaving out encrypted secrets."""
        return self.model_dump(
            mode="json", by_alias=True, exclude={"access_token_encrypted"}
        )


class AccessDetails(BaseModel):
    """Connection details for a provisioned environment, returned to its owner."""

    environment_id: str = Field(alias="environmentId")
    state: EnvironmentState
    host: str | None = None
    ip_address: str | None = Field(default=None, alias="ipAddress")
    ssh_port: int | None = Field(default=None, alias="sshPort")
    username: str | None = None
    access_token: str | None = Field(default=None, alias="accessToken")

    class Config:
        populate_by_name = True
