"""Provisioning backends: the drivers workers use to create and control VMs.

The orchestrator never talks to a backend directly. Workers call one of
these after reserving a job and report the outcome as a state transition.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from devenv_api.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

MANAGED_LABEL = "devenv.managed"
ENVIRONMENT_LABEL = "devenv.environment-id"
USER_LABEL = "devenv.user-id"
SSH_CONTAINER_PORT = "22/tcp"


class ProvisioningError(Exception):
    """Raised when a backend fails to create or control a VM."""

    pass


@dataclass
class VMSpec:
    """What a provision job asks the backend to build."""

    environment_id: str
    user_id: str
    vcpus: int
    memory_mb: int
    disk_gb: int
    repository_url: str | None = None
    init_script: str | None = None
    environment_vars: dict[str, str] = field(default_factory=dict)


@dataclass
class VMDetails:
    """What the backend reports about a created VM."""

    vm_id: str
    host: str
    ip_address: str | None = None
    ssh_port: int | None = None
    username: str = "root"
    extra: dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> dict[str, Any]:
        """Environment metadata keys written on the transition to running."""
        return {
            "vmId": self.vm_id,
            "host": self.host,
            "ipAddress": self.ip_address,
            "sshPort": self.ssh_port,
            "username": self.username,
            **self.extra,
        }


class ProvisioningBackend(ABC):
    """Abstract driver for a compute provider."""

    name: str = "abstract"

    @abstractmethod
    async def create_vm(self, spec: VMSpec) -> VMDetails:
        """Create and boot a VM.

        Must be safe to call again for the same environment after a failed
        attempt.

        Raises:
            ProvisioningError: If the VM could not be created
        """

    @abstractmethod
    async def start_vm(self, vm_id: str) -> None:
        """Boot a stopped VM."""

    @abstractmethod
    async def stop_vm(self, vm_id: str) -> None:
        """Stop a running VM, keeping its disk."""

    @abstractmethod
    async def destroy_vm(self, vm_id: str) -> None:
        """Delete a VM and everything it holds. A missing VM is not an error."""


class DockerProvisioningBackend(ProvisioningBackend):
    """Runs each environment as an SSH-capable Docker container.

    Suitable for development and single-host deployments. The Docker SDK is
    blocking, so every call runs in a worker thread.

    Example:
        ```python
        backend = DockerProvisioningBackend(settings)
        details = await backend.create_vm(VMSpec(environment_id="...", user_id="u1",
                                                 vcpus=2, memory_mb=4096, disk_gb=10))
        await backend.stop_vm(details.vm_id)
        ```
    """

    name = "docker"

    def __init__(
        self,
        settings: Settings | None = None,
        client: docker.DockerClient | None = None,
        ready_timeout_seconds: float = 30.0,
    ) -> None:
        """Initialize the backend.

        Args:
            settings: Application settings (uses default if not provided)
            client: Docker client (created from the environment if not provided)
            ready_timeout_seconds: How long to wait for a container to run
        """
        self.settings = settings or get_settings()
        self._docker_client = client
        self.ready_timeout_seconds = ready_timeout_seconds

    @property
    def docker_client(self) -> docker.DockerClient:
        """Get or create the Docker client."""
        if self._docker_client is None:
            self._docker_client = docker.from_env()
        return self._docker_client

    def container_name(self, environment_id: str) -> str:
        """Deterministic container name, so a retried create replaces its leftovers."""
        return f"{self.settings.docker_name_prefix}-{environment_id}"

    # -------------------------------------------------------------------------
    # Async API
    # -------------------------------------------------------------------------

    async def create_vm(self, spec: VMSpec) -> VMDetails:
        return await asyncio.to_thread(self._create_vm_sync, spec)

    async def start_vm(self, vm_id: str) -> None:
        await asyncio.to_thread(self._start_vm_sync, vm_id)

    async def stop_vm(self, vm_id: str) -> None:
        await asyncio.to_thread(self._stop_vm_sync, vm_id)

    async def destroy_vm(self, vm_id: str) -> None:
        await asyncio.to_thread(self._destroy_vm_sync, vm_id)

    # -------------------------------------------------------------------------
    # Blocking implementation
    # -------------------------------------------------------------------------

    def _used_ssh_ports(self) -> set[int]:
        used: set[int] = set()
        containers = self.docker_client.containers.list(
            all=True, filters={"label": f"{MANAGED_LABEL}=true"}
        )
        for container in containers:
            bindings = container.attrs.get("HostConfig", {}).get("PortBindings") or {}
            for binding in bindings.get(SSH_CONTAINER_PORT) or []:
                if binding.get("HostPort"):
                    used.add(int(binding["HostPort"]))
        return used

    def _find_available_port(self) -> int:
        used = self._used_ssh_ports()
        port = self.settings.docker_ssh_port_start
        while port in used:
            port += 1
        return port

    def _remove_if_exists(self, name: str) -> None:
        try:
            leftover = self.docker_client.containers.get(name)
        except NotFound:
            return
        logger.info(f"Removing leftover container {name} from a previous attempt")
        leftover.remove(force=True)

    def _wait_until_running(self, container: Any) -> None:
        deadline = time.monotonic() + self.ready_timeout_seconds
        while time.monotonic() < deadline:
            container.reload()
            if container.status == "running":
                return
            if container.status in {"exited", "dead"}:
                raise ProvisioningError(
                    f"Container {container.short_id} stopped during startup"
                )
            time.sleep(1)
        raise ProvisioningError(
            f"Container {container.short_id} did not start within "
            f"{self.ready_timeout_seconds:g}s"
        )

    def _exec(self, container: Any, command: str, step: str) -> None:
        exit_code, output = container.exec_run(["/bin/sh", "-c", command])
        if exit_code != 0:
            text = output.decode("utf-8", errors="replace") if output else ""
            raise ProvisioningError(f"{step} failed with exit code {exit_code}: {text[-500:]}")

    def _container_ip(self, container: Any) -> str | None:
        networks = container.attrs.get("NetworkSettings", {}).get("Networks") or {}
        for network in networks.values():
            if network.get("IPAddress"):
                return network["IPAddress"]
        return None

    def _create_vm_sync(self, spec: VMSpec) -> VMDetails:
        name = self.container_name(spec.environment_id)
        try:
            self._remove_if_exists(name)
            ssh_port = self._find_available_port()

            logger.info(
                f"Creating container {name} ({spec.vcpus} vCPU, {spec.memory_mb}MB) "
                f"from {self.settings.docker_vm_image} on SSH port {ssh_port}"
            )
            container = self.docker_client.containers.run(
                self.settings.docker_vm_image,
                detach=True,
                name=name,
                nano_cpus=spec.vcpus * 1_000_000_000,
                mem_limit=f"{spec.memory_mb}m",
                ports={SSH_CONTAINER_PORT: ssh_port},
                environment=spec.environment_vars,
                labels={
                    MANAGED_LABEL: "true",
                    ENVIRONMENT_LABEL: spec.environment_id,
                    USER_LABEL: spec.user_id,
                },
                restart_policy={"Name": "unless-stopped"},
            )
            self._wait_until_running(container)

            if spec.repository_url:
                self._exec(
                    container,
                    f"git clone --depth 1 '{spec.repository_url}' /root/workspace",
                    "Repository clone",
                )
            if spec.init_script:
                self._exec(container, spec.init_script, "Init script")

            container.reload()
            return VMDetails(
                vm_id=container.id,
                host="localhost",
                ip_address=self._container_ip(container),
                ssh_port=ssh_port,
                extra={"containerName": name, "backend": self.name},
            )
        except DockerException as e:
            raise ProvisioningError(f"Docker error creating {name}: {e}") from e

    def _start_vm_sync(self, vm_id: str) -> None:
        try:
            container = self.docker_client.containers.get(vm_id)
            container.start()
            self._wait_until_running(container)
        except NotFound as e:
            raise ProvisioningError(f"Container {vm_id[:12]} no longer exists") from e
        except DockerException as e:
            raise ProvisioningError(f"Docker error starting {vm_id[:12]}: {e}") from e
        logger.info(f"Started container {vm_id[:12]}")

    def _stop_vm_sync(self, vm_id: str) -> None:
        try:
            self.docker_client.containers.get(vm_id).stop(timeout=10)
        except NotFound as e:
            raise ProvisioningError(f"Container {vm_id[:12]} no longer exists") from e
        except DockerException as e:
            raise ProvisioningError(f"Docker error stopping {vm_id[:12]}: {e}") from e
        logger.info(f"Stopped container {vm_id[:12]}")

    def _destroy_vm_sync(self, vm_id: str) -> None:
        try:
            self.docker_client.containers.get(vm_id).remove(force=True)
        except NotFound:
            logger.info(f"Container {vm_id[:12]} already removed")
            return
        except DockerException as e:
            raise ProvisioningError(f"Docker error destroying {vm_id[:12]}: {e}") from e
        logger.info(f"Destroyed container {vm_id[:12]}")


def create_provisioning_backend(settings: Settings) -> ProvisioningBackend:
    """Build the backend selected by ``settings.provisioning_backend``."""
    if settings.provisioning_backend == "docker":
        return DockerProvisioningBackend(settings)
    raise ValueError(f"Unknown provisioning backend: {settings.provisioning_backend}")


# Global backend instance
_provisioning_backend: ProvisioningBackend | None = None


def get_provisioning_backend() -> ProvisioningBackend:
    """Get the global ProvisioningBackend instance."""
    global _provisioning_backend
    if _provisioning_backend is None:
        _provisioning_backend = create_provisioning_backend(get_settings())
    return _provisioning_backend
