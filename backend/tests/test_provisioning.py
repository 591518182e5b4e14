"""Tests for the Docker provisioning backend with a mocked Docker client."""

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from devenv_api.core.config import Settings
from devenv_api.services.provisioning import (
    ENVIRONMENT_LABEL,
    MANAGED_LABEL,
    DockerProvisioningBackend,
    ProvisioningError,
    VMDetails,
    VMSpec,
    create_provisioning_backend,
)


@pytest.fixture
def docker_client() -> MagicMock:
    client = MagicMock()
    client.containers.get.side_effect = NotFound("no such container")
    client.containers.list.return_value = []

    container = MagicMock()
    container.id = "c" * 64
    container.short_id = "c" * 12
    container.status = "running"
    container.attrs = {"NetworkSettings": {"Networks": {"bridge": {"IPAddress": "172.17.0.2"}}}}
    container.exec_run.return_value = (0, b"")
    client.containers.run.return_value = container
    return client


@pytest.fixture
def docker_backend(settings: Settings, docker_client: MagicMock) -> DockerProvisioningBackend:
    return DockerProvisioningBackend(settings, client=docker_client, ready_timeout_seconds=1)


def _spec(**overrides) -> VMSpec:
    fields = {"environment_id": "env-1", "user_id": "user-1", "vcpus": 2, "memory_mb": 4096,
              "disk_gb": 10}
    fields.update(overrides)
    return VMSpec(**fields)


class TestVMDetails:
    def test_to_metadata(self):
        details = VMDetails(
            vm_id="vm-1", host="localhost", ssh_port=2222, extra={"backend": "docker"}
        )
        assert details.to_metadata() == {
            "vmId": "vm-1",
            "host": "localhost",
            "ipAddress": None,
            "sshPort": 2222,
            "username": "root",
            "backend": "docker",
        }


class TestDockerCreate:
    """Tests for create_vm."""

    @pytest.mark.asyncio
    async def test_create_vm(
        self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock
    ):
        details = await docker_backend.create_vm(_spec(environment_vars={"FOO": "bar"}))

        kwargs = docker_client.containers.run.call_args.kwargs
        assert kwargs["name"] == "devenv-env-1"
        assert kwargs["nano_cpus"] == 2_000_000_000
        assert kwargs["mem_limit"] == "4096m"
        assert kwargs["ports"] == {"22/tcp": 2222}
        assert kwargs["environment"] == {"FOO": "bar"}
        assert kwargs["labels"][MANAGED_LABEL] == "true"
        assert kwargs["labels"][ENVIRONMENT_LABEL] == "env-1"

        assert details.vm_id == "c" * 64
        assert details.ip_address == "172.17.0.2"
        assert details.ssh_port == 2222
        assert details.extra["containerName"] == "devenv-env-1"

    @pytest.mark.asyncio
    async def test_skips_used_ports(
        self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock
    ):
        used = MagicMock()
        used.attrs = {"HostConfig": {"PortBindings": {"22/tcp": [{"HostPort": "2222"}]}}}
        docker_client.containers.list.return_value = [used]

        details = await docker_backend.create_vm(_spec())
        assert details.ssh_port == 2223

    @pytest.mark.asyncio
    async def test_removes_leftover_container(
        self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock
    ):
        leftover = MagicMock()
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = leftover

        await docker_backend.create_vm(_spec())
        leftover.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_runs_clone_and_init_script(
        self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock
    ):
        await docker_backend.create_vm(
            _spec(repository_url="https://github.com/example/repo.git", init_script="make setup")
        )

        container = docker_client.containers.run.return_value
        commands = [c.args[0][-1] for c in container.exec_run.call_args_list]
        assert "git clone" in commands[0]
        assert commands[1] == "make setup"

    @pytest.mark.asyncio
    async def test_failed_init_script(
        self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock
    ):
        container = docker_client.containers.run.return_value
        container.exec_run.return_value = (1, b"make: *** No rule to make target")

        with pytest.raises(ProvisioningError, match="Init script failed"):
            await docker_backend.create_vm(_spec(init_script="make setup"))

    @pytest.mark.asyncio
    async def test_docker_error_is_wrapped(
        self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock
    ):
        docker_client.containers.run.side_effect = APIError("image not found")

        with pytest.raises(ProvisioningError):
            await docker_backend.create_vm(_spec())


class TestDockerControl:
    @pytest.mark.asyncio
    async def test_stop(self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock):
        container = MagicMock()
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

        await docker_backend.stop_vm("c" * 64)
        container.stop.assert_called_once_with(timeout=10)

    @pytest.mark.asyncio
    async def test_start_missing_container(self, docker_backend: DockerProvisioningBackend):
        with pytest.raises(ProvisioningError, match="no longer exists"):
            await docker_backend.start_vm("c" * 64)

    @pytest.mark.asyncio
    async def test_destroy_missing_container_is_ok(
        self, docker_backend: DockerProvisioningBackend
    ):
        await docker_backend.destroy_vm("c" * 64)

    @pytest.mark.asyncio
    async def test_destroy(self, docker_backend: DockerProvisioningBackend, docker_client: MagicMock):
        container = MagicMock()
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

        await docker_backend.destroy_vm("c" * 64)
        container.remove.assert_called_once_with(force=True)


def test_create_provisioning_backend(settings: Settings):
    assert isinstance(create_provisioning_backend(settings), DockerProvisioningBackend)
