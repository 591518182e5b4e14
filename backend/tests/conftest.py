"""Pytest configuration and shared fixtures for devenv-api tests."""

import os
from collections.abc import Iterator

import pytest

# In-process backends for every test; set before the app module is imported
os.environ.setdefault("DEVENV_STORE_BACKEND", "memory")
os.environ.setdefault("DEVENV_QUEUE_BACKEND", "memory")
os.environ.setdefault("DEVENV_LOG_BUFFER_BACKEND", "memory")
os.environ.setdefault("DEVENV_OTEL_ENABLED", "false")
os.environ.setdefault("DEVENV_EXPIRY_SWEEP_ENABLED", "false")

from devenv_api.core.broker import InMemoryQueueBroker  # noqa: E402
from devenv_api.core.config import Settings  # noqa: E402
from devenv_api.core.secrets import SecretCipher  # noqa: E402
from devenv_api.core.store import InMemoryEnvironmentStore  # noqa: E402
from devenv_api.models.common import PlanTier, UserRole  # noqa: E402
from devenv_api.models.user import AuthenticatedUser  # noqa: E402
from devenv_api.services.environment import EnvironmentService  # noqa: E402
from devenv_api.services.job_queue import (  # noqa: E402
    ControlQueue,
    ProvisionQueue,
    create_control_queue,
    create_provision_queue,
)
from devenv_api.services.orchestrator import EnvironmentOrchestrator  # noqa: E402
from devenv_api.services.provision_log import InMemoryProvisionLogBuffer  # noqa: E402


class FakeClock:
    """Manually advanced clock for queue backoff and buffer TTL tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _reset_globals() -> None:
    import devenv_api.core.broker as broker_module
    import devenv_api.core.secrets as secrets_module
    import devenv_api.core.store as store_module
    import devenv_api.services.environment as env_module
    import devenv_api.services.expiry as expiry_module
    import devenv_api.services.job_queue as queue_module
    import devenv_api.services.orchestrator as orchestrator_module
    import devenv_api.services.provision_log as log_module
    import devenv_api.services.provisioning as provisioning_module
    from devenv_api.core.config import get_settings

    get_settings.cache_clear()
    broker_module.reset_brokers()
    store_module._environment_store = None
    secrets_module._secret_cipher = None
    env_module._environment_service = None
    queue_module._provision_queue = None
    queue_module._control_queue = None
    log_module._provision_log_buffer = None
    orchestrator_module._orchestrator = None
    provisioning_module._provisioning_backend = None
    expiry_module._expiry_controller = None


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: marks tests that require a reachable Docker daemon",
    )


@pytest.fixture(autouse=True)
def reset_globals() -> Iterator[None]:
    """Give every test fresh settings and service singletons."""
    _reset_globals()
    yield
    _reset_globals()


@pytest.fixture
def settings() -> Settings:
    """Settings with in-memory backends and short worker timings."""
    return Settings(
        store_backend="memory",
        queue_backend="memory",
        log_buffer_backend="memory",
        otel_enabled=False,
        expiry_sweep_enabled=False,
        destroy_defer_seconds=5.0,
        worker_poll_interval_seconds=0.01,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryEnvironmentStore:
    return InMemoryEnvironmentStore()


@pytest.fixture
def env_service(store: InMemoryEnvironmentStore) -> EnvironmentService:
    return EnvironmentService(store=store)


@pytest.fixture
def broker() -> InMemoryQueueBroker:
    return InMemoryQueueBroker()


@pytest.fixture
def provision_queue(
    settings: Settings, broker: InMemoryQueueBroker, clock: FakeClock
) -> ProvisionQueue:
    return create_provision_queue(settings, broker, clock=clock)


@pytest.fixture
def control_queue(
    settings: Settings, broker: InMemoryQueueBroker, clock: FakeClock
) -> ControlQueue:
    return create_control_queue(settings, broker, clock=clock)


@pytest.fixture
def log_buffer(clock: FakeClock) -> InMemoryProvisionLogBuffer:
    return InMemoryProvisionLogBuffer(max_entries=100, ttl_seconds=3600, clock=clock)


@pytest.fixture
def cipher() -> SecretCipher:
    """Cipher with a fixed key (skips the slow key derivation)."""
    return SecretCipher(b"0123456789abcdef0123456789abcdef")


@pytest.fixture
def orchestrator(
    settings: Settings,
    env_service: EnvironmentService,
    provision_queue: ProvisionQueue,
    control_queue: ControlQueue,
    log_buffer: InMemoryProvisionLogBuffer,
    cipher: SecretCipher,
) -> EnvironmentOrchestrator:
    """Orchestrator wired entirely to in-memory collaborators."""
    return EnvironmentOrchestrator(
        settings=settings,
        environment_service=env_service,
        provision_queue=provision_queue,
        control_queue=control_queue,
        log_buffer=log_buffer,
        cipher=cipher,
    )


@pytest.fixture
def pro_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="dev@example.com", plan=PlanTier.PRO)


@pytest.fixture
def other_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-2", email="other@example.com", plan=PlanTier.PRO)


@pytest.fixture
def admin_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="admin-1", role=UserRole.ADMIN, plan=PlanTier.UNLIMITED)
