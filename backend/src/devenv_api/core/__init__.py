"""Core modules for configuration, storage, brokers, secrets and telemetry."""

from devenv_api.core.config import Settings, get_settings
from devenv_api.core.store import EnvironmentStore, get_environment_store
from devenv_api.core.telemetry import get_tracer, setup_telemetry

__all__ = [
    "EnvironmentStore",
    "Settings",
    "get_environment_store",
    "get_settings",
    "get_tracer",
    "setup_telemetry",
]
