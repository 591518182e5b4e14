"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DEVENV_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "Dev Environment Orchestrator"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Storage
    data_dir: Path = Path("data")
    store_backend: Literal["json", "memory"] = "json"

    # Redis (job queues and provisioning log buffer)
    redis_url: str = "redis://localhost:6379"
    queue_backend: Literal["redis", "memory"] = "redis"
    log_buffer_backend: Literal["redis", "memory"] = "redis"

    # Provision queue: slow, resource-allocating jobs
    provision_queue_name: str = "vm-provision"
    provision_max_attempts: int = 3
    provision_backoff_seconds: float = 5.0
    provision_keep_completed: int = 100
    provision_keep_failed: int = 100

    # Control queue: start/stop/destroy
    control_queue_name: str = "vm-control"
    control_max_attempts: int = 2
    control_backoff_seconds: float = 2.0
    control_keep_completed: int = 50
    control_keep_failed: int = 50

    # Provisioning log buffer
    provision_log_ttl_seconds: int = 3600  # 1 hour, reset on every append
    provision_log_max_entries: int = 100

    # Environment defaults
    default_duration_hours: int = 24
    default_vcpus: int = 2
    default_memory_mb: int = 4096
    default_disk_gb: int = 10

    # Workers
    embedded_worker_enabled: bool = False  # Run workers inside the API process
    worker_poll_interval_seconds: float = 1.0
    provision_worker_concurrency: int = 2
    control_worker_concurrency: int = 5
    destroy_defer_seconds: float = 5.0  # Hold a destroy behind an in-flight operation
    job_lease_seconds: float = 60.0  # Active jobs not renewed within this are requeued
    worker_shutdown_timeout_seconds: float = 30.0  # Wait for in-flight jobs on stop

    # Expiry sweep
    expiry_sweep_enabled: bool = True
    expiry_sweep_interval_seconds: int = 300  # 5 minutes between sweeps
    destroyed_retention_hours: int = 72  # Purge destroyed records after 3 days

    # Provisioning backend
    provisioning_backend: Literal["docker"] = "docker"
    docker_vm_image: str = "rastasheep/ubuntu-sshd:latest"
    docker_ssh_port_start: int = 2222
    docker_name_prefix: str = "devenv"

    # OpenTelemetry
    otel_enabled: bool = True
    otel_service_name: str = "devenv-api"
    otel_exporter_endpoint: str = "http://localhost:4317"

    # Security
    secret_key: str = "dev-secret-key-change-in-production"
    secret_salt: str = "devenv-vm-secrets"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24  # 24 hours

    def ensure_data_dirs(self) -> None:
        """Create data directory structure if it doesn't exist."""
        subdirs = ["metadata"]
        for subdir in subdirs:
            (self.data_dir / subdir).mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
