"""Common enums and types used across models."""

from enum import Enum


class EnvironmentState(str, Enum):
    """State of a development environment in its lifecycle.

    State machine transitions:
        PENDING -> PROVISIONING (provision job picked up)
        PROVISIONING -> RUNNING (provision succeeded)
        PROVISIONING -> ERROR (provision failed after retries)
        RUNNING -> STOPPING (stop requested)
        STOPPING -> STOPPED (stop succeeded)
        STOPPING -> ERROR (stop failed after retries)
        STOPPED -> STARTING (start requested)
        STARTING -> RUNNING (start succeeded)
        STARTING -> ERROR (start failed after retries)
        RUNNING / STOPPED / ERROR -> DESTROYING (destroy requested)
        DESTROYING -> DESTROYED (destroy succeeded)
        DESTROYING -> DESTROY_ERROR (teardown failed after retries)
        DESTROY_ERROR -> DESTROYING (cleanup retried)
    """

    PENDING = "pending"  # Record written, provision job queued
    PROVISIONING = "provisioning"  # Worker is creating the VM
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    STARTING = "starting"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"  # Terminal
    ERROR = "error"  # Failed; can still be destroyed
    DESTROY_ERROR = "destroy_error"  # Teardown left resources behind


class JobOperation(str, Enum):
    """Operation carried by a queued job."""

    PROVISION = "provision"
    START = "start"
    STOP = "stop"
    DESTROY = "destroy"


class LogLevel(str, Enum):
    """Level of a provisioning log entry."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    DEBUG = "debug"


class PlanTier(str, Enum):
    """Subscription plan that determines resource limits."""

    FREE = "free"
    PRO = "pro"
    UNLIMITED = "unlimited"


class UserRole(str, Enum):
    """Caller role carried in the access token."""

    USER = "user"
    WORKER = "worker"  # Service accounts reporting job progress
    ADMIN = "admin"
