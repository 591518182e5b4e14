"""Durable storage for environment records.

The relational store of the surrounding application is a collaborator; this
module defines the CRUD contract the orchestrator relies on and ships two
implementations: a JSON file store for single-node deployments and an
in-memory store for tests.
"""

import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from devenv_api.core.config import Settings, get_settings
from devenv_api.models.common import EnvironmentState
from devenv_api.models.environment import Environment


class DuplicateEnvironmentError(ValueError):
    """Raised when a record with the same ID already exists."""

    pass


class EnvironmentStore(ABC):
    """CRUD contract for environment records with a unique ``id``."""

    @abstractmethod
    def create(self, environment: Environment) -> Environment:
        """Insert a new record.

        Raises:
            DuplicateEnvironmentError: If the ID is already taken
        """

    @abstractmethod
    def get(self, env_id: str) -> Environment | None:
        """Get a record by ID."""

    @abstractmethod
    def list_all(self) -> list[Environment]:
        """List every stored record."""

    @abstractmethod
    def compare_and_swap(
        self, environment: Environment, expected_state: EnvironmentState
    ) -> bool:
        """Replace a record only if its stored state still matches.

        Returns:
            True if the record was written, False if it is missing or its
            state changed in the meantime
        """

    @abstractmethod
    def delete(self, env_id: str) -> bool:
        """Delete a record by ID."""

    def find(self, predicate: Callable[[Environment], bool]) -> list[Environment]:
        """Find records matching a predicate."""
        return [env for env in self.list_all() if predicate(env)]

    def list_by_user(self, user_id: str) -> list[Environment]:
        """List records owned by a user."""
        return self.find(lambda env: env.user_id == user_id)


class InMemoryEnvironmentStore(EnvironmentStore):
    """Process-local store, used by tests and throwaway deployments."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def _load(self, raw: dict[str, Any]) -> Environment:
        return Environment.model_validate(raw)

    def create(self, environment: Environment) -> Environment:
        with self._lock:
            if environment.id in self._records:
                raise DuplicateEnvironmentError(
                    f"Environment with ID '{environment.id}' already exists"
                )
            self._records[environment.id] = environment.model_dump(by_alias=True)
            return self._load(self._records[environment.id])

    def get(self, env_id: str) -> Environment | None:
        with self._lock:
            raw = self._records.get(env_id)
            return self._load(raw) if raw is not None else None

    def list_all(self) -> list[Environment]:
        with self._lock:
            return [self._load(raw) for raw in self._records.values()]

    def compare_and_swap(
        self, environment: Environment, expected_state: EnvironmentState
    ) -> bool:
        with self._lock:
            current = self._records.get(environment.id)
            if current is None or current["state"] != expected_state:
                return False
            self._records[environment.id] = environment.model_dump(by_alias=True)
            return True

    def delete(self, env_id: str) -> bool:
        with self._lock:
            return self._records.pop(env_id, None) is not None


class JsonFileEnvironmentStore(EnvironmentStore):
    """Thread-safe JSON file store.

    All records live in one file under an ``environments`` key. Writes go
    to a temp file that is then renamed over the original.
    """

    collection_key = "environments"

    def __init__(self, file_path: Path) -> None:
        """Initialize the store.

        Args:
            file_path: Path to the JSON file
        """
        self.file_path = file_path
        self._lock = threading.RLock()
        if not self.file_path.exists():
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            self._write([])

    def _read(self) -> list[Environment]:
        with open(self.file_path, encoding="utf-8") as f:
            data = json.load(f)
        return [Environment.model_validate(item) for item in data.get(self.collection_key, [])]

    def _write(self, environments: list[Environment]) -> None:
        data = {
            self.collection_key: [
                env.model_dump(mode="json", by_alias=True) for env in environments
            ]
        }
        temp_path = self.file_path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        temp_path.replace(self.file_path)

    def create(self, environment: Environment) -> Environment:
        with self._lock:
            environments = self._read()
            if any(env.id == environment.id for env in environments):
                raise DuplicateEnvironmentError(
                    f"Environment with ID '{environment.id}' already exists"
                )
            environments.append(environment)
            self._write(environments)
            return environment

    def get(self, env_id: str) -> Environment | None:
        with self._lock:
            for env in self._read():
                if env.id == env_id:
                    return env
            return None

    def list_all(self) -> list[Environment]:
        with self._lock:
            return self._read()

    def compare_and_swap(
        self, environment: Environment, expected_state: EnvironmentState
    ) -> bool:
        with self._lock:
            environments = self._read()
            for i, existing in enumerate(environments):
                if existing.id == environment.id:
                    if existing.state != expected_state:
                        return False
                    environments[i] = environment
                    self._write(environments)
                    return True
            return False

    def delete(self, env_id: str) -> bool:
        with self._lock:
            environments = self._read()
            remaining = [env for env in environments if env.id != env_id]
            if len(remaining) == len(environments):
                return False
            self._write(remaining)
            return True


def create_environment_store(settings: Settings) -> EnvironmentStore:
    """Build the store selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryEnvironmentStore()
    return JsonFileEnvironmentStore(settings.data_dir / "metadata" / "environments.json")


# Global store instance
_environment_store: EnvironmentStore | None = None


def get_environment_store() -> EnvironmentStore:
    """Get the global EnvironmentStore instance."""
    global _environment_store
    if _environment_store is None:
        _environment_store = create_environment_store(get_settings())
    return _environment_store
