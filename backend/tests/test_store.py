"""Tests for the environment record stores."""

import json
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from devenv_api.core.config import Settings
from devenv_api.core.store import (
    DuplicateEnvironmentError,
    EnvironmentStore,
    InMemoryEnvironmentStore,
    JsonFileEnvironmentStore,
    create_environment_store,
)
from devenv_api.models.common import EnvironmentState
from devenv_api.models.environment import Environment


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(params=["memory", "json"])
def any_store(request, temp_dir: Path) -> EnvironmentStore:
    """Run each contract test against both store implementations."""
    if request.param == "memory":
        return InMemoryEnvironmentStore()
    return JsonFileEnvironmentStore(temp_dir / "environments.json")


class TestStoreContract:
    """Behavior shared by every EnvironmentStore."""

    def test_create_and_get(self, any_store: EnvironmentStore):
        env = any_store.create(Environment(userId="user-1", name="one"))
        fetched = any_store.get(env.id)
        assert fetched is not None
        assert fetched.name == "one"
        assert fetched.state == EnvironmentState.PENDING

    def test_get_missing(self, any_store: EnvironmentStore):
        assert any_store.get("missing") is None

    def test_create_duplicate_id(self, any_store: EnvironmentStore):
        env = any_store.create(Environment(userId="user-1"))
        with pytest.raises(DuplicateEnvironmentError):
            any_store.create(Environment(id=env.id, userId="user-1"))

    def test_list_by_user(self, any_store: EnvironmentStore):
        any_store.create(Environment(userId="user-1"))
        any_store.create(Environment(userId="user-1"))
        any_store.create(Environment(userId="user-2"))

        assert len(any_store.list_all()) == 3
        assert len(any_store.list_by_user("user-1")) == 2
        assert len(any_store.list_by_user("nobody")) == 0

    def test_compare_and_swap_matching_state(self, any_store: EnvironmentStore):
        env = any_store.create(Environment(userId="user-1"))
        updated = env.model_copy(update={"state": EnvironmentState.PROVISIONING})

        assert any_store.compare_and_swap(updated, EnvironmentState.PENDING) is True
        assert any_store.get(env.id).state == EnvironmentState.PROVISIONING

    def test_compare_and_swap_stale_state(self, any_store: EnvironmentStore):
        env = any_store.create(Environment(userId="user-1"))
        updated = env.model_copy(update={"state": EnvironmentState.ERROR})

        assert any_store.compare_and_swap(updated, EnvironmentState.RUNNING) is False
        assert any_store.get(env.id).state == EnvironmentState.PENDING

    def test_compare_and_swap_missing(self, any_store: EnvironmentStore):
        env = Environment(userId="user-1")
        assert any_store.compare_and_swap(env, EnvironmentState.PENDING) is False

    def test_delete(self, any_store: EnvironmentStore):
        env = any_store.create(Environment(userId="user-1"))
        assert any_store.delete(env.id) is True
        assert any_store.delete(env.id) is False
        assert any_store.get(env.id) is None

    def test_find(self, any_store: EnvironmentStore):
        any_store.create(Environment(userId="user-1", name="alpha"))
        any_store.create(Environment(userId="user-1", name="beta"))

        found = any_store.find(lambda e: e.name.startswith("a"))
        assert [e.name for e in found] == ["alpha"]


class TestJsonFileEnvironmentStore:
    """Tests specific to the JSON file store."""

    def test_creates_file_on_init(self, temp_dir: Path):
        path = temp_dir / "nested" / "environments.json"
        JsonFileEnvironmentStore(path)

        assert path.exists()
        assert json.loads(path.read_text()) == {"environments": []}

    def test_persists_across_instances(self, temp_dir: Path):
        path = temp_dir / "environments.json"
        env = JsonFileEnvironmentStore(path).create(
            Environment(userId="user-1", metadata={"host": "10.0.0.5"})
        )

        reopened = JsonFileEnvironmentStore(path).get(env.id)
        assert reopened is not None
        assert reopened.metadata == {"host": "10.0.0.5"}
        assert reopened.created_at == env.created_at

    def test_file_uses_camel_case(self, temp_dir: Path):
        path = temp_dir / "environments.json"
        JsonFileEnvironmentStore(path).create(Environment(userId="user-1"))

        record = json.loads(path.read_text())["environments"][0]
        assert record["userId"] == "user-1"
        assert "expiresAt" in record


class TestCreateEnvironmentStore:
    def test_memory_backend(self):
        store = create_environment_store(Settings(store_backend="memory"))
        assert isinstance(store, InMemoryEnvironmentStore)

    def test_json_backend(self, temp_dir: Path):
        settings = Settings(store_backend="json", data_dir=temp_dir)
        store = create_environment_store(settings)

        assert isinstance(store, JsonFileEnvironmentStore)
        assert store.file_path == temp_dir / "metadata" / "environments.json"
