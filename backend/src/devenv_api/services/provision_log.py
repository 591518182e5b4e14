"""Ephemeral per-user buffer of provisioning progress lines.

Workers append human-readable lines while they provision; clients poll the
buffer (or stream it over SSE) to show progress. Each user has one bounded
list:

- key ``provision-logs:<user id>``
- at most 100 entries, oldest dropped first
- expires one hour after the last append (every append resets the TTL)

The buffer is best-effort. ``ProvisionLogger`` swallows write failures so
progress logging can never fail a provisioning operation.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field

import redis

from devenv_api.core.broker import get_redis_client
from devenv_api.core.config import Settings, get_settings
from devenv_api.models.common import LogLevel
from devenv_api.models.log import LogEntry

logger = logging.getLogger(__name__)


def log_buffer_key(user_id: str) -> str:
    """Storage key for a user's buffer."""
    return f"provision-logs:{user_id}"


class ProvisionLogBuffer(ABC):
    """Bounded, TTL-scoped list of log entries per user."""

    def __init__(self, max_entries: int = 100, ttl_seconds: int = 3600) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    def append(
        self, user_id: str, message: str, level: LogLevel = LogLevel.INFO
    ) -> LogEntry:
        """Append an entry, trim to ``max_entries`` and reset the TTL."""

    @abstractmethod
    def read_all(self, user_id: str) -> list[LogEntry]:
        """All live entries in insertion order; empty if expired or missing."""

    @abstractmethod
    def clear(self, user_id: str) -> None:
        """Drop a user's buffer."""

    def ping(self) -> bool:
        """Check the backend is reachable."""
        return True


class RedisProvisionLogBuffer(ProvisionLogBuffer):
    """Redis list per user, written with RPUSH + LTRIM + EXPIRE."""

    def __init__(
        self, client: redis.Redis, max_entries: int = 100, ttl_seconds: int = 3600
    ) -> None:
        super().__init__(max_entries, ttl_seconds)
        self.client = client

    def append(
        self, user_id: str, message: str, level: LogLevel = LogLevel.INFO
    ) -> LogEntry:
        entry = LogEntry(message=message, level=level)
        key = log_buffer_key(user_id)
        pipe = self.client.pipeline()
        pipe.rpush(key, entry.model_dump_json())
        pipe.ltrim(key, -self.max_entries, -1)
        pipe.expire(key, self.ttl_seconds)
        pipe.execute()
        return entry

    def read_all(self, user_id: str) -> list[LogEntry]:
        raw_entries = self.client.lrange(log_buffer_key(user_id), 0, -1)
        return [LogEntry.model_validate_json(raw) for raw in raw_entries]

    def clear(self, user_id: str) -> None:
        self.client.delete(log_buffer_key(user_id))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning("Log buffer ping failed: %s", e)
            return False


@dataclass
class _BufferedList:
    entries: list[LogEntry] = field(default_factory=list)
    expires_at: float = 0.0


class InMemoryProvisionLogBuffer(ProvisionLogBuffer):
    """Process-local buffer with the same trimming and expiry rules.

    The clock is injectable so tests can advance time past the TTL.
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(max_entries, ttl_seconds)
        self._clock = clock
        self._lists: dict[str, _BufferedList] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> _BufferedList | None:
        buffered = self._lists.get(key)
        if buffered is not None and self._clock() >= buffered.expires_at:
            del self._lists[key]
            return None
        return buffered

    def append(
        self, user_id: str, message: str, level: LogLevel = LogLevel.INFO
    ) -> LogEntry:
        entry = LogEntry(message=message, level=level)
        key = log_buffer_key(user_id)
        with self._lock:
            buffered = self._live(key)
            if buffered is None:
                buffered = self._lists[key] = _BufferedList()
            buffered.entries.append(entry)
            del buffered.entries[: -self.max_entries]
            buffered.expires_at = self._clock() + self.ttl_seconds
        return entry

    def read_all(self, user_id: str) -> list[LogEntry]:
        with self._lock:
            buffered = self._live(log_buffer_key(user_id))
            return list(buffered.entries) if buffered else []

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._lists.pop(log_buffer_key(user_id), None)


class ProvisionLogger:
    """Writes progress lines for one user to the buffer and to ``logging``.

    Example:
        ```python
        plog = ProvisionLogger(buffer, user_id)
        plog.info("Creating VM...")
        plog.success("Provisioning complete!")
        ```
    """

    _LOGGING_LEVELS = {
        LogLevel.INFO: logging.INFO,
        LogLevel.SUCCESS: logging.INFO,
        LogLevel.ERROR: logging.ERROR,
        LogLevel.DEBUG: logging.DEBUG,
    }

    def __init__(self, buffer: ProvisionLogBuffer, user_id: str) -> None:
        self.buffer = buffer
        self.user_id = user_id

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        """Mirror a line to ``logging`` and append it to the buffer."""
        logger.log(self._LOGGING_LEVELS[level], "[user %s] %s", self.user_id, message)
        try:
            self.buffer.append(self.user_id, message, level)
        except Exception as e:
            logger.error(f"Failed to write provision log for user {self.user_id}: {e}")

    def info(self, message: str) -> None:
        self.log(message, LogLevel.INFO)

    def success(self, message: str) -> None:
        self.log(message, LogLevel.SUCCESS)

    def error(self, message: str) -> None:
        self.log(message, LogLevel.ERROR)

    def debug(self, message: str) -> None:
        self.log(message, LogLevel.DEBUG)


def create_provision_log_buffer(settings: Settings) -> ProvisionLogBuffer:
    """Build the buffer selected by ``settings.log_buffer_backend``."""
    if settings.log_buffer_backend == "memory":
        return InMemoryProvisionLogBuffer(
            max_entries=settings.provision_log_max_entries,
            ttl_seconds=settings.provision_log_ttl_seconds,
        )
    return RedisProvisionLogBuffer(
        get_redis_client(settings),
        max_entries=settings.provision_log_max_entries,
        ttl_seconds=settings.provision_log_ttl_seconds,
    )


# Global buffer instance
_provision_log_buffer: ProvisionLogBuffer | None = None


def get_provision_log_buffer() -> ProvisionLogBuffer:
    """Get the global ProvisionLogBuffer instance."""
    global _provision_log_buffer
    if _provision_log_buffer is None:
        _provision_log_buffer = create_provision_log_buffer(get_settings())
    return _provision_log_buffer
