"""Provisioning log entry model."""

from datetime import datetime

from pydantic import BaseModel, Field

from devenv_api.models.common import LogLevel


class LogEntry(BaseModel):
    """A single human-readable provisioning progress line."""

    timestamp: datetime = Field(default_factory=datetime.utcnow)
    message: str
    level: LogLevel = LogLevel.INFO


def is_progress_complete(entries: list[LogEntry]) -> bool:
    """Whether a polling client should stop watching the feed.

    Provisioning is over once a success line mentions completion or any
    error line appears.
    """
    for entry in entries:
        if entry.level == LogLevel.ERROR:
            return True
        if entry.level == LogLevel.SUCCESS and "complete" in entry.message.lower():
            return True
    return False
