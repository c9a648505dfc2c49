"""
Sync status projection: one shared value observed by the presentation layer.

    idle ──▶ syncing ──▶ success(at) | error(message)
                ▲                │
                └────────────────┘   (next pass)

`idle` only exists before the first pass of a process lifetime. Nothing is
persisted; every pipeline step overwrites the value.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from tracker.models.snapshots import utcnow

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class SyncStatus:
    state: SyncState
    at: Optional[datetime] = None
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "SyncStatus":
        return cls(SyncState.IDLE)

    @classmethod
    def syncing(cls) -> "SyncStatus":
        return cls(SyncState.SYNCING, at=utcnow())

    @classmethod
    def success(cls, at: Optional[datetime] = None) -> "SyncStatus":
        return cls(SyncState.SUCCESS, at=at or utcnow())

    @classmethod
    def error(cls, message: str) -> "SyncStatus":
        return cls(SyncState.ERROR, at=utcnow(), message=message)

    @property
    def description(self) -> str:
        if self.state is SyncState.IDLE:
            return "Ready"
        if self.state is SyncState.SYNCING:
            return "Syncing..."
        if self.state is SyncState.SUCCESS:
            return f"Synced {self.at:%H:%M}"
        return f"Sync failed: {self.message}"


StatusListener = Callable[[SyncStatus], None]


class SyncStatusProjection:
    """Holds the current SyncStatus and fans changes out to subscribers."""

    def __init__(self):
        self._status = SyncStatus.idle()
        self._last_success_at: Optional[datetime] = None
        self._listeners: List[StatusListener] = []

    @property
    def current(self) -> SyncStatus:
        return self._status

    @property
    def last_success_at(self) -> Optional[datetime]:
        return self._last_success_at

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def publish(self, status: SyncStatus) -> None:
        self._status = status
        if status.state is SyncState.SUCCESS:
            self._last_success_at = status.at
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:
                # A broken observer must not break the pipeline
                logger.warning("Status listener %r failed: %s", listener, exc)
