"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from tracker.models.snapshots import utcnow


class SyncLog(SQLModel, table=True):
    """Records each sync pass for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    kind: str = Field(index=True)  # "location", "biometric", "combined", "manual"
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "error", "dropped", "skipped"
    queue_depth: int = 0  # offline queue length after the pass
    error_message: Optional[str] = None
