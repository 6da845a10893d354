"""
Models for contracts, run logs and run results.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Any, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class SyncAction(str, Enum):
    """Action decided for a single source object."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class LogLevel(str, Enum):
    """Outcome level of a run."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class SyncCounts(BaseModel):
    """Counters aggregated over one run."""
    found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errored: int = 0
    excluded: int = 0

    def record(self, action: SyncAction) -> None:
        """Increment the counter matching an action."""
        if action == SyncAction.CREATE:
            self.created += 1
        elif action == SyncAction.UPDATE:
            self.updated += 1
        elif action == SyncAction.DELETE:
            self.deleted += 1
        elif action == SyncAction.SKIP:
            self.skipped += 1


class SynchronizationContract(BaseModel):
    """Change-tracking ledger entry pairing one source object with its target object."""
    id: str = Field(default_factory=_new_id)
    synchronization_id: str
    origin_id: str
    origin_hash: Optional[str] = None
    target_id: Optional[str] = None
    target_hash: Optional[str] = None
    target_last_action: Optional[SyncAction] = None

    source_last_changed: Optional[datetime] = None
    source_last_checked: Optional[datetime] = None
    source_last_synced: Optional[datetime] = None
    target_last_changed: Optional[datetime] = None
    target_last_synced: Optional[datetime] = None

    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SynchronizationLog(BaseModel):
    """Record of one synchronization run."""
    id: str = Field(default_factory=_new_id)
    synchronization_id: str
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    execution_time_seconds: Optional[float] = None
    counts: SyncCounts = Field(default_factory=SyncCounts)
    level: Optional[LogLevel] = None
    message: Optional[str] = None
    stack_trace: List[str] = Field(default_factory=list)
    test: bool = False
    force: bool = False
    expires: Optional[datetime] = None

    def mark_completed(self, level: LogLevel, message: str, retention_days: int) -> None:
        """Finalize the log with its outcome."""
        self.completed_at = utc_now()
        self.execution_time_seconds = (self.completed_at - self.started_at).total_seconds()
        self.level = level
        self.message = message
        self.expires = self.completed_at + timedelta(days=retention_days)


class SynchronizationContractLog(BaseModel):
    """Immutable audit entry written every time a contract is evaluated."""
    id: str = Field(default_factory=_new_id)
    synchronization_id: str
    synchronization_log_id: Optional[str] = None
    synchronization_contract_id: Optional[str] = None
    origin_id: Optional[str] = None
    action: Optional[SyncAction] = None
    origin_hash_before: Optional[str] = None
    origin_hash_after: Optional[str] = None
    target_hash: Optional[str] = None
    source: Any = None
    target: Any = None
    message: Optional[str] = None
    error: bool = False
    test: bool = False
    force: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    expires: Optional[datetime] = None


class RunResult(BaseModel):
    """Structured outcome of a run, relayed to whoever triggered it."""
    synchronization_id: str
    log_id: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    message: str = ""
    counts: SyncCounts = Field(default_factory=SyncCounts)
    reschedule_at: Optional[datetime] = None
    stack_trace: List[str] = Field(default_factory=list)
    follow_ups: Dict[str, LogLevel] = Field(default_factory=dict)
    test: bool = False
    force: bool = False

    @property
    def counts_by_action(self) -> Dict[str, int]:
        return {
            SyncAction.CREATE.value: self.counts.created,
            SyncAction.UPDATE.value: self.counts.updated,
            SyncAction.DELETE.value: self.counts.deleted,
            SyncAction.SKIP.value: self.counts.skipped,
        }

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the run."""
        return {
            "synchronization_id": self.synchronization_id,
            "log_id": self.log_id,
            "level": self.level.value,
            "message": self.message,
            "counts": self.counts.model_dump(),
            "reschedule_at": self.reschedule_at.isoformat() if self.reschedule_at else None,
        }
