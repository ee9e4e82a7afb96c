"""Import run model: persisted job state for one catalog synchronization."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PARTIAL = "PARTIAL"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


ACTIVE_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING, RunStatus.PARTIAL)
TERMINAL_STATUSES = (RunStatus.SUCCESS, RunStatus.FAILED)

_ACTIVE_PREDICATE = "status IN ('PENDING', 'RUNNING', 'PARTIAL')"


class ImportRun(SQLModel, table=True):
    """
    One synchronization attempt for one integration.

    At most one run per integration may be PENDING, RUNNING or PARTIAL.
    The partial unique index makes a racing second insert fail at the
    storage layer even if both writers passed the admission check.
    """

    __tablename__ = "import_run"
    __table_args__ = (
        Index(
            "uq_import_run_active_integration",
            "integration_id",
            unique=True,
            sqlite_where=text(_ACTIVE_PREDICATE),
            postgresql_where=text(_ACTIVE_PREDICATE),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    integration_id: int = Field(foreign_key="integration.id", index=True)
    status: RunStatus = Field(default=RunStatus.PENDING)
    cursor: Optional[str] = None  # opaque provider continuation token

    processed_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    failed_count: int = 0

    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    errors_suppressed: int = 0

    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    last_progress_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
