"""Sync run model: the checkpoint record of one pipeline invocation."""

from datetime import datetime
from sqlalchemy import Boolean, Column, Integer, String, DateTime, Text, JSON, ForeignKey

from app.core.database import Base

KINDS = ("company", "employee", "absenteeism")

PENDING = "pending"
IN_PROGRESS = "in_progress"
PROCESSING = "processing"
CONTINUES = "continues"
NEEDS_CONTINUATION = "needs_continuation"
COMPLETED = "completed"
COMPLETED_WITH_ERRORS = "completed_with_errors"
ERROR = "error"
CANCELLED = "cancelled"

# Statuses that keep an (owner, kind) slot busy. needs_continuation ends the
# individual run but not the chain.
ACTIVE_STATUSES = (PENDING, IN_PROGRESS, PROCESSING, CONTINUES, NEEDS_CONTINUATION)
# Statuses in which the pipeline itself is (or is about to be) writing
RUNNING_STATUSES = (PENDING, IN_PROGRESS, PROCESSING, CONTINUES)
TERMINAL_STATUSES = (COMPLETED, COMPLETED_WITH_ERRORS, ERROR, CANCELLED)


class SyncRun(Base):
    """Progress and resume coordinates of one sync run."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False)  # "company", "employee", "absenteeism"
    owner = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=PENDING)

    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    current_batch_index = Column(Integer, nullable=False, default=0)
    total_batches = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    batch_size = Column(Integer, nullable=False)
    max_concurrent = Column(Integer, nullable=False)
    parallel = Column(Boolean, nullable=False, default=False)

    message = Column(Text, nullable=True)
    error_detail = Column(Text, nullable=True)

    parent_run_id = Column(Integer, ForeignKey("sync_runs.id"), nullable=True)
    root_run_id = Column(Integer, nullable=True, index=True)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SyncPayload(Base):
    """Records fetched once per chain, read back by continuations."""

    __tablename__ = "sync_payloads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    root_run_id = Column(Integer, nullable=False, unique=True)
    records = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, nullable=False, default=datetime.utcnow)
