from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Text, UniqueConstraint, Index
from sqlalchemy.sql import func

from ordersync.models_sqlalchemy import Base
from ordersync.models_sqlalchemy.models import JSONType, _now_utc


class SyncCursor(Base):
    """Per-store, per-job high-water mark.

    ``last_external_id`` is the largest external id already synced for the
    store. It only moves forward, except through an explicit reset.
    ``updated_at`` doubles as the compare-and-set token for cursor writes.
    """

    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("store_identifier", "job_type", name="uq_sync_cursors_store_job"),
    )

    id = Column(String(36), primary_key=True)
    store_identifier = Column(String(32), nullable=False, index=True)
    job_type = Column(String(32), nullable=False, index=True)

    last_external_id = Column(String(64), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True, server_default="true")

    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    drift_flagged = Column(Boolean, nullable=False, default=False, server_default="false")
    drift_detail = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())


class SyncRun(Base):
    """Single execution of a job for one store (or "all" for batch jobs).

    Used for mutual exclusion (one fresh ``running`` row per job + store) and
    for run history. Finalized rows are never modified again.
    """

    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("idx_sync_runs_job_store_started", "job_type", "store_identifier", "started_at"),
    )

    id = Column(String(36), primary_key=True)
    job_type = Column(String(32), nullable=False, index=True)
    store_identifier = Column(String(32), nullable=False, index=True)
    triggered_by = Column(String(32), nullable=False, default="scheduler")

    # running, success, partial, failed, aborted
    outcome = Column(String(16), nullable=False, index=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)

    fetched = Column(Integer, nullable=False, default=0)
    created = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    status_changed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)

    error_summary = Column(JSONType, nullable=True)
    summary_json = Column(JSONType, nullable=True)


class SyncRunEvent(Base):
    """Structured log entries for sync runs (start, page, retry, drift, done, error)."""

    __tablename__ = "sync_run_events"

    id = Column(String(36), primary_key=True)
    run_id = Column(String(36), ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False, index=True)

    store_identifier = Column(String(32), nullable=False, index=True)
    job_type = Column(String(32), nullable=False, index=True)

    event_type = Column(String(32), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    details_json = Column(JSONType, nullable=True)


class SchedulerJob(Base):
    """Heartbeat row per scheduled job, surfaced through scheduler status."""

    __tablename__ = "scheduler_jobs"

    job_type = Column(String(32), primary_key=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)
    next_fire_at = Column(DateTime(timezone=True), nullable=True)

    runs_ok_in_row = Column(Integer, nullable=False, default=0, server_default="0")
    runs_error_in_row = Column(Integer, nullable=False, default=0, server_default="0")

    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now(), onupdate=_now_utc)
