from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pcbcrm.models.base import AuditMixin, Base, UUIDPrimaryKeyMixin

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

ACTIVE_JOB_STATUSES: tuple[str, ...] = (JOB_PENDING, JOB_PROCESSING)
TERMINAL_JOB_STATUSES: tuple[str, ...] = (JOB_COMPLETED, JOB_FAILED)


class BackgroundJob(Base, UUIDPrimaryKeyMixin, AuditMixin):
    """A long-running operation (statement parsing, data extraction).

    Status moves ``pending -> processing -> completed|failed``, with
    ``pending|processing -> failed`` allowed for explicit failure and for
    the stale-job recovery sweep. Terminal rows are never updated again.
    """

    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("ix_background_jobs_status_created_at", "status", "created_at"),
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), server_default=JOB_PENDING, default=JOB_PENDING, nullable=False
    )
    input: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    progress: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
