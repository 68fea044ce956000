"""Job model - one row per asynchronous unit of work."""
import uuid
from datetime import datetime
from sqlalchemy import Index, Integer, JSON, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from taxqueue.models.base import Base, TimestampMixin

JOB_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

JOB_TYPES = (
    "document_processing",
    "tax_calculation",
    "form_generation",
    "data_validation",
    "report_generation",
    "notification",
    "cleanup",
    "backup",
    "other",
)


def new_job_id() -> str:
    return str(uuid.uuid4())


def default_progress() -> dict:
    return {
        "percentage": 0,
        "currentStep": "",
        "totalSteps": 0,
        "completedSteps": 0,
        "estimatedTimeRemaining": None,
    }


def default_metadata() -> dict:
    return {
        "createdBy": "system",
        "assignedWorker": None,
        "retryCount": 0,
        "maxRetries": 3,
        "retryDelayMs": None,
        "timeoutMs": 300000,
        "cancelRequested": False,
        "tags": [],
        "dependencies": [],
        "parentJobId": None,
        "childJobIds": [],
        "durations": {"queuedMs": 0, "processingMs": 0, "totalMs": 0},
    }


class Job(Base, TimestampMixin):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_priority_created", "status", "priority", "created_at"),
        Index("ix_jobs_session_status", "session_id", "status"),
        Index("ix_jobs_type_status", "job_type", "status"),
    )

    job_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_job_id)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    progress: Mapped[dict] = mapped_column(JSON, default=default_progress)
    # "metadata" is reserved on declarative classes
    job_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=default_metadata)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    logs: Mapped[list] = mapped_column(JSON, default=list)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def retry_count(self) -> int:
        return int((self.job_metadata or {}).get("retryCount", 0))

    @property
    def max_retries(self) -> int:
        return int((self.job_metadata or {}).get("maxRetries", 0))

    @property
    def dependencies(self) -> list[str]:
        return list((self.job_metadata or {}).get("dependencies") or [])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
