"""Job request/response schemas."""
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import Field, model_validator

from taxqueue.schemas.base import CamelModel, CamelORMModel

LogLevel = Literal["debug", "info", "warn", "error"]


class JobCreate(CamelModel):
    session_id: Optional[str] = None
    job_type: str = Field(alias="type")
    data: dict = {}
    parameters: dict = {}
    priority: Union[int, str] = "normal"
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    timeout_ms: Optional[int] = Field(None, ge=1000, le=3600000)
    retry_delay_ms: Optional[int] = Field(None, ge=0)
    dependencies: list[str] = []
    parent_job_id: Optional[str] = None
    tags: list[str] = []


class StatusUpdate(CamelModel):
    status: Literal["completed", "failed", "cancelled"]
    output: Optional[dict] = None
    error: Optional[str] = None


class ProgressUpdate(CamelModel):
    percentage: Optional[float] = Field(None, ge=0, le=100)
    current_step: Optional[str] = None
    total_steps: Optional[int] = Field(None, ge=0)
    completed_steps: Optional[int] = Field(None, ge=0)
    estimated_time_remaining: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_steps(self):
        if (
            self.total_steps is not None
            and self.completed_steps is not None
            and self.completed_steps > self.total_steps
        ):
            raise ValueError("completedSteps cannot exceed totalSteps")
        return self


class CancelRequest(CamelModel):
    reason: Optional[str] = Field(None, max_length=500)


class RetryRequest(CamelModel):
    priority: Optional[Union[int, str]] = None
    reset_progress: bool = True


class LogCreate(CamelModel):
    level: LogLevel = "info"
    message: str = Field(min_length=1, max_length=1000)
    data: Optional[dict] = None


class JobSummary(CamelORMModel):
    job_id: str
    session_id: str
    job_type: str = Field(serialization_alias="type")
    status: str
    priority: int
    progress: dict
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobResponse(JobSummary):
    data: dict
    job_metadata: dict = Field(serialization_alias="metadata")
    errors: list
    logs: list
    scheduled_for: Optional[datetime] = None
    result: Optional[dict] = None

    @model_validator(mode="after")
    def expose_result(self):
        """Completed jobs carry their output as `result` too."""
        if self.status == "completed" and self.data:
            self.result = self.data.get("output")
        return self


class JobList(CamelModel):
    session_id: str
    jobs: list[JobSummary]
    limit: int
    offset: int


class CancelResponse(CamelModel):
    job_id: str
    outcome: str
    status: str
    cancelled: bool


class LogsResponse(CamelModel):
    job_id: str
    logs: list[dict]
    total: int


class CleanupResponse(CamelModel):
    deleted_count: int
    older_than_days: int
    include_failed: bool
