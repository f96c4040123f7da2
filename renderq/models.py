"""Data models for render jobs, history and configuration."""

import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


ALL_COMPS = "All Comps"

DEFAULT_RENDERER_PATH = (
    "C:\\Program Files\\Adobe\\Adobe After Effects 2025\\Support Files\\aerender.exe"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RENDERING = "rendering"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class ProjectRef(BaseModel):
    """Project file to render and the name it is shown and tracked under."""
    path: str
    name: str


class RenderOptions(BaseModel):
    """Per-job renderer options."""
    comp: str = ALL_COMPS
    output: str = ""
    render_settings: str = ""
    output_module: str = ""


class JobSpec(BaseModel):
    """What a caller hands to the queue to create a job."""
    path: str
    name: Optional[str] = None
    comp: str = ALL_COMPS
    output: str = ""
    render_settings: str = ""
    output_module: str = ""

    def project(self) -> ProjectRef:
        return ProjectRef(path=self.path, name=self.name or os.path.basename(self.path))

    def options(self) -> RenderOptions:
        return RenderOptions(
            comp=self.comp or ALL_COMPS,
            output=self.output,
            render_settings=self.render_settings,
            output_module=self.output_module,
        )


class Job(BaseModel):
    """A single queued render."""
    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12], frozen=True)
    project: ProjectRef
    options: RenderOptions = Field(default_factory=RenderOptions)
    status: JobStatus = JobStatus.PENDING

    progress: int = 0
    current_frame: int = 0
    total_frames: int = 0
    eta: Optional[int] = None
    estimate: Optional[int] = None

    enqueued_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    duration: Optional[int] = None
    frames: Optional[int] = None
    error: Optional[str] = None
    details: Optional[str] = None

    @property
    def name(self) -> str:
        return self.project.name

    def reset_progress(self) -> None:
        self.progress = 0
        self.current_frame = 0
        self.total_frames = 0
        self.eta = None


class HistoryRecord(BaseModel):
    """One finished render, used for time estimates."""
    duration: float
    frame_count: int
    timestamp: datetime = Field(default_factory=utcnow)


class Config(BaseModel):
    """Persisted application configuration."""
    renderer_path: str = DEFAULT_RENDERER_PATH
    estimate_frames: int = 300
    history_limit: int = 10
    output_log_limit: int = 200


class EmailSettings(BaseModel):
    """Email notification settings."""
    enabled: bool = False
    smtp: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    sender: str = ""
    to: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.smtp and self.sender)


class LogEntry(BaseModel):
    """A chunk of renderer output kept in the rolling output log."""
    job_id: str
    text: str
    is_error: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class RunSummary(BaseModel):
    """Outcome of one start_all() pass over the queue."""
    rendered: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    total_seconds: int = 0

    @property
    def success_rate(self) -> int:
        if not self.rendered:
            return 0
        return round(self.succeeded / self.rendered * 100)

    def add(self, job: Job) -> None:
        self.rendered += 1
        self.total_seconds += job.duration or 0
        if job.status is JobStatus.COMPLETED:
            self.succeeded += 1
        elif job.status is JobStatus.CANCELLED:
            self.cancelled += 1
        else:
            self.failed += 1
