"""Events flowing out of the supervisor, the parser and the queue."""

from typing import Optional, Union
from pydantic import BaseModel, ConfigDict
from .models import JobStatus


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


# Supervisor -> queue

class OutputChunk(_Event):
    """A fragment of renderer output; not necessarily a whole line."""
    stream: str  # "stdout" or "stderr"
    text: str

    @property
    def is_error(self) -> bool:
        return self.stream == "stderr"


class ProcessExit(_Event):
    """Final event of every render handle, delivered exactly once."""
    exit_code: Optional[int] = None
    spawn_error: Optional[str] = None
    cancelled: bool = False


ProcessEvent = Union[OutputChunk, ProcessExit]


# Parser -> queue

class TotalFrames(_Event):
    total_frames: int


class FrameProgress(_Event):
    current_frame: int
    total_frames: int


class PercentProgress(_Event):
    percent: int


ProgressEvent = Union[TotalFrames, FrameProgress, PercentProgress]


# Queue -> subscribers

class JobCreated(_Event):
    job_id: str
    name: str
    estimate: Optional[int] = None


class JobStarted(_Event):
    job_id: str


class JobProgress(_Event):
    job_id: str
    percent: int
    current_frame: Optional[int] = None
    total_frames: Optional[int] = None
    eta: Optional[int] = None


class JobOutput(_Event):
    job_id: str
    text: str
    is_error: bool = False


class JobFinished(_Event):
    job_id: str
    status: JobStatus
    duration: Optional[int] = None
    frames: Optional[int] = None
    error: Optional[str] = None


class JobRemoved(_Event):
    job_id: str


JobUpdate = Union[JobCreated, JobStarted, JobProgress, JobOutput, JobFinished, JobRemoved]
