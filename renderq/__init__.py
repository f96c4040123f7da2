"""renderq - background render queue for command-line renderers."""

__version__ = "1.0.0"

from .models import Job, JobSpec, JobStatus, Config, EmailSettings, RunSummary
from .queue import RenderQueue
from .supervisor import ProcessSupervisor
from .parser import AerenderProgressParser, JsonLinesProgressParser
from .history import HistoryStore
from .storage import JsonFileStore
from .notify import RenderNotifier

__all__ = [
    "Job",
    "JobSpec",
    "JobStatus",
    "Config",
    "EmailSettings",
    "RunSummary",
    "RenderQueue",
    "ProcessSupervisor",
    "AerenderProgressParser",
    "JsonLinesProgressParser",
    "HistoryStore",
    "JsonFileStore",
    "RenderNotifier",
]
