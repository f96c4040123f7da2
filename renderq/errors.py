"""
Render queue error types.

All errors inherit from RenderQueueError so callers can catch them in one place.
Per-job render failures are not raised; they end up on the job itself.
"""


class RenderQueueError(Exception):
    """Base exception for all render queue failures."""
    pass


class ConfigurationError(RenderQueueError):
    """Raised when the renderer cannot be used at all."""
    pass


class RendererNotFoundError(ConfigurationError):
    """Raised when the renderer executable is unset or missing on disk."""

    def __init__(self, path: str):
        self.path = path
        if path:
            super().__init__(f"Renderer not found at {path}")
        else:
            super().__init__("Renderer path is not set")


class InputMissingError(RenderQueueError):
    """Raised when the project file handed to the renderer does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Project file not found: {path}")


class JobNotFoundError(RenderQueueError):
    """Raised when a job id is not in the queue."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidTransitionError(RenderQueueError):
    """Raised when attempting an illegal job status transition."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition for job {job_id}: {current} -> {target}")


class QueueBusyError(RenderQueueError):
    """Raised when start_all() is called while a run is already in progress."""
    pass
