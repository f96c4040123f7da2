"""
Job status transitions.

pending -> rendering -> completed | error | cancelled

Terminal states never change again; a finished job can only be removed.
"""

from typing import Dict, FrozenSet
from .models import Job, JobStatus
from .errors import InvalidTransitionError


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.ERROR,
    JobStatus.CANCELLED,
})

# Every status must have an entry; checked at import time below.
_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RENDERING}),
    JobStatus.RENDERING: frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ERROR: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

_missing = set(JobStatus) - set(_TRANSITIONS)
if _missing:
    raise RuntimeError(f"No transitions defined for {sorted(s.value for s in _missing)}")


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in _TRANSITIONS[current]


def transition(job: Job, target: JobStatus) -> None:
    """Move a job to a new status, refusing anything the table does not allow."""
    if not can_transition(job.status, target):
        raise InvalidTransitionError(job.id, job.status.value, target.value)
    job.status = target
