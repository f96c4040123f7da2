"""Render queue orchestration.

The queue owns the job list. start_all() walks a snapshot of the pending
jobs on the calling thread, one render at a time: it starts the renderer,
blocks on the handle's event channel, folds output into job progress and
settles the job when the exit event arrives. stop_all() and remove() may be
called from other threads; they only flag state and kill the process, the
running loop does the rest.

Several processes may share one data directory (a `start` in one terminal,
`add` and `remove` in another). persist() therefore merges with the saved
queue instead of overwriting it, and the process rendering holds the "run"
lock so that others can tell a live render from one left behind by a crash.
"""

import logging
import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set
from pydantic import ValidationError
from .errors import InputMissingError, JobNotFoundError, QueueBusyError, RendererNotFoundError
from .events import (
    FrameProgress,
    JobCreated,
    JobFinished,
    JobOutput,
    JobProgress,
    JobRemoved,
    JobStarted,
    JobUpdate,
    OutputChunk,
    PercentProgress,
    ProcessExit,
    ProgressEvent,
    TotalFrames,
)
from .history import HistoryStore
from .models import ALL_COMPS, Config, Job, JobSpec, JobStatus, LogEntry, RunSummary, utcnow
from .parser import AerenderProgressParser, ProgressParser
from .state import is_terminal, transition
from .storage import JsonFileStore
from .supervisor import ProcessSupervisor, RenderHandle

logger = logging.getLogger(__name__)

QUEUE_KEY = "render_queue"
RUN_LOCK = "run"

Listener = Callable[[JobUpdate], None]


def build_render_args(job: Job) -> List[str]:
    """aerender command line for a job, flags in a fixed order."""
    args = ["-project", job.project.path]
    opts = job.options
    if opts.comp and opts.comp != ALL_COMPS:
        args += ["-comp", opts.comp]
    if opts.output:
        args += ["-output", opts.output]
    if opts.render_settings:
        args += ["-RStemplate", opts.render_settings]
    if opts.output_module:
        args += ["-OMtemplate", opts.output_module]
    return args


class _ActiveRender:
    """Bookkeeping for the job the loop is currently rendering."""

    def __init__(self, job: Job, started: float):
        self.job = job
        self.started = started
        self.announced_total: Optional[int] = None
        self.stdout: List[str] = []
        self.stderr: List[str] = []


class RenderQueue:
    """Ordered render queue with a single active render."""

    def __init__(
        self,
        store: JsonFileStore,
        config: Optional[Config] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        parser: Optional[ProgressParser] = None,
        history: Optional[HistoryStore] = None,
        notifier=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or Config()
        self.supervisor = supervisor or ProcessSupervisor()
        self.parser = parser or AerenderProgressParser()
        self.history = history or HistoryStore(store, limit=self.config.history_limit)
        self.notifier = notifier
        self.clock = clock

        self._jobs: List[Job] = []
        self._lock = threading.RLock()
        self._handles: Dict[str, RenderHandle] = {}
        self._cancel_requested: Set[str] = set()
        self._active_id: Optional[str] = None
        self._running = False
        self._stop_requested = False
        self._listeners: List[Listener] = []
        # ids as of the last read or write of the saved queue
        self._stored_ids: Set[str] = set()
        # jobs whose state this process changed since the last persist
        self._dirty: Set[str] = set()
        # jobs this process dropped since the last persist
        self._removed: Set[str] = set()
        self._output_log: Deque[LogEntry] = deque(maxlen=self.config.output_log_limit)

    # Subscribers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for job updates; returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _emit(self, event: JobUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s", type(event).__name__)

    # Queries

    def jobs(self) -> List[Job]:
        """Snapshot copies of all jobs in queue order."""
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs]

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._find(job_id)
            return job.model_copy(deep=True) if job else None

    def require(self, job_id: str) -> Job:
        """Like get(), but raises JobNotFoundError for an unknown id."""
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _find(self, job_id: str) -> Optional[Job]:
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_job_id(self) -> Optional[str]:
        return self._active_id

    def output_log(self) -> List[LogEntry]:
        with self._lock:
            return list(self._output_log)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs:
                counts[job.status.value] += 1
            counts["total"] = len(self._jobs)
            return counts

    # Commands

    def enqueue(self, spec: JobSpec) -> str:
        """Append a pending job and return its id."""
        project = spec.project()
        job = Job(
            project=project,
            options=spec.options(),
            estimate=self.history.estimate(project.name, self.config.estimate_frames),
        )
        with self._lock:
            self._jobs.append(job)
            self.persist()
        logger.info("Enqueued %s (%s)", job.id, job.name)
        self._emit(JobCreated(job_id=job.id, name=job.name, estimate=job.estimate))
        return job.id

    def remove(self, job_id: str) -> bool:
        """Remove a job, cancelling it first if it is rendering."""
        with self._lock:
            job = self._find(job_id)
            if job is None:
                return False
            if job.status is JobStatus.RENDERING:
                self._cancel_locked(job_id)
            self._jobs.remove(job)
            self._removed.add(job_id)
            self.persist()
        logger.info("Removed %s", job_id)
        self._emit(JobRemoved(job_id=job_id))
        return True

    def clear_finished(self) -> int:
        """Drop completed, failed and cancelled jobs."""
        with self._lock:
            self.persist()
            finished = [job.id for job in self._jobs if is_terminal(job.status)]
            self._jobs = [job for job in self._jobs if not is_terminal(job.status)]
            self._removed.update(finished)
            self.persist()
        return len(finished)

    def clear(self) -> None:
        """Drop every job and forget the saved queue."""
        with self._lock, self.store.locked(QUEUE_KEY):
            self._stop_requested = self._running
            if self._active_id is not None:
                self._cancel_locked(self._active_id)
            self._jobs = []
            self._stored_ids = set()
            self._dirty.clear()
            self._removed.clear()
            self.store.delete(QUEUE_KEY)

    def stop_all(self) -> None:
        """Cancel the active render and stop advancing through the queue."""
        with self._lock:
            if not self._running:
                return
            self._stop_requested = True
            if self._active_id is not None:
                self._cancel_locked(self._active_id)
        logger.info("Stop requested")

    def _cancel_locked(self, job_id: str) -> None:
        self._cancel_requested.add(job_id)
        handle = self._handles.get(job_id)
        if handle is not None:
            self.supervisor.cancel(handle)

    # Persistence

    def _read_saved(self) -> List[Job]:
        jobs = []
        for item in self.store.get(QUEUE_KEY, []) or []:
            try:
                jobs.append(Job(**item))
            except (TypeError, ValidationError) as e:
                logger.warning("Skipping unreadable saved job: %s", e)
        return jobs

    def persist(self) -> None:
        """Save the queue, merged with whatever other processes saved.

        Jobs this process changed or is rendering keep our version, the rest
        take the saved one. Saved jobs we have never seen are adopted. A job
        we knew from the saved queue that is no longer there was removed
        elsewhere and is dropped here too, cancelling it if it is rendering.
        """
        with self._lock, self.store.locked(QUEUE_KEY):
            ours = {job.id: job for job in self._jobs}
            merged: List[Job] = []
            for saved in self._read_saved():
                if saved.id in self._removed:
                    continue
                mine = ours.pop(saved.id, None)
                if mine is not None and (saved.id in self._dirty or saved.id == self._active_id):
                    merged.append(mine)
                else:
                    merged.append(saved)
            for job in ours.values():
                if job.id not in self._stored_ids:
                    merged.append(job)
                    continue
                logger.info("Job %s was removed by another process", job.id)
                if job.id == self._active_id:
                    self._cancel_locked(job.id)

            self.store.set(QUEUE_KEY, [job.model_dump(mode="json") for job in merged])
            self._jobs = merged
            self._stored_ids = {job.id for job in merged}
            self._dirty.clear()
            self._removed.clear()

    def restore(self) -> int:
        """Load the saved queue.

        A job saved mid-render with no process still rendering it cannot
        pick up where it stopped, so it comes back as pending with its
        progress cleared. Entries that fail validation are logged and skipped.
        """
        with self._lock:
            if self._running:
                raise QueueBusyError("Cannot restore while the queue is running")
            orphaned = not self.store.is_locked(RUN_LOCK)
            jobs = self._read_saved()
            requeued = set()
            for job in jobs:
                if is_terminal(job.status) or not orphaned:
                    continue
                if job.status is JobStatus.RENDERING:
                    logger.info("Job %s was rendering when the queue was saved; requeued", job.id)
                    requeued.add(job.id)
                job.status = JobStatus.PENDING
                job.started_at = None
                job.reset_progress()
            self._jobs = jobs
            self._stored_ids = {job.id for job in jobs}
            self._dirty = requeued
            self._removed = set()
        return len(jobs)

    # Running

    def start_all(self) -> RunSummary:
        """Render every job that is pending right now, one after another.

        Jobs enqueued while this runs wait for the next call. Raises
        QueueBusyError if this queue or another process is already rendering.
        """
        summary = RunSummary()
        with self._lock:
            if self._running:
                raise QueueBusyError("The queue is already running")
            self.persist()
            snapshot = [job.id for job in self._jobs if job.status is JobStatus.PENDING]
            if not snapshot:
                return summary
            renderer = self.config.renderer_path
            self.supervisor.check_renderer(renderer)
            run_lock = self.store.acquire_lock(RUN_LOCK)
            if run_lock is None:
                raise QueueBusyError("Another process is rendering this queue")
            self._running = True
            self._stop_requested = False

        logger.info("Starting queue run with %d job(s)", len(snapshot))
        try:
            for job_id in snapshot:
                with self._lock:
                    if self._stop_requested:
                        break
                    job = self._find(job_id)
                    if job is None or job.status is not JobStatus.PENDING:
                        continue
                    self._begin(job)
                self._emit(JobStarted(job_id=job.id))
                self._render(job, renderer)
                summary.add(job)
        finally:
            with self._lock:
                self._running = False
                self._active_id = None
                self._cancel_requested.clear()
                self.store.release_lock(run_lock)
        logger.info(
            "Queue run done: %d rendered, %d ok, %d failed, %d cancelled",
            summary.rendered, summary.succeeded, summary.failed, summary.cancelled,
        )
        return summary

    def _begin(self, job: Job) -> None:
        transition(job, JobStatus.RENDERING)
        job.reset_progress()
        job.started_at = utcnow()
        job.ended_at = None
        job.error = None
        job.details = None
        self._active_id = job.id
        self._dirty.add(job.id)
        self.persist()
        logger.info("Rendering %s (%s)", job.id, job.name)

    def _render(self, job: Job, renderer: str) -> None:
        active = _ActiveRender(job, self.clock())
        try:
            handle = self.supervisor.run(job.id, renderer, build_render_args(job), input_path=job.project.path)
        except InputMissingError:
            self._finish(active, None, error="Project file not found")
            return
        except RendererNotFoundError as e:
            self._finish(active, None, error=str(e))
            return

        with self._lock:
            self._handles[job.id] = handle
            # stop_all()/remove() may have landed before the handle existed
            if job.id in self._cancel_requested:
                self.supervisor.cancel(handle)

        result = None
        for event in handle.events():
            if isinstance(event, OutputChunk):
                self._on_output(active, handle, event)
            elif isinstance(event, ProcessExit):
                result = event
        self._finish(active, handle, result=result)

    def _on_output(self, active: _ActiveRender, handle: RenderHandle, chunk: OutputChunk) -> None:
        job = active.job
        (active.stderr if chunk.is_error else active.stdout).append(chunk.text)
        logger.debug("[%s] %s", job.id, chunk.text.rstrip())
        with self._lock:
            self._output_log.append(LogEntry(job_id=job.id, text=chunk.text, is_error=chunk.is_error))
        self._emit(JobOutput(job_id=job.id, text=chunk.text, is_error=chunk.is_error))

        if chunk.is_error:
            return
        for event in self.parser.parse(chunk.text):
            with self._lock:
                if handle.cancelled or job.id in self._cancel_requested:
                    return
                update = self._apply_progress(active, event)
            if update is not None:
                self._emit(update)

    def _apply_progress(self, active: _ActiveRender, event: ProgressEvent) -> Optional[JobProgress]:
        job = active.job
        if isinstance(event, TotalFrames):
            if active.announced_total is None:
                active.announced_total = event.total_frames
            return None

        if isinstance(event, PercentProgress):
            job.progress = event.percent
            job.eta = None
            return JobProgress(job_id=job.id, percent=job.progress)

        if isinstance(event, FrameProgress):
            job.current_frame = event.current_frame
            job.total_frames = event.total_frames
            if event.total_frames > 0:
                job.progress = min(100, math.floor(event.current_frame / event.total_frames * 100))
            if event.current_frame > 0:
                elapsed = self.clock() - active.started
                remaining = max(event.total_frames - event.current_frame, 0)
                job.eta = round(remaining * elapsed / event.current_frame)
            else:
                job.eta = None
            return JobProgress(
                job_id=job.id,
                percent=job.progress,
                current_frame=job.current_frame,
                total_frames=job.total_frames,
                eta=job.eta,
            )
        return None

    def _finish(
        self,
        active: _ActiveRender,
        handle: Optional[RenderHandle],
        result: Optional[ProcessExit] = None,
        error: Optional[str] = None,
    ) -> None:
        job = active.job
        with self._lock:
            self._handles.pop(job.id, None)
            requested = job.id in self._cancel_requested
            self._cancel_requested.discard(job.id)
            cancelled = handle is not None and (handle.cancelled or (result is not None and result.cancelled))
            job.ended_at = utcnow()
            job.eta = None

            if error is not None:
                transition(job, JobStatus.ERROR)
                job.error = error
            elif cancelled:
                transition(job, JobStatus.CANCELLED)
                job.progress = 0
                if not requested:
                    # killed behind our back; treat like a user stop
                    self._stop_requested = True
            elif result.spawn_error is not None:
                transition(job, JobStatus.ERROR)
                job.error = result.spawn_error
            elif result.exit_code == 0:
                transition(job, JobStatus.COMPLETED)
                job.progress = 100
                job.duration = round(self.clock() - active.started)
                job.frames = active.announced_total or 0
                if job.frames > 0:
                    self.history.record(job.name, job.duration, job.frames)
            else:
                transition(job, JobStatus.ERROR)
                job.duration = round(self.clock() - active.started)
                job.error = f"Render failed with code {result.exit_code}"
                job.details = "".join(active.stderr) or "".join(active.stdout)

            self._active_id = None
            self._dirty.add(job.id)
            self.persist()

        logger.info("Job %s %s%s", job.id, job.status.value, f": {job.error}" if job.error else "")
        self._emit(JobFinished(
            job_id=job.id,
            status=job.status,
            duration=job.duration,
            frames=job.frames,
            error=job.error,
        ))
        self._notify(job)

    def _notify(self, job: Job) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(job.model_copy(deep=True))
        except Exception:
            logger.exception("Notification for %s failed", job.id)
