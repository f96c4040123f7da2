"""Run the external renderer and stream its output."""

import codecs
import logging
import os
import queue
import subprocess
import threading
from typing import Callable, Dict, Iterator, List, Optional
from .errors import InputMissingError, RendererNotFoundError
from .events import OutputChunk, ProcessEvent, ProcessExit

logger = logging.getLogger(__name__)


class RenderHandle:
    """One renderer invocation.

    Output chunks and the final ProcessExit arrive on a single channel in the
    order they were produced. ProcessExit is always the last event and is
    delivered exactly once, also after a cancel.
    """

    def __init__(self, key: str):
        self.key = key
        self.process: Optional[subprocess.Popen] = None
        self.cancelled = False
        self.result: Optional[ProcessExit] = None
        self._channel: "queue.Queue[ProcessEvent]" = queue.Queue()
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return self.result is not None

    def push(self, event: ProcessEvent) -> None:
        if isinstance(event, ProcessExit):
            with self._lock:
                if self.result is not None:
                    return
                self.result = event
        self._channel.put(event)

    def events(self) -> Iterator[ProcessEvent]:
        """Block on the channel, yielding events up to and including the exit."""
        while True:
            event = self._channel.get()
            yield event
            if isinstance(event, ProcessExit):
                return

    def mark_cancelled(self) -> bool:
        """Flag the handle as cancelled; False if it already was or has exited."""
        with self._lock:
            if self.cancelled or self.result is not None:
                return False
            self.cancelled = True
            return True


class ProcessSupervisor:
    """Starts renderer processes and routes cancellation to them."""

    def __init__(
        self,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        path_exists: Callable[[str], bool] = os.path.exists,
        chunk_size: int = 4096,
    ):
        self._spawn = spawn
        self._path_exists = path_exists
        self.chunk_size = chunk_size
        self._live: Dict[int, RenderHandle] = {}
        self._lock = threading.Lock()

    def check_renderer(self, executable: str) -> None:
        if not executable or not self._path_exists(executable):
            raise RendererNotFoundError(executable)

    def run(self, key: str, executable: str, args: List[str], input_path: Optional[str] = None) -> RenderHandle:
        """Start the renderer.

        Raises RendererNotFoundError or InputMissingError before anything is
        spawned. An OS-level failure to start the process is not raised; it is
        reported as a ProcessExit with spawn_error set.
        """
        self.check_renderer(executable)
        if input_path is not None and not self._path_exists(input_path):
            raise InputMissingError(input_path)

        handle = RenderHandle(key)
        cmd = [executable, *args]
        logger.info("Starting render %s: %s", key, " ".join(cmd))
        try:
            process = self._spawn(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Could not start renderer for %s: %s", key, e)
            handle.push(ProcessExit(spawn_error=str(e)))
            return handle

        handle.process = process
        with self._lock:
            self._live[id(handle)] = handle

        readers = [
            threading.Thread(target=self._pump, args=(handle, process.stdout, "stdout"), daemon=True),
            threading.Thread(target=self._pump, args=(handle, process.stderr, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()
        threading.Thread(target=self._wait, args=(handle, readers), daemon=True).start()
        return handle

    def _pump(self, handle: RenderHandle, stream, name: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        read = getattr(stream, "read1", stream.read)
        with stream:
            while True:
                try:
                    data = read(self.chunk_size)
                except (OSError, ValueError):
                    break
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    handle.push(OutputChunk(stream=name, text=text))
        tail = decoder.decode(b"", final=True)
        if tail:
            handle.push(OutputChunk(stream=name, text=tail))

    def _wait(self, handle: RenderHandle, readers: List[threading.Thread]) -> None:
        # Drain both pipes before reporting the exit so no output is lost.
        for reader in readers:
            reader.join()
        code = handle.process.wait()
        with self._lock:
            self._live.pop(id(handle), None)
        logger.info("Render %s exited with code %s%s", handle.key, code, " (cancelled)" if handle.cancelled else "")
        handle.push(ProcessExit(exit_code=code, cancelled=handle.cancelled))

    def cancel(self, handle: RenderHandle) -> bool:
        """Kill the process behind handle. Safe to call more than once."""
        if not handle.mark_cancelled():
            return False
        if handle.process is not None:
            logger.info("Cancelling render %s", handle.key)
            try:
                handle.process.kill()
            except OSError as e:
                logger.warning("Could not kill render %s: %s", handle.key, e)
        return True

    def cancel_all(self) -> int:
        """Kill every live render, e.g. on shutdown."""
        with self._lock:
            handles = list(self._live.values())
        return sum(1 for handle in handles if self.cancel(handle))

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)
