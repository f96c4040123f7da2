"""Turn raw renderer output into progress events.

Parsers only look at the chunk they are given. Anything that has to be
remembered across chunks (for example the first announced frame total)
is the caller's business.
"""

import json
import re
from typing import List
from .events import FrameProgress, PercentProgress, ProgressEvent, TotalFrames


class ProgressParser:
    """Interface for output parsers."""

    def parse(self, chunk: str) -> List[ProgressEvent]:
        raise NotImplementedError


class AerenderProgressParser(ProgressParser):
    """Parser for aerender's plain-text log output.

    Recognised patterns:

        Total Frames: 300
        Rendering frame 150 of 300
        PROGRESS: 42%

    The percent-only form is ignored when a frame line is present in the
    same chunk.
    """

    TOTAL_RE = re.compile(r"Total Frames:\s*(\d+)", re.IGNORECASE)
    FRAME_RE = re.compile(r"Rendering frame\s*(\d+)\s*of\s*(\d+)", re.IGNORECASE)
    PERCENT_RE = re.compile(r"PROGRESS:\s*(\d+)%")

    def parse(self, chunk: str) -> List[ProgressEvent]:
        if not chunk:
            return []

        events: List[ProgressEvent] = []

        total = self.TOTAL_RE.search(chunk)
        if total:
            events.append(TotalFrames(total_frames=int(total.group(1))))

        frames = [
            FrameProgress(current_frame=int(m.group(1)), total_frames=int(m.group(2)))
            for m in self.FRAME_RE.finditer(chunk)
        ]
        events.extend(frames)

        if not frames:
            percent = self.PERCENT_RE.search(chunk)
            if percent:
                events.append(PercentProgress(percent=min(int(percent.group(1)), 100)))

        return events


class JsonLinesProgressParser(ProgressParser):
    """Parser for renderers that print one JSON object per progress line.

    Understood keys: ``total_frames``, ``frame`` (with ``total_frames``) and
    ``percent``. Lines that are not JSON objects are skipped.
    """

    def parse(self, chunk: str) -> List[ProgressEvent]:
        events: List[ProgressEvent] = []
        for line in chunk.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                data = json.loads(line)
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue
            try:
                events.extend(self._events_from(data))
            except (TypeError, ValueError):
                continue
        return events

    def _events_from(self, data: dict) -> List[ProgressEvent]:
        total = data.get("total_frames")
        frame = data.get("frame")
        if frame is not None and total:
            return [FrameProgress(current_frame=int(frame), total_frames=int(total))]
        if total is not None:
            return [TotalFrames(total_frames=int(total))]
        if data.get("percent") is not None:
            return [PercentProgress(percent=min(int(data["percent"]), 100))]
        return []
