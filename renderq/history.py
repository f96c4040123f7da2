"""Render time history and estimates."""

import logging
from typing import Dict, List, Optional
from .models import HistoryRecord
from .storage import JsonFileStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "render_history"


class HistoryStore:
    """Keeps the last few render durations per project name."""

    def __init__(self, store: JsonFileStore, limit: int = 10):
        self.store = store
        self.limit = limit

    def _load(self) -> Dict[str, list]:
        return self.store.get(HISTORY_KEY, {}) or {}

    def records(self, key: str) -> List[HistoryRecord]:
        return [HistoryRecord(**data) for data in self._load().get(key, [])]

    def record(self, key: str, duration: float, frame_count: int) -> None:
        """Append a finished render, dropping the oldest beyond the limit."""
        if frame_count <= 0:
            raise ValueError("frame_count must be positive")
        history = self._load()
        records = history.get(key, [])
        records.append(HistoryRecord(duration=duration, frame_count=frame_count).model_dump(mode="json"))
        history[key] = records[-self.limit:]
        self.store.set(HISTORY_KEY, history)
        logger.debug("Recorded %ss / %s frames for %s", duration, frame_count, key)

    def estimate(self, key: str, frame_count: int) -> Optional[int]:
        """Predict seconds for frame_count frames; None when there is no history."""
        records = self.records(key)
        if not records:
            return None
        per_frame = sum(r.duration / r.frame_count for r in records) / len(records)
        return round(per_frame * frame_count)

