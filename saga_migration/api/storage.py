"""In-memory registry of export and import runs started through the API."""

import threading
from typing import Dict, List, Optional

from ..models.migration import RunSummary


class RunRegistry:
    """Keeps run summaries and their cancel switches for the lifetime of the process."""

    def __init__(self):
        self._runs: Dict[str, RunSummary] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def register(self, summary: RunSummary, event: Optional[threading.Event] = None) -> threading.Event:
        """Track a run and return the event that cancels it."""
        event = event or threading.Event()
        with self._lock:
            self._runs[summary.id] = summary
            self._cancel_events[summary.id] = event
        return event

    def get(self, run_id: str) -> Optional[RunSummary]:
        with self._lock:
            return self._runs.get(run_id)

    def list_all(self) -> List[RunSummary]:
        with self._lock:
            runs = list(self._runs.values())
        return sorted(runs, key=lambda run: run.started_at.isoformat() if run.started_at else "")

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        return True

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()
            self._cancel_events.clear()


run_registry = RunRegistry()
