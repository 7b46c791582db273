"""Event channel feeding the controller and watch loops.

Producers (filesystem watcher, stdin reader) push onto one queue. The
consumer waits on it with a timeout; a timeout is a periodic tick, which
also covers filesystems where change notifications are unreliable.
"""

import queue
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..state import WorkflowPaths


class EventKind(str, Enum):
    FILE_CHANGED = "file_changed"
    INPUT = "input"
    TICK = "tick"
    INPUT_CLOSED = "input_closed"


@dataclass
class Event:
    kind: EventKind
    payload: str = ""


class EventChannel:
    """A queue of events with tick-on-timeout semantics."""

    def __init__(self):
        self._queue: "queue.Queue[Event]" = queue.Queue()

    def put(self, event: Event) -> None:
        self._queue.put(event)

    def get(self, timeout: float) -> Event:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return Event(EventKind.TICK)

    def drain(self, kind: EventKind) -> List[Event]:
        """Remove queued events of one kind, keeping the others in order."""
        drained, kept = [], []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            (drained if event.kind is kind else kept).append(event)
        for event in kept:
            self._queue.put(event)
        return drained


class SignalChangeHandler(FileSystemEventHandler):
    """Forwards changes to workflow inputs onto the channel."""

    def __init__(self, paths: WorkflowPaths, channel: EventChannel):
        super().__init__()
        self.paths = paths
        self.channel = channel
        self._watched_files = {paths.plan_file, paths.review_file, paths.config_file}

    def is_relevant(self, path: Path) -> bool:
        # state.json and the log are written by the orchestrator itself
        if path in self._watched_files:
            return True
        return path.parent == self.paths.signals_dir and not path.name.startswith(".")

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        candidates = [event.src_path, getattr(event, "dest_path", "")]
        for raw in candidates:
            if raw and self.is_relevant(Path(raw).resolve()):
                self.channel.put(Event(EventKind.FILE_CHANGED, str(raw)))
                return


class SignalWatcher:
    """Runs a watchdog observer over .workflow/."""

    def __init__(self, paths: WorkflowPaths, channel: EventChannel):
        self.paths = paths
        self.handler = SignalChangeHandler(paths, channel)
        self.observer: Optional[Observer] = None

    def start(self) -> None:
        self.paths.signals_dir.mkdir(parents=True, exist_ok=True)
        self.observer = Observer()
        self.observer.schedule(self.handler, str(self.paths.workflow_dir), recursive=True)
        self.observer.daemon = True
        self.observer.start()

    def stop(self) -> None:
        if self.observer:
            self.observer.stop()
            self.observer.join(timeout=2)
            self.observer = None


class InputReader:
    """Background thread that reads operator lines and queues them."""

    def __init__(self, channel: EventChannel, read_line: Callable[[], str] = input):
        self.channel = channel
        self.read_line = read_line
        self.thread = threading.Thread(target=self._run, name="maestro-input", daemon=True)

    def start(self) -> None:
        self.thread.start()

    def _run(self) -> None:
        while True:
            try:
                line = self.read_line()
            except (EOFError, KeyboardInterrupt):
                self.channel.put(Event(EventKind.INPUT_CLOSED))
                return
            self.channel.put(Event(EventKind.INPUT, line.strip()))
