"""Completion signals: the only channel between the orchestrator and workers.

A signal is a bare identifier such as ``plan`` or ``backend-refine``. Its
presence means the corresponding unit of work is complete. The file-backed
bus stores each signal as an empty ``signals/<id>.done`` marker and always
re-scans the directory, so markers written while the orchestrator is not
running are picked up on the next read.
"""

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Set

PLAN = "plan"
REVIEW = "review"
COMPOUND = "compound"
PUBLISH = "publish"

MARKER_SUFFIX = ".done"
REFINE_SUFFIX = "-refine"

_SIGNAL_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_signal_id(signal_id: str) -> str:
    """Reject identifiers that cannot be used as a marker filename."""
    if not _SIGNAL_ID.match(signal_id or ""):
        raise ValueError(f"Invalid signal id: {signal_id!r}")
    return signal_id


def refine_signal(role: str) -> str:
    return f"{role}{REFINE_SUFFIX}"


def implementation_signals(workers: Iterable[str]) -> Set[str]:
    return set(workers)


def refine_signals(workers: Iterable[str]) -> Set[str]:
    return {refine_signal(role) for role in workers}


class SignalBus(ABC):
    """Append-only set of completion markers."""

    @abstractmethod
    def publish(self, signal_id: str) -> None:
        """Mark a signal as done. Publishing twice is a no-op."""

    @abstractmethod
    def list_published(self) -> Set[str]:
        """Return every signal currently present."""

    @abstractmethod
    def clear(self, signal_ids: Iterable[str]) -> None:
        """Remove specific signals. Missing signals are ignored."""

    def is_published(self, signal_id: str) -> bool:
        return signal_id in self.list_published()

    def clear_all(self) -> None:
        self.clear(self.list_published())


class FileSignalBus(SignalBus):
    """Signal bus backed by empty marker files in a directory."""

    def __init__(self, signals_dir: Path):
        self.signals_dir = Path(signals_dir)

    def marker_path(self, signal_id: str) -> Path:
        return self.signals_dir / f"{validate_signal_id(signal_id)}{MARKER_SUFFIX}"

    def publish(self, signal_id: str) -> None:
        self.signals_dir.mkdir(parents=True, exist_ok=True)
        self.marker_path(signal_id).touch(exist_ok=True)

    def list_published(self) -> Set[str]:
        if not self.signals_dir.is_dir():
            return set()
        return {
            path.name[: -len(MARKER_SUFFIX)]
            for path in self.signals_dir.iterdir()
            if path.is_file() and path.name.endswith(MARKER_SUFFIX) and len(path.name) > len(MARKER_SUFFIX)
        }

    def clear(self, signal_ids: Iterable[str]) -> None:
        for signal_id in signal_ids:
            try:
                self.marker_path(signal_id).unlink()
            except FileNotFoundError:
                pass


class MemorySignalBus(SignalBus):
    """In-memory bus for tests and dry runs."""

    def __init__(self, initial: Iterable[str] = ()):
        self._signals: Set[str] = {validate_signal_id(s) for s in initial}

    def publish(self, signal_id: str) -> None:
        self._signals.add(validate_signal_id(signal_id))

    def list_published(self) -> Set[str]:
        return set(self._signals)

    def clear(self, signal_ids: Iterable[str]) -> None:
        for signal_id in list(signal_ids):
            self._signals.discard(signal_id)
