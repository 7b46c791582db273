"""Maestro: filesystem-signalled workflow orchestrator for parallel workers."""

from .errors import (
    CommandRejected,
    ConfigError,
    DispatchError,
    ErrorKind,
    GitLifecycleError,
    MaestroError,
    StartupError,
    WorkflowNotInitialized,
)
from .machine import Effect, PhaseStateMachine, next_phase
from .models import Phase, ReviewVerdict, WorkerTask, WorkflowConfig, WorkflowRecord
from .orchestrator import CommandResult, Snapshot, WorkflowOrchestrator
from .review import parse_review_status
from .signals import FileSignalBus, MemorySignalBus, SignalBus

__version__ = "0.1.0"

__all__ = [
    "CommandRejected",
    "CommandResult",
    "ConfigError",
    "DispatchError",
    "Effect",
    "ErrorKind",
    "FileSignalBus",
    "GitLifecycleError",
    "MaestroError",
    "MemorySignalBus",
    "Phase",
    "PhaseStateMachine",
    "ReviewVerdict",
    "SignalBus",
    "Snapshot",
    "StartupError",
    "WorkerTask",
    "WorkflowConfig",
    "WorkflowNotInitialized",
    "WorkflowOrchestrator",
    "WorkflowRecord",
    "next_phase",
    "parse_review_status",
]
