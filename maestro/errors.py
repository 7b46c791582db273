"""Error types for the Maestro workflow orchestrator."""

from enum import Enum


class ErrorKind(str, Enum):
    """Categories recorded in the workflow error log."""

    MISSING_ARTIFACT = "missing_artifact"
    DISPATCH = "dispatch"
    GIT = "git"
    ITERATION_EXHAUSTED = "iteration_exhausted"
    CORRUPT_STATE = "corrupt_state"


class MaestroError(Exception):
    """Base class for orchestrator errors."""

    kind = None


class WorkflowNotInitialized(MaestroError):
    """Raised when the .workflow directory is missing."""


class ConfigError(MaestroError):
    """Raised when config.json cannot be parsed or validated."""


class StartupError(MaestroError):
    """Unrecoverable filesystem problem detected at startup."""


class GitLifecycleError(MaestroError):
    """A branch, commit, push or change-request operation failed."""

    kind = ErrorKind.GIT


class DispatchError(MaestroError):
    """A worker destination could not be reached."""

    kind = ErrorKind.DISPATCH


class CommandRejected(MaestroError):
    """An operator command is not valid in the current phase."""
