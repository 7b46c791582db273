"""Pydantic models for workflow state, configuration and worker tasks."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from .errors import ErrorKind


RESERVED_SIGNALS = ("plan", "review", "compound", "publish")
REVIEWER_ROLE = "reviewer"
COMPOUNDER_ROLE = "compounder"
MAX_ERROR_ENTRIES = 50


class Phase(str, Enum):
    """Pipeline phases in the order a feature moves through them."""

    INIT = "init"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    REFINING = "refining"
    COMPOUNDING = "compounding"
    COMPLETE = "complete"

    @property
    def ordinal(self) -> int:
        return list(Phase).index(self)


class ReviewVerdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    PENDING = "PENDING"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorEntry(CamelModel):
    at: datetime = Field(default_factory=datetime.now)
    kind: ErrorKind
    message: str


class WorkflowConfig(CamelModel):
    """Contents of .workflow/config.json."""

    max_iterations: int = Field(default=3, ge=1)
    workers: List[str] = Field(default_factory=lambda: ["backend", "frontend", "tests"])
    review_checks: Dict[str, str] = Field(default_factory=lambda: {
        "tests": "The full test suite passes",
        "contracts": "Implementations match the shared interfaces in contracts/",
        "types": "No new type errors or unchecked casts",
        "scope": "Each worker stayed inside its declared scope",
    })
    scopes: Dict[str, List[str]] = Field(default_factory=lambda: {
        "backend": ["src/server/**"],
        "frontend": ["src/client/**", "vite.config.ts"],
        "tests": ["tests/**", "**/*.test.ts"],
    })
    trunk_branch: Optional[str] = None
    remote: str = "origin"
    session: str = "workflow"
    destinations: Dict[str, str] = Field(default_factory=dict)
    stagger_seconds: float = Field(default=0.5, ge=0)
    poll_interval: float = Field(default=3.0, gt=0)
    api_url: Optional[str] = None

    @field_validator("workers")
    @classmethod
    def _check_workers(cls, workers: List[str]) -> List[str]:
        if not workers:
            raise ValueError("at least one worker role is required")
        if len(set(workers)) != len(workers):
            raise ValueError("worker roles must be unique")
        for role in workers:
            if role in RESERVED_SIGNALS or role in (REVIEWER_ROLE, COMPOUNDER_ROLE):
                raise ValueError(f"'{role}' is reserved and cannot be a worker role")
            if role.endswith("-refine"):
                raise ValueError(f"worker role '{role}' may not end with '-refine'")
        return workers

    def destination_for(self, role: str) -> str:
        """Destination address for a role, defaulting to <session>:<role>."""
        return self.destinations.get(role, f"{self.session}:{role}")

    def scope_for(self, role: str) -> List[str]:
        return self.scopes.get(role, [])


class BranchState(CamelModel):
    """Git branch bookkeeping persisted in .workflow/branch.json."""

    feature_branch: str
    previous_branch: str
    trunk: str


class WorkflowRecord(CamelModel):
    """Cached view of the workflow written to .workflow/state.json."""

    phase: Phase = Phase.INIT
    iteration: int = 0
    signals: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    last_updated: datetime = Field(default_factory=datetime.now)
    errors: List[ErrorEntry] = Field(default_factory=list)
    escalated: bool = False
    verdict: ReviewVerdict = ReviewVerdict.PENDING
    feature: Optional[str] = None

    @field_serializer("signals")
    def _sorted_signals(self, signals: List[str]) -> List[str]:
        return sorted(set(signals))

    def add_error(self, kind: ErrorKind, message: str) -> ErrorEntry:
        entry = ErrorEntry(kind=kind, message=message)
        self.errors.append(entry)
        # Keep only the most recent entries
        del self.errors[:-MAX_ERROR_ENTRIES]
        return entry


class TaskTemplate(BaseModel):
    """Externally supplied instruction template for one role."""

    role: str
    scope_globs: List[str] = Field(default_factory=list)
    body_template: str
    completion_signal: str


class WorkerTask(BaseModel):
    """A resolved instruction ready for dispatch.

    ``scope`` is advisory: it is rendered into the instruction text and
    never enforced.
    """

    role: str
    scope: List[str] = Field(default_factory=list)
    instruction_body: str
    completion_signal: str
