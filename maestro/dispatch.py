"""Worker dispatch: resolve an instruction template and deliver it.

A destination is anything that can receive text and a confirm keystroke.
The default is a tmux pane addressed as ``session:window``.
"""

import logging
import subprocess
import time
from abc import ABC, abstractmethod
from enum import Enum
from string import Template
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import DispatchError
from .models import COMPOUNDER_ROLE, REVIEWER_ROLE, TaskTemplate, WorkerTask, WorkflowConfig
from .signals import COMPOUND, MARKER_SUFFIX, REVIEW, refine_signal
from .state import WorkflowPaths

logger = logging.getLogger(__name__)

TMUX_TIMEOUT = 5


class TaskKind(str, Enum):
    IMPLEMENT = "implement"
    REFINE = "refine"
    REVIEW = "review"
    COMPOUND = "compound"


IMPLEMENT_TEMPLATE = """You are the $role worker for the feature "$feature".

Read the approved plan in $plan_path and the shared interfaces in $contracts_dir/.
Implement only the $role part of the plan.

Your scope:
$scope

Stay within the interfaces in $contracts_dir/. If a contract has to change, describe the change at the end of your work instead of editing the contract yourself.
"""

REFINE_TEMPLATE = """You are the $role worker for the feature "$feature" (refine iteration $iteration).

The review in $review_path did not pass. Fix the issues that fall inside your scope and leave the rest alone.

Your scope:
$scope

Issues reported by the reviewer:
$issues
"""

REVIEW_TEMPLATE = """You are the reviewer for the feature "$feature".

Review the work of: $workers. Compare it against the plan in $plan_path and the interfaces in $contracts_dir/.

Checks:
$review_checks

Write your review to $review_path. It must contain exactly one status line, either `STATUS: PASS` or `STATUS: FAIL`.
List every blocking problem as a bullet under an "## Issues" heading.
"""

COMPOUND_TEMPLATE = """The feature "$feature" passed review.

Capture what this feature taught us so the next one goes faster: patterns that worked, mistakes the review caught, and conventions worth writing down. Update the project's documentation accordingly. Do not change application code.
"""

DEFAULT_TEMPLATES = {
    TaskKind.IMPLEMENT: IMPLEMENT_TEMPLATE,
    TaskKind.REFINE: REFINE_TEMPLATE,
    TaskKind.REVIEW: REVIEW_TEMPLATE,
    TaskKind.COMPOUND: COMPOUND_TEMPLATE,
}


class Destination(ABC):
    """An addressable sink for worker instructions."""

    address: str = ""

    @abstractmethod
    def send_text(self, text: str) -> None:
        """Type text into the destination without submitting it."""

    @abstractmethod
    def send_confirm(self) -> None:
        """Submit what was typed."""


class TmuxDestination(Destination):
    """A tmux pane addressed by ``session:window[.pane]``."""

    def __init__(self, address: str):
        self.address = address

    def _tmux(self, *args: str) -> None:
        try:
            result = subprocess.run(
                ["tmux", *args],
                capture_output=True, text=True, timeout=TMUX_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise DispatchError("tmux not found") from e
        except subprocess.TimeoutExpired as e:
            raise DispatchError(f"tmux timed out talking to {self.address}") from e
        if result.returncode != 0:
            raise DispatchError(f"tmux send-keys to {self.address} failed: {result.stderr.strip()}")

    def send_text(self, text: str) -> None:
        # A pane submits on newline, so the instruction goes in as one line
        flattened = " ".join(line.strip() for line in text.splitlines() if line.strip())
        self._tmux("send-keys", "-t", self.address, "-l", flattened)

    def send_confirm(self) -> None:
        self._tmux("send-keys", "-t", self.address, "Enter")


class MemoryDestination(Destination):
    """Records deliveries instead of sending them."""

    def __init__(self, address: str = "memory", fail: bool = False):
        self.address = address
        self.fail = fail
        self.messages: List[str] = []
        self.confirms = 0

    def send_text(self, text: str) -> None:
        if self.fail:
            raise DispatchError(f"{self.address} is unreachable")
        self.messages.append(text)

    def send_confirm(self) -> None:
        if self.fail:
            raise DispatchError(f"{self.address} is unreachable")
        self.confirms += 1


def template_filename(kind: TaskKind, role: str) -> str:
    if kind is TaskKind.REFINE:
        return refine_signal(role)
    return role


def completion_signal_for(kind: TaskKind, role: str) -> str:
    if kind is TaskKind.IMPLEMENT:
        return role
    if kind is TaskKind.REFINE:
        return refine_signal(role)
    if kind is TaskKind.REVIEW:
        return REVIEW
    return COMPOUND


def default_templates(config: WorkflowConfig) -> Dict[str, str]:
    """Template files written by ``maestro init``, keyed by file stem."""
    templates = {role: IMPLEMENT_TEMPLATE for role in config.workers}
    templates.update({refine_signal(role): REFINE_TEMPLATE for role in config.workers})
    templates[REVIEWER_ROLE] = REVIEW_TEMPLATE
    templates[COMPOUNDER_ROLE] = COMPOUND_TEMPLATE
    return templates


def load_template(paths: WorkflowPaths, config: WorkflowConfig, kind: TaskKind, role: str) -> TaskTemplate:
    """Load a role's template from tasks/, falling back to the built-in text."""
    task_file = paths.task_file(template_filename(kind, role))
    try:
        body = task_file.read_text(encoding="utf-8")
    except FileNotFoundError:
        body = DEFAULT_TEMPLATES[kind]

    return TaskTemplate(
        role=role,
        scope_globs=config.scope_for(role),
        body_template=body,
        completion_signal=completion_signal_for(kind, role),
    )


def resolve_template(template: TaskTemplate, context: Mapping[str, str]) -> WorkerTask:
    """Substitute ``$placeholders``. Unknown placeholders are left as-is."""
    values = dict(context)
    values.setdefault("role", template.role)
    values.setdefault("signal", template.completion_signal)
    if "signals_dir" in values:
        values.setdefault("signal_path", f"{values['signals_dir']}/{values['signal']}{MARKER_SUFFIX}")
    values.setdefault("scope", "\n".join(f"- {glob}" for glob in template.scope_globs) or "- (unrestricted)")
    return WorkerTask(
        role=template.role,
        scope=list(template.scope_globs),
        instruction_body=Template(template.body_template).safe_substitute(values),
        completion_signal=template.completion_signal,
    )


class ProcessDispatcher:
    """Renders worker instructions and delivers them to destinations."""

    def __init__(
        self,
        signals_dir: str = ".workflow/signals",
        stagger_seconds: float = 0.5,
        destination_factory: Callable[[str], Destination] = TmuxDestination,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.signals_dir = signals_dir.rstrip("/")
        self.stagger_seconds = stagger_seconds
        self.destination_factory = destination_factory
        self.sleep = sleep

    def signal_path(self, signal_id: str) -> str:
        return f"{self.signals_dir}/{signal_id}{MARKER_SUFFIX}"

    def render(self, task: WorkerTask) -> str:
        marker = self.signal_path(task.completion_signal)
        return (
            f"{task.instruction_body.rstrip()}\n\n"
            f"When you are completely finished, signal completion by creating the marker file "
            f"{marker} (for example: touch {marker}). "
            f"Create only the '{task.completion_signal}' marker and do not touch any other file in "
            f"{self.signals_dir}/.\n"
        )

    def _resolve(self, destination: Union[str, Destination]) -> Destination:
        if isinstance(destination, Destination):
            return destination
        return self.destination_factory(destination)

    def dispatch(self, role: str, destination: Union[str, Destination], task: WorkerTask) -> str:
        """Deliver one task. Raises DispatchError if the destination is unreachable."""
        target = self._resolve(destination)
        text = self.render(task)
        target.send_text(text)
        target.send_confirm()
        logger.info("Dispatched %s to %s (signal %s)", role, target.address, task.completion_signal)
        return text

    def dispatch_many(self, assignments: Sequence[Tuple[str, Union[str, Destination], WorkerTask]]) -> List[str]:
        """Deliver several tasks, pausing between them.

        The pause avoids tmux mixing up targets when windows are addressed
        in quick succession. The first failure stops the batch.
        """
        delivered = []
        for index, (role, destination, task) in enumerate(assignments):
            if index and self.stagger_seconds:
                self.sleep(self.stagger_seconds)
            self.dispatch(role, destination, task)
            delivered.append(role)
        return delivered


def build_context(
    paths: WorkflowPaths,
    config: WorkflowConfig,
    feature: Optional[str],
    iteration: int,
    issues: Sequence[str] = (),
) -> Dict[str, str]:
    """Placeholder values shared by every template."""
    return {
        "feature": feature or "untitled feature",
        "iteration": str(iteration),
        "plan_path": paths.relative(paths.plan_file),
        "review_path": paths.relative(paths.review_file),
        "contracts_dir": paths.relative(paths.contracts_dir),
        "signals_dir": paths.relative(paths.signals_dir),
        "workers": ", ".join(config.workers),
        "review_checks": "\n".join(f"- {name}: {text}" for name, text in config.review_checks.items()) or "- (none configured)",
        "issues": "\n".join(f"- {issue}" for issue in issues) or "- See the review for details.",
    }
