"""Interactive terminal controller.

Renders the workflow, reads one-line operator commands and applies them.
Controller states cycle idle → awaiting-input → applying-command → idle,
with a confirming step in front of destructive commands.
"""

from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from rich.console import Console

from ..orchestrator import CommandResult, Snapshot, WorkflowOrchestrator, available_commands
from .events import Event, EventChannel, EventKind, InputReader, SignalWatcher
from .render import render_dashboard


class ControllerState(str, Enum):
    IDLE = "idle"
    AWAITING_INPUT = "awaiting-input"
    CONFIRMING = "confirming"
    APPLYING_COMMAND = "applying-command"


KEY_BINDINGS: List[Tuple[str, str]] = [
    ("a", "approve-plan"),
    ("r", "request-review"),
    ("f", "request-refine"),
    ("c", "request-compound"),
    ("p", "publish"),
    ("k", "checkpoint"),
    ("o", "force-pass"),
    ("n", "reset"),
    ("q", "quit"),
    ("?", "help"),
]
KEYS: Dict[str, str] = dict(KEY_BINDINGS)

COMMAND_ACTIONS: Dict[str, Callable[[WorkflowOrchestrator, str], CommandResult]] = {
    "approve-plan": lambda orch, arg: orch.approve_plan(),
    "request-review": lambda orch, arg: orch.request_review(),
    "request-refine": lambda orch, arg: orch.request_refine(),
    "request-compound": lambda orch, arg: orch.request_compound(),
    "publish": lambda orch, arg: orch.publish(),
    "checkpoint": lambda orch, arg: orch.checkpoint(arg or None),
    "force-pass": lambda orch, arg: orch.force_pass(),
}


def parse_command(line: str) -> Tuple[Optional[str], str]:
    """Map operator input to ``(command, argument)``; command is None if unknown."""
    head, _, argument = line.strip().partition(" ")
    name = KEYS.get(head.lower(), head.lower())
    if name in COMMAND_ACTIONS or name in ("reset", "quit", "help"):
        return name, argument.strip()
    return None, argument.strip()


class InteractiveController:
    """Event loop tying the orchestrator to the terminal."""

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        console: Optional[Console] = None,
        read_line: Callable[[], str] = input,
    ):
        self.orchestrator = orchestrator
        self.console = console or Console()
        self.read_line = read_line
        self.state = ControllerState.IDLE
        self.message: Optional[str] = None
        self.running = True
        self.snapshot: Optional[Snapshot] = None
        self.last_result: Optional[CommandResult] = None

    def bindings(self) -> List[Tuple[str, str]]:
        if self.state is ControllerState.CONFIRMING:
            return [("y", "confirm reset"), ("any other", "cancel")]
        allowed = set(available_commands(self.snapshot)) if self.snapshot else set()
        allowed.update(("quit", "help"))
        return [(key, name) for key, name in KEY_BINDINGS if name in allowed]

    def refresh(self) -> Snapshot:
        self.snapshot = self.orchestrator.refresh()
        return self.snapshot

    def render(self) -> None:
        if self.snapshot is None:
            self.refresh()
        self.console.clear()
        self.console.print(render_dashboard(self.snapshot, self.bindings(), self.message))
        prompt = "confirm> " if self.state is ControllerState.CONFIRMING else "command> "
        self.console.print(prompt, end="")

    def handle_event(self, event: Event) -> None:
        if event.kind is EventKind.INPUT_CLOSED:
            self.running = False
            return
        changed = True
        if event.kind is EventKind.INPUT:
            self.handle_input(event.payload)
        else:
            before = self.snapshot
            self.refresh()
            if event.kind is EventKind.TICK and before is not None:
                # Redrawing clears the operator's half-typed line
                changed = self._view(before) != self._view(self.snapshot)
        if self.running and changed:
            if self.state is ControllerState.IDLE:
                self.state = ControllerState.AWAITING_INPUT
            self.render()

    @staticmethod
    def _view(snapshot: Snapshot) -> tuple:
        """What the dashboard shows, minus the refresh timestamp."""
        record = snapshot.record.model_dump(exclude={"last_updated"})
        return record, snapshot.branch, snapshot.issues, snapshot.review_exists

    def handle_input(self, line: str) -> Optional[CommandResult]:
        if self.state is ControllerState.CONFIRMING:
            return self._confirm_reset(line)

        if not line.strip():
            self.refresh()
            return None

        command, argument = parse_command(line)
        if command is None:
            self.message = f"Unknown command: {line.strip()!r} (press ? for help)"
            return None
        if command == "quit":
            self.running = False
            return None
        if command == "help":
            self.message = "  ".join(f"{key}={name}" for key, name in KEY_BINDINGS)
            return None
        if command == "reset":
            self.state = ControllerState.CONFIRMING
            self.message = "Reset archives PLAN.md and REVIEW.md and clears every signal. Type y to confirm."
            return None

        self.state = ControllerState.APPLYING_COMMAND
        try:
            result = COMMAND_ACTIONS[command](self.orchestrator, argument)
        finally:
            self.state = ControllerState.IDLE
        self._show(result)
        return result

    def _confirm_reset(self, line: str) -> Optional[CommandResult]:
        if line.strip().lower() not in ("y", "yes"):
            self.state = ControllerState.AWAITING_INPUT
            self.message = "Reset cancelled"
            return None
        self.state = ControllerState.APPLYING_COMMAND
        try:
            result = self.orchestrator.reset_for_new_feature(confirmed=True)
        finally:
            self.state = ControllerState.IDLE
        self._show(result)
        return result

    def _show(self, result: CommandResult) -> None:
        self.last_result = result
        self.message = f"{'✅' if result.ok else '❌'} {result.message}"
        self.refresh()

    def run(self) -> None:
        """Block until the operator quits or stdin closes."""
        channel = EventChannel()
        watcher = SignalWatcher(self.orchestrator.paths, channel)
        watcher.start()
        InputReader(channel, self.read_line).start()
        try:
            self.handle_event(Event(EventKind.TICK))
            while self.running:
                event = channel.get(timeout=self.orchestrator.config.poll_interval)
                if event.kind is EventKind.FILE_CHANGED:
                    channel.drain(EventKind.FILE_CHANGED)
                self.handle_event(event)
        except KeyboardInterrupt:
            pass
        finally:
            watcher.stop()
            self.console.print()
