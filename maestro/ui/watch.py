"""Read-only monitoring loop."""

from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.text import Text

from ..orchestrator import WorkflowOrchestrator
from .events import EventChannel, EventKind, SignalWatcher
from .render import render_dashboard


class WatchDisplay:
    """Re-renders on signal changes or every poll interval. Never issues commands."""

    def __init__(self, orchestrator: WorkflowOrchestrator, console: Optional[Console] = None):
        self.orchestrator = orchestrator
        self.console = console or Console()
        self.renders = 0

    def renderable(self) -> Group:
        # inspect() never applies effects or writes state.json
        snapshot = self.orchestrator.inspect()
        self.renders += 1
        footer = Text("watching .workflow/ (read-only) · Ctrl+C to exit", style="dim")
        return Group(render_dashboard(snapshot), footer)

    def run(self, max_updates: Optional[int] = None) -> None:
        channel = EventChannel()
        watcher = SignalWatcher(self.orchestrator.paths, channel)
        watcher.start()
        updates = 0
        try:
            with Live(self.renderable(), console=self.console, refresh_per_second=4) as live:
                while max_updates is None or updates < max_updates:
                    event = channel.get(timeout=self.orchestrator.config.poll_interval)
                    if event.kind is EventKind.FILE_CHANGED:
                        channel.drain(EventKind.FILE_CHANGED)
                    live.update(self.renderable())
                    updates += 1
        except KeyboardInterrupt:
            pass
        finally:
            watcher.stop()
