"""Rich renderables for the dashboard."""

from typing import List, Optional, Sequence, Tuple

from rich.console import Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..models import Phase, ReviewVerdict
from ..orchestrator import Snapshot
from ..signals import refine_signal

PIPELINE = [
    Phase.PLANNING,
    Phase.IMPLEMENTING,
    Phase.REVIEWING,
    Phase.REFINING,
    Phase.COMPOUNDING,
    Phase.COMPLETE,
]

PHASE_ICONS = {
    Phase.INIT: "💤",
    Phase.PLANNING: "📝",
    Phase.IMPLEMENTING: "🔧",
    Phase.REVIEWING: "🔍",
    Phase.REFINING: "🔄",
    Phase.COMPOUNDING: "📚",
    Phase.COMPLETE: "🎉",
}

VERDICT_STYLES = {
    ReviewVerdict.PASS: "bold green",
    ReviewVerdict.FAIL: "bold red",
    ReviewVerdict.PENDING: "yellow",
}


def render_pipeline(phase: Phase) -> Text:
    text = Text()
    for index, step in enumerate(PIPELINE):
        if index:
            text.append(" → ", style="dim")
        if step is phase:
            text.append(f"{PHASE_ICONS[step]} {step.value}", style="bold cyan")
        elif phase is not Phase.REFINING and step is Phase.REFINING:
            # Refining is a detour, not a milestone
            text.append(step.value, style="dim")
        elif step.ordinal < phase.ordinal:
            text.append(f"✓ {step.value}", style="green")
        else:
            text.append(step.value, style="dim")
    return text


def render_workers(snapshot: Snapshot) -> Table:
    table = Table(expand=True, show_edge=False)
    table.add_column("Worker", style="cyan", no_wrap=True)
    table.add_column("Implemented")
    table.add_column("Refined")
    table.add_column("Destination", style="dim")
    for role in snapshot.config.workers:
        table.add_row(
            role,
            "✅" if role in snapshot.signals else "⏳",
            "✅" if refine_signal(role) in snapshot.signals else "·",
            snapshot.config.destination_for(role),
        )
    return table


def render_review(snapshot: Snapshot) -> Text:
    record = snapshot.record
    text = Text()
    text.append("Review: ")
    text.append(snapshot.verdict.value, style=VERDICT_STYLES[snapshot.verdict])
    if not snapshot.review_exists:
        text.append(" (no REVIEW.md)", style="dim")
    text.append(f"   Iteration: {record.iteration}/{snapshot.config.max_iterations}")
    if snapshot.branch:
        text.append(f"   Branch: {snapshot.branch.feature_branch}", style="magenta")
    for issue in snapshot.issues[:8]:
        text.append(f"\n  ✗ {issue}", style="red")
    if len(snapshot.issues) > 8:
        text.append(f"\n  … {len(snapshot.issues) - 8} more in REVIEW.md", style="dim")
    return text


def render_errors(snapshot: Snapshot, limit: int = 5) -> Optional[Table]:
    errors = snapshot.record.errors[-limit:]
    if not errors:
        return None
    table = Table(title="Recent errors", title_justify="left", show_header=False, expand=True, show_edge=False)
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Kind", style="red", no_wrap=True)
    table.add_column("Message")
    for entry in errors:
        table.add_row(entry.at.strftime("%H:%M:%S"), entry.kind.value, entry.message)
    return table


def render_commands(bindings: Sequence[Tuple[str, str]]) -> Text:
    text = Text()
    for index, (key, label) in enumerate(bindings):
        if index:
            text.append("  ")
        text.append(f"[{key}]", style="bold")
        text.append(f" {label}")
    return text


def render_dashboard(
    snapshot: Snapshot,
    bindings: Sequence[Tuple[str, str]] = (),
    message: Optional[str] = None,
) -> Group:
    """Full dashboard: pipeline, workers, review, errors and key bindings."""
    record = snapshot.record
    title = f"{PHASE_ICONS[record.phase]} {record.feature or 'No feature planned'}"
    parts: List = [
        render_pipeline(record.phase),
        Text(""),
        render_workers(snapshot),
        Text(""),
        render_review(snapshot),
    ]
    body = Panel(Group(*parts), title=title, subtitle=f"phase: {record.phase.value}", border_style="blue")

    renderables: List = [body]
    if record.escalated:
        renderables.append(Panel(
            Text(
                f"Refine limit of {snapshot.config.max_iterations} iterations reached and the review still fails.\n"
                "Resolve the remaining issues by hand, force-pass the review, or reset.",
                style="bold red",
            ),
            title="⚠️ Needs human attention",
            border_style="red",
        ))
    errors = render_errors(snapshot)
    if errors is not None:
        renderables.append(errors)
    if message:
        renderables.append(Text(message, style="italic"))
    if bindings:
        renderables.append(render_commands(bindings))
    return Group(*renderables)


def render_status_lines(snapshot: Snapshot) -> List[str]:
    """Plain summary used by ``maestro status``."""
    record = snapshot.record
    lines = [
        f"phase: {record.phase.value}",
        f"feature: {record.feature or '-'}",
        f"iteration: {record.iteration}/{snapshot.config.max_iterations}",
        f"verdict: {snapshot.verdict.value}",
        f"signals: {', '.join(sorted(snapshot.signals)) or '-'}",
    ]
    if snapshot.branch:
        lines.append(f"branch: {snapshot.branch.feature_branch} (from {snapshot.branch.previous_branch})")
    if record.escalated:
        lines.append("escalated: refine limit reached")
    return lines
