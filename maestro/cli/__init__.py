"""CLI interface for the Maestro workflow orchestrator."""

import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich import print as rprint
from rich.console import Console

from ..errors import ConfigError, StartupError, WorkflowNotInitialized
from ..log import configure_logging
from ..models import WorkflowConfig
from ..orchestrator import WorkflowOrchestrator
from ..signals import validate_signal_id
from ..state import StateStore, WorkflowPaths
from ..ui.render import render_dashboard, render_status_lines

console = Console()


def load_orchestrator(root: Path, verbose: bool = False, console_output: bool = True) -> WorkflowOrchestrator:
    """Open an initialised workflow or exit with a clear message."""
    paths = WorkflowPaths(root)
    store = StateStore(paths)
    try:
        store.ensure_initialized()
        store.check_access()
    except WorkflowNotInitialized as e:
        rprint(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except StartupError as e:
        rprint(f"[red]Fatal: {e}[/red]")
        sys.exit(2)

    configure_logging(paths.log_file, verbose=verbose, console_output=console_output)
    try:
        return WorkflowOrchestrator(paths.root)
    except ConfigError as e:
        rprint(f"[red]Error: {e}[/red]")
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option('--root', default='.', type=click.Path(file_okay=False), help='Project root containing .workflow/ (defaults to current directory)')
@click.option('--verbose', '-v', is_flag=True, help='Log debug output')
@click.pass_context
def cli(ctx: click.Context, root: str, verbose: bool):
    """Maestro: drive the plan → implement → review → refine → compound pipeline.

    Run without a subcommand for the interactive controller.
    """
    ctx.obj = {"root": Path(root).resolve(), "verbose": verbose}
    if ctx.invoked_subcommand is None:
        from ..ui.controller import InteractiveController

        orchestrator = load_orchestrator(ctx.obj["root"], verbose, console_output=False)
        InteractiveController(orchestrator, console=console).run()


@cli.command()
@click.option('--workers', help='Comma-separated worker roles (default: backend,frontend,tests)')
@click.option('--max-iterations', type=int, help='Refine iterations before escalating (default: 3)')
@click.option('--session', help='tmux session holding the worker windows')
@click.option('--force', is_flag=True, help='Overwrite task templates with the defaults')
@click.pass_obj
def init(obj, workers: Optional[str], max_iterations: Optional[int], session: Optional[str], force: bool):
    """Scaffold the .workflow/ layout."""
    root = obj["root"]
    if not root.exists():
        rprint(f"[red]Error: Project root does not exist: {root}[/red]")
        sys.exit(1)

    paths = WorkflowPaths(root)
    config = None
    if not paths.config_file.exists():
        overrides = {}
        if workers:
            overrides["workers"] = [role.strip() for role in workers.split(",") if role.strip()]
        if max_iterations is not None:
            overrides["max_iterations"] = max_iterations
        if session:
            overrides["session"] = session
        try:
            config = WorkflowConfig(**overrides)
        except ValueError as e:
            rprint(f"[red]Error: {e}[/red]")
            sys.exit(1)
    elif workers or max_iterations is not None or session:
        rprint("[yellow]Warning: config.json already exists; edit it to change settings[/yellow]")

    try:
        created = WorkflowOrchestrator.initialize(root, config, overwrite_templates=force)
    except ConfigError as e:
        rprint(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except OSError as e:
        rprint(f"[red]Error initialising {paths.workflow_dir}: {e}[/red]")
        sys.exit(2)

    if created:
        rprint(f"[green]✅ Workflow initialised in {paths.workflow_dir}[/green]")
        for path in created:
            rprint(f"[dim]  + {paths.relative(path)}[/dim]")
    else:
        rprint(f"[dim]{paths.workflow_dir} already initialised[/dim]")
    rprint("")
    rprint("[bold]Next steps:[/bold]")
    rprint(f"1. Write the plan to {paths.relative(paths.plan_file)} (first '# ' heading is the feature name)")
    rprint("2. maestro           # interactive controller")
    rprint("3. maestro watch     # read-only dashboard in another pane")


@cli.command()
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_obj
def reset(obj, yes: bool):
    """Clear signals and archive artifacts, keeping config."""
    orchestrator = load_orchestrator(obj["root"], obj["verbose"])
    if not yes and not click.confirm("Archive PLAN.md/REVIEW.md and clear every signal?", default=False):
        rprint("[yellow]Reset cancelled[/yellow]")
        return
    result = orchestrator.reset_for_new_feature(confirmed=True)
    rprint(f"[green]✅ {result.message}[/green]")


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the state record as JSON')
@click.option('--rich', 'as_rich', is_flag=True, help='Print the full dashboard')
@click.pass_obj
def status(obj, as_json: bool, as_rich: bool):
    """Print the current phase and signals once."""
    orchestrator = load_orchestrator(obj["root"], obj["verbose"])
    snapshot = orchestrator.inspect()
    if as_json:
        click.echo(json.dumps(snapshot.record.model_dump(mode="json", by_alias=True), indent=2))
    elif as_rich:
        console.print(render_dashboard(snapshot))
    else:
        for line in render_status_lines(snapshot):
            click.echo(line)


@cli.command()
@click.pass_obj
def watch(obj):
    """Continuously render the workflow (read-only)."""
    from ..ui.watch import WatchDisplay

    orchestrator = load_orchestrator(obj["root"], obj["verbose"], console_output=False)
    WatchDisplay(orchestrator, console=console).run()


@cli.command()
@click.argument('signal_id')
@click.pass_obj
def mark(obj, signal_id: str):
    """Create a completion marker (for workers that cannot touch files)."""
    orchestrator = load_orchestrator(obj["root"], obj["verbose"])
    try:
        validate_signal_id(signal_id)
    except ValueError as e:
        rprint(f"[red]Error: {e}[/red]")
        sys.exit(1)
    orchestrator.bus.publish(signal_id)
    rprint(f"[green]✅ {signal_id} marked done[/green]")


@cli.command()
@click.option('--host', default='127.0.0.1', help='Interface to bind (default: 127.0.0.1)')
@click.option('--port', default=8001, help='Port to run the API on (default: 8001)')
@click.pass_obj
def serve(obj, host: str, port: int):
    """Run the read-only status API."""
    import uvicorn

    from ..ui.backend.main import create_app

    orchestrator = load_orchestrator(obj["root"], obj["verbose"])
    rprint("[bold]🎼 Launching Maestro status API...[/bold]")
    rprint(f"[dim]API Server: http://{host}:{port}/api/state[/dim]")
    uvicorn.run(create_app(orchestrator.paths.root), host=host, port=port)


if __name__ == "__main__":
    cli()
