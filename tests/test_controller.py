import pytest
from rich.console import Console

from maestro.models import Phase
from maestro.ui.controller import ControllerState, InteractiveController, parse_command
from maestro.ui.events import Event, EventChannel, EventKind, InputReader, SignalChangeHandler
from maestro.ui.render import render_status_lines
from maestro.ui.watch import WatchDisplay


@pytest.fixture
def console():
    return Console(record=True, width=120, force_terminal=False)


@pytest.fixture
def controller(orchestrator, console):
    return InteractiveController(orchestrator, console=console)


def write_plan(root):
    (root / ".workflow" / "PLAN.md").write_text("# Add user profiles\n\n1. Endpoint\n")


@pytest.mark.parametrize("line, expected", [
    ("a", ("approve-plan", "")),
    ("A", ("approve-plan", "")),
    ("request-review", ("request-review", "")),
    ("k  save before lunch ", ("checkpoint", "save before lunch")),
    ("n", ("reset", "")),
    ("?", ("help", "")),
    ("zzz", (None, "")),
])
def test_parse_command(line, expected):
    assert parse_command(line) == expected


def test_approve_from_keyboard(controller, project, pool):
    write_plan(project)
    controller.refresh()

    result = controller.handle_input("a")

    assert result.ok
    assert controller.state is ControllerState.IDLE
    assert controller.snapshot.phase is Phase.IMPLEMENTING
    assert controller.message.startswith("✅")
    assert pool.messages("workflow:backend")


def test_rejected_command_is_shown(controller):
    result = controller.handle_input("r")
    assert not result.ok
    assert controller.message.startswith("❌")


def test_unknown_and_help(controller):
    controller.handle_input("xyz")
    assert "Unknown command" in controller.message
    controller.handle_input("?")
    assert "a=approve-plan" in controller.message


def test_reset_asks_for_confirmation(controller, project):
    write_plan(project)
    controller.handle_input("n")
    assert controller.state is ControllerState.CONFIRMING
    assert controller.bindings()[0] == ("y", "confirm reset")

    controller.handle_input("no")
    assert controller.state is ControllerState.AWAITING_INPUT
    assert (project / ".workflow" / "PLAN.md").exists()

    controller.handle_input("n")
    result = controller.handle_input("y")
    assert result.ok
    assert not (project / ".workflow" / "PLAN.md").exists()


def test_quit_and_closed_input_stop_the_loop(controller):
    controller.handle_input("q")
    assert not controller.running

    controller.running = True
    controller.handle_event(Event(EventKind.INPUT_CLOSED))
    assert not controller.running


def test_events_render_dashboard(controller, project, console):
    write_plan(project)
    controller.handle_event(Event(EventKind.FILE_CHANGED, "PLAN.md"))

    output = console.export_text()
    assert "Add user profiles" in output
    assert "[a] approve-plan" in output
    assert "command>" in output
    assert controller.state is ControllerState.AWAITING_INPUT


def test_bindings_follow_phase(controller, project):
    controller.refresh()
    assert ("a", "approve-plan") not in controller.bindings()
    write_plan(project)
    controller.refresh()
    assert ("a", "approve-plan") in controller.bindings()


def test_watch_renders_without_writing_state(orchestrator, project, console):
    write_plan(project)
    display = WatchDisplay(orchestrator, console=console)
    console.print(display.renderable())

    assert display.renders == 1
    assert "planning" in console.export_text()
    assert not orchestrator.paths.state_file.exists()


def test_status_lines(orchestrator, project):
    write_plan(project)
    lines = render_status_lines(orchestrator.inspect())
    assert lines[0] == "phase: planning"
    assert "feature: Add user profiles" in lines
    assert "iteration: 0/3" in lines


def test_channel_ticks_and_drains():
    channel = EventChannel()
    assert channel.get(timeout=0.01).kind is EventKind.TICK

    channel.put(Event(EventKind.FILE_CHANGED, "a"))
    channel.put(Event(EventKind.INPUT, "r"))
    channel.put(Event(EventKind.FILE_CHANGED, "b"))
    assert len(channel.drain(EventKind.FILE_CHANGED)) == 2
    assert channel.get(timeout=0.01) == Event(EventKind.INPUT, "r")


def test_input_reader_reports_eof():
    lines = iter(["a", " r "])

    def read_line():
        try:
            return next(lines)
        except StopIteration:
            raise EOFError

    channel = EventChannel()
    reader = InputReader(channel, read_line)
    reader.start()
    reader.thread.join(timeout=2)

    events = [channel.get(timeout=1) for _ in range(3)]
    assert events == [Event(EventKind.INPUT, "a"), Event(EventKind.INPUT, "r"), Event(EventKind.INPUT_CLOSED)]


def test_change_handler_filters_paths(orchestrator):
    paths = orchestrator.paths
    handler = SignalChangeHandler(paths, EventChannel())
    assert handler.is_relevant(paths.signals_dir / "backend.done")
    assert handler.is_relevant(paths.review_file)
    assert not handler.is_relevant(paths.state_file)
    assert not handler.is_relevant(paths.log_file)
    assert not handler.is_relevant(paths.signals_dir / ".backend.done.swp")


def test_idle_ticks_do_not_redraw(controller, project, console):
    controller.handle_event(Event(EventKind.TICK))
    assert "command>" in console.export_text()

    controller.handle_event(Event(EventKind.TICK))
    assert console.export_text() == ""

    write_plan(project)
    controller.handle_event(Event(EventKind.TICK))
    assert "approve-plan" in console.export_text()
