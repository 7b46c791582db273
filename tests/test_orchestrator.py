import httpx
import pytest
from git import Repo

from maestro.dispatch import ProcessDispatcher
from maestro.errors import ErrorKind
from maestro.git_lifecycle import GitLifecycleManager
from maestro.models import BranchState, Phase, ReviewVerdict, WorkflowConfig
from maestro.orchestrator import WorkflowOrchestrator, available_commands

WORKERS = ("backend", "frontend", "tests")


def write_plan(root, title="Add user profiles"):
    (root / ".workflow" / "PLAN.md").write_text(f"# {title}\n\n1. Backend endpoint\n2. Profile page\n3. Tests\n")


def write_review(root, status, issues=("Missing input validation on /profile",)):
    lines = ["# Review", "", f"STATUS: {status}", "", "## Issues"]
    lines.extend(f"- {issue}" for issue in issues)
    (root / ".workflow" / "REVIEW.md").write_text("\n".join(lines) + "\n")


def signal(root, *signal_ids):
    for signal_id in signal_ids:
        (root / ".workflow" / "signals" / f"{signal_id}.done").touch()


def refine_ids():
    return [f"{role}-refine" for role in WORKERS]


def error_kinds(orchestrator):
    record, _ = orchestrator.store.load_record()
    return [entry.kind for entry in record.errors]


def test_full_feature_lifecycle(orchestrator, project, pool, sleeps, pull_requests, tmp_path):
    assert orchestrator.refresh().phase is Phase.INIT

    write_plan(project)
    assert orchestrator.refresh().phase is Phase.PLANNING

    result = orchestrator.approve_plan()
    assert result.ok, result.message
    snapshot = orchestrator.refresh()
    assert snapshot.phase is Phase.IMPLEMENTING
    assert snapshot.branch.feature_branch == "feature/add-user-profiles"
    assert orchestrator.git.current_branch() == "feature/add-user-profiles"
    for role in WORKERS:
        [message] = pool.messages(f"workflow:{role}")
        assert f"You are the {role} worker" in message
        assert f".workflow/signals/{role}.done" in message
    assert sleeps == [0.5, 0.5]

    (project / "src" / "server").mkdir(parents=True)
    (project / "src" / "server" / "profile.py").write_text("def get_profile(): ...\n")
    signal(project, "backend", "frontend")
    assert orchestrator.refresh().phase is Phase.IMPLEMENTING
    signal(project, "tests")
    assert orchestrator.refresh().phase is Phase.REVIEWING
    assert orchestrator.git.repo.head.commit.message.startswith("implement: Add user profiles")

    assert orchestrator.request_review().ok
    assert len(pool.messages("workflow:reviewer")) == 1

    write_review(project, "FAIL")
    signal(project, "review")
    snapshot = orchestrator.refresh()
    assert snapshot.phase is Phase.REFINING
    assert snapshot.record.iteration == 1
    assert snapshot.issues == ["Missing input validation on /profile"]

    assert orchestrator.request_refine().ok
    for role in WORKERS:
        refine_message = pool.messages(f"workflow:{role}")[-1]
        assert "Missing input validation on /profile" in refine_message
        assert f".workflow/signals/{role}-refine.done" in refine_message

    (project / "src" / "server" / "profile.py").write_text("def get_profile(user_id: int): ...\n")
    signal(project, *refine_ids())
    assert orchestrator.refresh().phase is Phase.REVIEWING
    assert orchestrator.git.repo.head.commit.message.startswith("refine: Add user profiles: refinement 1")

    result = orchestrator.request_review()
    assert "REVIEW-1.md" in result.message
    snapshot = orchestrator.refresh()
    assert snapshot.phase is Phase.REVIEWING
    assert "review" not in snapshot.signals
    assert not any(s.endswith("-refine") for s in snapshot.signals)

    write_review(project, "PASS", issues=())
    signal(project, "review")
    assert orchestrator.refresh().phase is Phase.COMPOUNDING

    assert orchestrator.request_compound().ok
    assert "passed review" in pool.messages("workflow:compounder")[0]
    signal(project, "compound")
    assert orchestrator.refresh().phase is Phase.COMPOUNDING

    Repo.init(tmp_path / "remote.git", bare=True)
    orchestrator.git.repo.create_remote("origin", str(tmp_path / "remote.git"))
    result = orchestrator.publish()
    assert result.ok, result.message
    assert "https://example.com/pr/1" in result.message
    snapshot = orchestrator.refresh()
    assert snapshot.phase is Phase.COMPLETE
    assert snapshot.record.iteration == 1
    assert "- [x] refinement (1 iteration(s))" in pull_requests.calls[0]["body"]


def test_approve_plan_dispatch_failure_keeps_plan_unmarked(orchestrator, project, pool):
    write_plan(project)
    pool.unreachable.add("workflow:frontend")

    result = orchestrator.approve_plan()

    assert not result.ok
    assert "approve-plan failed" in result.message
    assert "plan" not in orchestrator.bus.list_published()
    assert orchestrator.refresh().phase is Phase.PLANNING
    assert error_kinds(orchestrator)[-1] is ErrorKind.DISPATCH


def test_approve_plan_retry_keeps_pre_session_branch(orchestrator, project, pool):
    write_plan(project)
    pool.unreachable.add("workflow:frontend")

    assert not orchestrator.approve_plan().ok
    assert orchestrator.git.current_branch() == "main"
    assert orchestrator.store.load_branch() is None

    pool.unreachable.clear()
    assert orchestrator.approve_plan().ok
    branch = orchestrator.store.load_branch()
    assert branch.feature_branch == "feature/add-user-profiles"
    assert branch.previous_branch == "main"
    assert orchestrator.git.current_branch() == "feature/add-user-profiles"


def test_approve_plan_reuses_stored_branch_state(orchestrator, project):
    orchestrator.store.save_branch(BranchState(
        feature_branch="feature/add-user-profiles", previous_branch="release", trunk="main",
    ))
    write_plan(project)

    assert orchestrator.approve_plan().ok
    assert orchestrator.store.load_branch().previous_branch == "release"


def test_request_compound_runs_once(orchestrator, project, pool):
    write_plan(project)
    write_review(project, "PASS", issues=())
    signal(project, "plan", *WORKERS, "review", "compound")

    result = orchestrator.request_compound()

    assert not result.ok
    assert "already captured" in result.message
    assert pool.messages("workflow:compounder") == []


def test_commands_are_gated_by_phase(orchestrator, project):
    write_plan(project)
    orchestrator.refresh()

    for command in (orchestrator.request_review, orchestrator.request_refine,
                    orchestrator.request_compound, orchestrator.publish, orchestrator.force_pass):
        assert not command().ok

    record, _ = orchestrator.store.load_record()
    assert record.errors == []
    assert orchestrator.bus.list_published() == set()


def test_request_compound_needs_passing_review(orchestrator, project):
    signal(project, "plan", *WORKERS, "review")
    result = orchestrator.request_compound()
    assert not result.ok
    assert "passing review" in result.message


def test_review_signal_without_artifact_is_flagged_once(orchestrator, project):
    write_plan(project)
    signal(project, "plan", *WORKERS, "review")

    snapshot = orchestrator.refresh()
    orchestrator.refresh()

    assert snapshot.phase is Phase.REVIEWING
    assert snapshot.verdict is ReviewVerdict.PENDING
    assert error_kinds(orchestrator) == [ErrorKind.MISSING_ARTIFACT]


def make_orchestrator(project, pool, **config):
    WorkflowOrchestrator.initialize(project)
    return WorkflowOrchestrator(
        project,
        dispatcher=ProcessDispatcher(destination_factory=pool, sleep=lambda seconds: None),
        git=GitLifecycleManager(project, pr_creator=lambda *args: "https://example.com/pr/1"),
        config=WorkflowConfig(**config),
    )


def test_refine_limit_escalates(project, pool):
    orchestrator = make_orchestrator(project, pool, max_iterations=1)
    write_plan(project)
    signal(project, "plan", *WORKERS)
    orchestrator.refresh()

    write_review(project, "FAIL")
    signal(project, "review")
    assert orchestrator.refresh().record.iteration == 1
    assert orchestrator.request_refine().ok
    signal(project, *refine_ids())
    assert orchestrator.refresh().phase is Phase.REVIEWING
    assert orchestrator.request_review().ok

    write_review(project, "FAIL", issues=("Still no validation",))
    signal(project, "review")
    snapshot = orchestrator.refresh()

    assert snapshot.phase is Phase.REFINING
    assert snapshot.record.iteration == 1
    assert snapshot.record.escalated
    assert "request-refine" not in available_commands(snapshot)
    assert "Still no validation" in snapshot.record.errors[-1].message
    assert snapshot.record.errors[-1].kind is ErrorKind.ITERATION_EXHAUSTED

    result = orchestrator.request_refine()
    assert not result.ok
    assert "Refine limit" in result.message

    assert orchestrator.force_pass().ok
    snapshot = orchestrator.refresh()
    assert snapshot.phase is Phase.COMPOUNDING
    assert not snapshot.record.escalated
    assert "PASS (forced)" in (project / ".workflow" / "REVIEW.md").read_text()


def test_corrupt_state_is_rebuilt(orchestrator, project):
    paths = orchestrator.paths
    paths.reviews_dir.mkdir()
    (paths.reviews_dir / "REVIEW-1.md").write_text("STATUS: FAIL\n")
    write_plan(project)
    write_review(project, "FAIL")
    signal(project, "plan", *WORKERS, "review")
    paths.state_file.write_text("{ truncated")

    snapshot = orchestrator.refresh()

    assert snapshot.phase is Phase.REFINING
    assert snapshot.record.iteration == 2
    assert not snapshot.record.escalated
    assert error_kinds(orchestrator) == [ErrorKind.CORRUPT_STATE]


@pytest.mark.parametrize("cache, expected_errors", [
    ("{ truncated", [ErrorKind.CORRUPT_STATE, ErrorKind.ITERATION_EXHAUSTED]),
    (None, [ErrorKind.ITERATION_EXHAUSTED]),
])
def test_lost_cache_past_refine_limit_stays_escalated(project, pool, cache, expected_errors):
    orchestrator = make_orchestrator(project, pool, max_iterations=1)
    paths = orchestrator.paths
    paths.reviews_dir.mkdir()
    (paths.reviews_dir / "REVIEW-1.md").write_text("STATUS: FAIL\n")
    write_plan(project)
    write_review(project, "FAIL", issues=("Still no validation",))
    signal(project, "plan", *WORKERS, "review")
    if cache is not None:
        paths.state_file.write_text(cache)

    assert orchestrator.inspect().record.escalated

    snapshot = orchestrator.refresh()
    assert snapshot.phase is Phase.REFINING
    assert snapshot.record.iteration == 1
    assert snapshot.record.escalated
    assert error_kinds(orchestrator) == expected_errors

    result = orchestrator.request_refine()
    assert not result.ok
    assert "Refine limit" in result.message
    assert pool.messages("workflow:backend") == []


def test_inspect_is_read_only(orchestrator, project):
    write_plan(project)
    snapshot = orchestrator.inspect()
    assert snapshot.phase is Phase.PLANNING
    assert snapshot.record.feature == "Add user profiles"
    assert not orchestrator.paths.state_file.exists()


def test_checkpoint(orchestrator, project):
    (project / "draft.py").write_text("x = 1\n")
    result = orchestrator.checkpoint("wip on drafts")
    assert result.ok
    assert result.message.startswith("Checkpoint committed")
    assert orchestrator.git.repo.head.commit.message.strip() == "checkpoint: wip on drafts"
    assert orchestrator.checkpoint().message == "Nothing to commit"


def test_reset_needs_confirmation(orchestrator, project):
    write_plan(project)
    signal(project, "plan", "backend")

    assert not orchestrator.reset_for_new_feature().ok
    assert orchestrator.bus.list_published() == {"plan", "backend"}

    result = orchestrator.reset_for_new_feature(confirmed=True)
    assert result.ok
    assert "archive" in result.message
    snapshot = orchestrator.refresh()
    assert snapshot.phase is Phase.INIT
    assert snapshot.signals == set()


def test_phase_changes_are_broadcast(project, pool):
    posted = []
    orchestrator = make_orchestrator(project, pool, api_url="http://localhost:8001/api/")
    orchestrator._http_post = lambda url, json: posted.append((url, json))

    orchestrator.refresh()
    write_plan(project)
    orchestrator.refresh()
    orchestrator.refresh()

    assert posted == [(
        "http://localhost:8001/api/broadcast/status-update",
        {"phase": "planning", "iteration": 0, "feature": "Add user profiles", "escalated": False},
    )]


def test_broadcast_failure_is_not_fatal(project, pool):
    def unreachable(url, json):
        raise httpx.ConnectError("connection refused")

    orchestrator = make_orchestrator(project, pool, api_url="http://localhost:9/api")
    orchestrator._http_post = unreachable
    orchestrator.refresh()
    write_plan(project)
    assert orchestrator.refresh().phase is Phase.PLANNING


@pytest.mark.parametrize("signals, expected", [
    ((), ["checkpoint", "reset"]),
    (("plan",), ["checkpoint", "reset"]),
    (("plan",) + WORKERS, ["request-review", "checkpoint", "reset"]),
])
def test_available_commands(orchestrator, project, signals, expected):
    signal(project, *signals)
    assert available_commands(orchestrator.inspect()) == expected


def test_memory_bus_drives_phases(project, pool, memory_bus):
    WorkflowOrchestrator.initialize(project)
    orchestrator = WorkflowOrchestrator(
        project,
        bus=memory_bus,
        dispatcher=ProcessDispatcher(destination_factory=pool, sleep=lambda seconds: None),
    )
    write_plan(project)
    assert orchestrator.approve_plan().ok

    assert memory_bus.list_published() == {"plan"}
    assert not (project / ".workflow" / "signals" / "plan.done").exists()

    for role in WORKERS:
        memory_bus.publish(role)
    assert orchestrator.refresh().phase is Phase.REVIEWING


def test_non_reset_commands_keep_completed_signals(orchestrator, project):
    write_plan(project)
    signal(project, "plan", *WORKERS)
    before = orchestrator.bus.list_published()

    orchestrator.checkpoint()
    orchestrator.request_refine()
    orchestrator.request_compound()
    orchestrator.publish()
    orchestrator.force_pass()
    orchestrator.refresh()

    assert orchestrator.bus.list_published() == before
