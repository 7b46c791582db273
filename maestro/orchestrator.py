"""Core orchestrator: derives workflow state and applies operator commands."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Set

import httpx

from .dispatch import (
    ProcessDispatcher,
    TaskKind,
    build_context,
    default_templates,
    load_template,
    resolve_template,
)
from .errors import CommandRejected, DispatchError, ErrorKind, GitLifecycleError
from .git_lifecycle import GitLifecycleManager
from .machine import Effect, PhaseStateMachine
from .models import (
    COMPOUNDER_ROLE,
    REVIEWER_ROLE,
    BranchState,
    Phase,
    ReviewVerdict,
    WorkflowConfig,
    WorkflowRecord,
)
from .review import extract_issues, force_pass
from .signals import COMPOUND, PLAN, PUBLISH, REVIEW, SignalBus, refine_signals
from .state import StateStore, WorkflowPaths

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Everything a renderer needs about the current workflow."""

    record: WorkflowRecord
    config: WorkflowConfig
    signals: Set[str]
    verdict: ReviewVerdict
    plan_exists: bool
    review_exists: bool
    branch: Optional[BranchState] = None
    issues: List[str] = field(default_factory=list)

    @property
    def phase(self) -> Phase:
        return self.record.phase


@dataclass
class CommandResult:
    ok: bool
    message: str


def available_commands(snapshot: Snapshot) -> List[str]:
    """Commands whose gate is open for this snapshot."""
    phase = snapshot.phase
    commands = []
    if phase is Phase.PLANNING:
        commands.append("approve-plan")
    if phase is Phase.REVIEWING:
        commands.append("request-review")
    if phase is Phase.REFINING and not snapshot.record.escalated:
        commands.append("request-refine")
    if phase is Phase.COMPOUNDING and COMPOUND not in snapshot.signals:
        commands.append("request-compound")
    if COMPOUND in snapshot.signals and PUBLISH not in snapshot.signals:
        commands.append("publish")
    if snapshot.verdict is ReviewVerdict.FAIL:
        commands.append("force-pass")
    commands.extend(["checkpoint", "reset"])
    return commands


class WorkflowOrchestrator:
    """Drives the plan → implement → review → refine → compound pipeline."""

    def __init__(
        self,
        root: Path,
        bus: Optional[SignalBus] = None,
        dispatcher: Optional[ProcessDispatcher] = None,
        git: Optional[GitLifecycleManager] = None,
        config: Optional[WorkflowConfig] = None,
        http_post: Optional[Callable[..., object]] = None,
    ):
        self.paths = WorkflowPaths(root)
        self.store = StateStore(self.paths, bus)
        self.bus = self.store.bus
        self.config = config or self.store.load_config()
        self.machine = PhaseStateMachine(self.config.workers, self.config.max_iterations)
        self.dispatcher = dispatcher or ProcessDispatcher(
            signals_dir=self.paths.relative(self.paths.signals_dir),
            stagger_seconds=self.config.stagger_seconds,
        )
        self.git = git or GitLifecycleManager(
            self.paths.root, trunk=self.config.trunk_branch, remote=self.config.remote
        )
        self._http_post = http_post

    # -- setup ---------------------------------------------------------

    @classmethod
    def initialize(cls, root: Path, config: Optional[WorkflowConfig] = None, overwrite_templates: bool = False) -> List[Path]:
        """Scaffold .workflow/ under ``root``. Existing config is kept."""
        paths = WorkflowPaths(root)
        store = StateStore(paths)
        if config is None:
            config = store.load_config() if paths.config_file.exists() else WorkflowConfig()
        return store.scaffold(config, default_templates(config), overwrite_templates)

    # -- state ---------------------------------------------------------

    def _recover_iteration(self, phase: Phase) -> int:
        completed = len(self.store.archived_reviews())
        return completed + 1 if phase is Phase.REFINING else completed

    def _build(self, cached: Optional[WorkflowRecord]) -> Snapshot:
        signals = self.bus.list_published()
        verdict = self.store.read_verdict()
        plan_exists = self.store.plan_exists()
        phase = self.machine.compute(signals, verdict, plan_exists)

        if cached is not None:
            record = cached.model_copy(deep=True)
        else:
            recovered = self.machine.recover(phase, self._recover_iteration(phase))
            record = WorkflowRecord(
                iteration=recovered.iteration,
                escalated=Effect.ESCALATE in recovered.effects,
            )
        record.phase = phase
        record.signals = sorted(signals)
        record.verdict = verdict
        record.feature = self.store.feature_name()

        review_text = self.store.read_review()
        return Snapshot(
            record=record,
            config=self.config,
            signals=signals,
            verdict=verdict,
            plan_exists=plan_exists,
            review_exists=review_text is not None,
            branch=self.store.load_branch(),
            issues=extract_issues(review_text) if verdict is ReviewVerdict.FAIL else [],
        )

    def inspect(self) -> Snapshot:
        """Compute the current snapshot without writing anything."""
        cached, _ = self.store.load_record()
        return self._build(cached)

    def refresh(self) -> Snapshot:
        """Recompute state, apply transition effects and update state.json."""
        cached, corrupt = self.store.load_record()
        snapshot = self._build(cached)
        record = snapshot.record

        if corrupt:
            record.add_error(ErrorKind.CORRUPT_STATE, "state.json was unreadable; rebuilt from signals")
        if REVIEW in snapshot.signals and not snapshot.review_exists:
            self._add_error_once(record, ErrorKind.MISSING_ARTIFACT,
                                 "review signal present but REVIEW.md is missing; verdict is PENDING")

        previous = cached.phase if cached is not None else None
        transition = self.machine.evaluate(previous, record.phase, record.iteration)
        record.iteration = transition.iteration
        effects = list(transition.effects)
        if cached is None and record.escalated:
            effects.append(Effect.ESCALATE)
        for effect in effects:
            self._apply_effect(effect, snapshot)

        if record.phase is not Phase.REFINING:
            record.escalated = False
        record.last_updated = datetime.now()
        self.store.save_record(record)

        if transition.changed:
            logger.info("Phase %s -> %s (iteration %d)", previous.value, record.phase.value, record.iteration)
            self._broadcast_status_update(record)
        return snapshot

    def _apply_effect(self, effect: Effect, snapshot: Snapshot) -> None:
        record = snapshot.record
        feature = record.feature or "untitled feature"
        try:
            if effect is Effect.COMMIT_IMPLEMENTATION:
                self.git.commit_phase("implement", f"{feature}: implementation complete")
            elif effect is Effect.COMMIT_REFINEMENT:
                self.git.commit_phase("refine", f"{feature}: refinement {record.iteration} complete")
        except GitLifecycleError as e:
            record.add_error(ErrorKind.GIT, str(e))
            logger.error("%s", e)
            return

        if effect is Effect.START_ITERATION:
            logger.info("Starting refine iteration %d of %d", record.iteration, self.config.max_iterations)
        elif effect is Effect.ESCALATE:
            record.escalated = True
            issues = "; ".join(snapshot.issues) or "see REVIEW.md"
            message = (
                f"Review still failing after {self.config.max_iterations} refine iterations. "
                f"Unresolved: {issues}"
            )
            record.add_error(ErrorKind.ITERATION_EXHAUSTED, message)
            logger.error("%s", message)

    @staticmethod
    def _add_error_once(record: WorkflowRecord, kind: ErrorKind, message: str) -> None:
        last = record.errors[-1] if record.errors else None
        if last is None or last.kind != kind or last.message != message:
            record.add_error(kind, message)

    def record_error(self, kind: ErrorKind, message: str) -> None:
        """Append to the visible error log in state.json."""
        cached, _ = self.store.load_record()
        record = cached or self._build(None).record
        record.add_error(kind, message)
        record.last_updated = datetime.now()
        self.store.save_record(record)
        logger.error("%s", message)

    def _broadcast_status_update(self, record: WorkflowRecord) -> None:
        """Tell the status API about a phase change. Failures are not fatal."""
        if not self.config.api_url:
            return
        payload = {
            "phase": record.phase.value,
            "iteration": record.iteration,
            "feature": record.feature,
            "escalated": record.escalated,
        }
        url = f"{self.config.api_url.rstrip('/')}/broadcast/status-update"
        try:
            if self._http_post is not None:
                self._http_post(url, json=payload)
            else:
                with httpx.Client(timeout=2.0) as client:
                    client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.debug("Status broadcast to %s failed: %s", url, e)

    # -- commands ------------------------------------------------------

    def _run(self, name: str, action: Callable[[Snapshot], str]) -> CommandResult:
        snapshot = self.refresh()
        try:
            message = action(snapshot)
        except CommandRejected as e:
            return CommandResult(False, str(e))
        except (GitLifecycleError, DispatchError) as e:
            self.record_error(e.kind, f"{name}: {e}")
            return CommandResult(False, f"{name} failed: {e}")

        self.refresh()
        logger.info("%s: %s", name, message)
        return CommandResult(True, message)

    @staticmethod
    def _require_phase(snapshot: Snapshot, command: str, *phases: Phase) -> None:
        if snapshot.phase not in phases:
            wanted = " or ".join(phase.value for phase in phases)
            raise CommandRejected(f"{command} needs phase {wanted}; current phase is {snapshot.phase.value}")

    def _task(self, snapshot: Snapshot, kind: TaskKind, role: str, issues=()):
        context = build_context(
            self.paths, self.config, snapshot.record.feature, snapshot.record.iteration, issues
        )
        return resolve_template(load_template(self.paths, self.config, kind, role), context)

    def approve_plan(self) -> CommandResult:
        def action(snapshot: Snapshot) -> str:
            self._require_phase(snapshot, "approve-plan", Phase.PLANNING)
            feature = snapshot.record.feature or "untitled feature"

            stored = self.store.load_branch()
            branch = self.git.create_feature_branch(feature)
            if stored is not None and stored.feature_branch == branch.feature_branch:
                branch = stored

            try:
                self.git.commit_phase("plan", f"accept plan for {feature}")
                assignments = [
                    (role, self.config.destination_for(role), self._task(snapshot, TaskKind.IMPLEMENT, role))
                    for role in self.config.workers
                ]
                self.dispatcher.dispatch_many(assignments)
            except (GitLifecycleError, DispatchError):
                self._leave_feature_branch(branch)
                raise

            # Only after every implementer has its instructions
            self.store.save_branch(branch)
            self.bus.publish(PLAN)
            return f"Plan approved on {branch.feature_branch}; dispatched {', '.join(self.config.workers)}"

        return self._run("approve-plan", action)

    def _leave_feature_branch(self, branch: BranchState) -> None:
        """Return to the pre-session branch after a failed approve-plan."""
        if branch.previous_branch == branch.feature_branch:
            return
        try:
            self.git.switch_branch(branch.previous_branch)
        except GitLifecycleError as e:
            logger.error("%s", e)

    def request_review(self) -> CommandResult:
        def action(snapshot: Snapshot) -> str:
            self._require_phase(snapshot, "request-review", Phase.REVIEWING)
            archived = self.store.archive_review()
            self.bus.clear({REVIEW} | refine_signals(self.config.workers))

            task = self._task(snapshot, TaskKind.REVIEW, REVIEWER_ROLE)
            self.dispatcher.dispatch(REVIEWER_ROLE, self.config.destination_for(REVIEWER_ROLE), task)
            if archived:
                return f"Previous review archived to {self.paths.relative(archived)}; reviewer dispatched"
            return "Reviewer dispatched"

        return self._run("request-review", action)

    def request_refine(self) -> CommandResult:
        def action(snapshot: Snapshot) -> str:
            self._require_phase(snapshot, "request-refine", Phase.REFINING)
            if snapshot.record.escalated:
                raise CommandRejected(
                    f"Refine limit of {self.config.max_iterations} reached; "
                    "resolve the issues by hand, force-pass, or reset"
                )
            self.bus.clear(refine_signals(self.config.workers))
            assignments = [
                (
                    role,
                    self.config.destination_for(role),
                    self._task(snapshot, TaskKind.REFINE, role, snapshot.issues),
                )
                for role in self.config.workers
            ]
            self.dispatcher.dispatch_many(assignments)
            return (
                f"Refine iteration {snapshot.record.iteration}/{self.config.max_iterations} "
                f"dispatched to {', '.join(self.config.workers)}"
            )

        return self._run("request-refine", action)

    def request_compound(self) -> CommandResult:
        def action(snapshot: Snapshot) -> str:
            if REVIEW not in snapshot.signals or snapshot.verdict is not ReviewVerdict.PASS:
                raise CommandRejected("request-compound needs a passing review")
            if COMPOUND in snapshot.signals:
                raise CommandRejected("Learnings are already captured; publish next")
            self._require_phase(snapshot, "request-compound", Phase.COMPOUNDING)
            task = self._task(snapshot, TaskKind.COMPOUND, COMPOUNDER_ROLE)
            self.dispatcher.dispatch(COMPOUNDER_ROLE, self.config.destination_for(COMPOUNDER_ROLE), task)
            return "Learnings capture dispatched"

        return self._run("request-compound", action)

    def _phases_completed(self, snapshot: Snapshot) -> List[str]:
        phases = []
        if PLAN in snapshot.signals:
            phases.append("plan")
        if set(self.config.workers) <= snapshot.signals:
            phases.append(f"implementation ({', '.join(self.config.workers)})")
        if snapshot.record.iteration:
            phases.append(f"refinement ({snapshot.record.iteration} iteration(s))")
        if REVIEW in snapshot.signals:
            phases.append(f"review ({snapshot.verdict.value})")
        if COMPOUND in snapshot.signals:
            phases.append("compound")
        return phases

    def publish(self) -> CommandResult:
        def action(snapshot: Snapshot) -> str:
            if COMPOUND not in snapshot.signals:
                raise CommandRejected("publish needs the compound signal")
            feature = snapshot.record.feature or "untitled feature"
            result = self.git.finalize_and_publish(feature, self._phases_completed(snapshot))
            self.bus.publish(PUBLISH)
            return f"Published {result.branch} ({result.commits_ahead} commits): {result.url}"

        return self._run("publish", action)

    def checkpoint(self, description: Optional[str] = None) -> CommandResult:
        def action(snapshot: Snapshot) -> str:
            sha = self.git.commit_phase("checkpoint", description or f"manual checkpoint during {snapshot.phase.value}")
            if sha is None:
                return "Nothing to commit"
            return f"Checkpoint committed ({sha[:8]})"

        return self._run("checkpoint", action)

    def force_pass(self) -> CommandResult:
        def action(snapshot: Snapshot) -> str:
            text = self.store.read_review()
            if text is None:
                raise CommandRejected("force-pass needs an existing REVIEW.md")
            rewritten, count = force_pass(text)
            if not count:
                raise CommandRejected("REVIEW.md has no FAIL status to override")
            self.paths.review_file.write_text(rewritten, encoding="utf-8")
            logger.warning(
                "Operator forced review to PASS (%d status line(s) rewritten, iteration %d)",
                count, snapshot.record.iteration,
            )
            return "Review forced to PASS"

        return self._run("force-pass", action)

    def reset_for_new_feature(self, confirmed: bool = False) -> CommandResult:
        if not confirmed:
            return CommandResult(False, "Reset is destructive and needs confirmation")
        archive = self.store.reset()
        self.refresh()
        logger.warning("Workflow reset for a new feature")
        if archive:
            return CommandResult(True, f"Workflow reset; previous artifacts in {self.paths.relative(archive)}")
        return CommandResult(True, "Workflow reset")
