"""Git automation tied to phase transitions.

Every operation is safe to repeat: branching reuses an existing feature
branch, and committing with nothing staged is a no-op.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from .errors import GitLifecycleError
from .models import BranchState
from .state import WORKFLOW_DIRNAME

logger = logging.getLogger(__name__)

FEATURE_PREFIX = "feature/"


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:60].rstrip("-") or "feature"


@dataclass
class PublishResult:
    branch: str
    commits_ahead: int
    url: Optional[str]


def create_pull_request(repo_path: Path, base: str, head: str, title: str, body: str) -> str:
    """Open a pull request with the GitHub CLI and return its URL."""
    try:
        result = subprocess.run([
            "gh", "pr", "create",
            "--base", base,
            "--head", head,
            "--title", title,
            "--body", body
        ], cwd=repo_path, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise GitLifecycleError("gh CLI not found; cannot open a pull request") from e

    if result.returncode != 0:
        raise GitLifecycleError(f"Failed to create PR: {result.stderr.strip()}")
    return result.stdout.strip()


class GitLifecycleManager:
    """Branches and commits the working tree at workflow boundaries."""

    def __init__(
        self,
        repo_path: Path,
        trunk: Optional[str] = None,
        remote: str = "origin",
        pr_creator: Callable[[Path, str, str, str, str], str] = create_pull_request,
    ):
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.pr_creator = pr_creator
        self._trunk = trunk
        self._repo: Optional[Repo] = None

    @property
    def repo(self) -> Repo:
        if self._repo is None:
            try:
                self._repo = Repo(self.repo_path)
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise GitLifecycleError(f"{self.repo_path} is not a git repository") from e
        return self._repo

    @property
    def trunk(self) -> str:
        if self._trunk:
            return self._trunk
        heads = {head.name for head in self.repo.heads}
        for candidate in ("main", "master"):
            if candidate in heads:
                return candidate
        return self.current_branch()

    def current_branch(self) -> str:
        try:
            return self.repo.active_branch.name
        except TypeError as e:
            raise GitLifecycleError("HEAD is detached; check out a branch first") from e

    def create_feature_branch(self, name: str) -> BranchState:
        """Branch off trunk for a feature, or reuse the current branch."""
        current = self.current_branch()
        trunk = self.trunk
        if current != trunk:
            logger.info("Reusing current branch %s", current)
            return BranchState(feature_branch=current, previous_branch=current, trunk=trunk)

        branch_name = f"{FEATURE_PREFIX}{slugify(name)}"
        try:
            if branch_name in {head.name for head in self.repo.heads}:
                self.repo.git.checkout(branch_name)
            else:
                self.repo.git.checkout('-b', branch_name)
        except GitCommandError as e:
            raise GitLifecycleError(f"Could not switch to {branch_name}: {e.stderr.strip()}") from e

        logger.info("Created feature branch %s from %s", branch_name, trunk)
        return BranchState(feature_branch=branch_name, previous_branch=current, trunk=trunk)

    def switch_branch(self, name: str) -> None:
        try:
            self.repo.git.checkout(name)
        except GitCommandError as e:
            raise GitLifecycleError(f"Could not switch to {name}: {e.stderr.strip()}") from e
        logger.info("Switched back to %s", name)

    def staged_files(self) -> List[str]:
        output = self.repo.git.diff("--cached", "--name-only")
        return [line for line in output.splitlines() if line.strip()]

    def commit_phase(self, kind: str, description: str) -> Optional[str]:
        """Commit everything outside .workflow/. Returns the sha, or None if clean."""
        try:
            self.repo.git.add("--all", "--", ".", f":(exclude){WORKFLOW_DIRNAME}")
            if not self.staged_files():
                logger.info("Nothing to commit for %s", kind)
                return None
            self.repo.git.commit("-m", f"{kind}: {description}")
        except GitCommandError as e:
            raise GitLifecycleError(f"Commit '{kind}' failed: {e.stderr.strip()}") from e

        sha = self.repo.head.commit.hexsha
        logger.info("Committed %s (%s)", kind, sha[:8])
        return sha

    def commits_ahead(self, branch: str) -> int:
        try:
            return len(list(self.repo.iter_commits(f"{self.trunk}..{branch}")))
        except GitCommandError as e:
            raise GitLifecycleError(f"Cannot compare {branch} with {self.trunk}: {e.stderr.strip()}") from e

    def finalize_and_publish(self, name: str, phases_completed: List[str]) -> PublishResult:
        """Commit leftovers, push the feature branch and open a pull request."""
        state = self.create_feature_branch(name)
        branch = state.feature_branch
        if branch == state.trunk:
            raise GitLifecycleError(f"Refusing to publish from trunk branch {branch}")

        self.commit_phase("final", f"cleanup before publishing {name}")

        ahead = self.commits_ahead(branch)
        if ahead == 0:
            raise GitLifecycleError(f"{branch} has no commits ahead of {state.trunk}; nothing to publish")

        try:
            self.repo.git.push("--set-upstream", self.remote, branch)
        except GitCommandError as e:
            raise GitLifecycleError(f"Push to {self.remote} failed: {e.stderr.strip()}") from e

        title = f"{name[:70]}{'...' if len(name) > 70 else ''}"
        body = self._pr_body(name, branch, state.trunk, ahead, phases_completed)
        url = self.pr_creator(self.repo_path, state.trunk, branch, title, body)
        logger.info("Published %s (%d commits): %s", branch, ahead, url)
        return PublishResult(branch=branch, commits_ahead=ahead, url=url)

    def _pr_body(self, name: str, branch: str, trunk: str, ahead: int, phases: List[str]) -> str:
        phase_lines = "\n".join(f"- [x] {phase}" for phase in phases) or "- (none recorded)"
        return f"""## Summary

**Feature**: {name}
**Base Branch**: {trunk}
**Feature Branch**: {branch}
**Commits**: {ahead}

## Phases Completed
{phase_lines}

---
Generated by the Maestro workflow orchestrator"""
