"""Shared fixtures for Maestro tests."""

from pathlib import Path
from typing import Dict, List

import pytest
from git import Repo

from maestro.dispatch import MemoryDestination, ProcessDispatcher
from maestro.git_lifecycle import GitLifecycleManager
from maestro.orchestrator import WorkflowOrchestrator
from maestro.signals import MemorySignalBus


def make_repo(path: Path) -> Repo:
    """A git repository on ``main`` with one commit and a local identity."""
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    with repo.config_writer() as config:
        config.set_value("user", "name", "Maestro Tests")
        config.set_value("user", "email", "tests@example.com")
        config.set_value("commit", "gpgsign", "false")
    (path / "README.md").write_text("# Project\n")
    repo.git.add("README.md")
    repo.git.commit("-m", "initial commit")
    return repo


class DestinationPool:
    """Destination factory handing out one MemoryDestination per address."""

    def __init__(self):
        self.destinations: Dict[str, MemoryDestination] = {}
        self.unreachable: set = set()

    def __call__(self, address: str) -> MemoryDestination:
        if address not in self.destinations:
            self.destinations[address] = MemoryDestination(address)
        destination = self.destinations[address]
        destination.fail = address in self.unreachable
        return destination

    def messages(self, address: str) -> List[str]:
        destination = self.destinations.get(address)
        return destination.messages if destination else []


class FakePullRequests:
    def __init__(self):
        self.calls = []

    def __call__(self, repo_path, base, head, title, body):
        self.calls.append({"base": base, "head": head, "title": title, "body": body})
        return f"https://example.com/pr/{len(self.calls)}"


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    make_repo(root)
    return root


@pytest.fixture
def pool() -> DestinationPool:
    return DestinationPool()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def memory_bus() -> MemorySignalBus:
    return MemorySignalBus()


@pytest.fixture
def pull_requests() -> FakePullRequests:
    return FakePullRequests()


@pytest.fixture
def orchestrator(project: Path, pool: DestinationPool, sleeps: List[float], pull_requests: FakePullRequests) -> WorkflowOrchestrator:
    WorkflowOrchestrator.initialize(project)
    dispatcher = ProcessDispatcher(
        signals_dir=".workflow/signals",
        stagger_seconds=0.5,
        destination_factory=pool,
        sleep=sleeps.append,
    )
    git = GitLifecycleManager(project, pr_creator=pull_requests)
    return WorkflowOrchestrator(project, dispatcher=dispatcher, git=git)
