"""On-disk workflow layout and the state store built on it.

``state.json`` is only a cache for external introspection. The signal
directory is the source of truth and is rescanned on every read.
"""

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from .errors import ConfigError, StartupError, WorkflowNotInitialized
from .models import BranchState, ReviewVerdict, WorkflowConfig, WorkflowRecord
from .review import read_review_status
from .signals import FileSignalBus, SignalBus

logger = logging.getLogger(__name__)

WORKFLOW_DIRNAME = ".workflow"


class WorkflowPaths:
    """Paths of the .workflow layout under a project root."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self.workflow_dir = self.root / WORKFLOW_DIRNAME
        self.state_file = self.workflow_dir / "state.json"
        self.config_file = self.workflow_dir / "config.json"
        self.branch_file = self.workflow_dir / "branch.json"
        self.plan_file = self.workflow_dir / "PLAN.md"
        self.review_file = self.workflow_dir / "REVIEW.md"
        self.contracts_dir = self.workflow_dir / "contracts"
        self.tasks_dir = self.workflow_dir / "tasks"
        self.signals_dir = self.workflow_dir / "signals"
        self.reviews_dir = self.workflow_dir / "reviews"
        self.archive_dir = self.workflow_dir / "archive"
        self.log_file = self.workflow_dir / "orchestrator.log"

    def task_file(self, role: str) -> Path:
        return self.tasks_dir / f"{role}.md"

    def relative(self, path: Path) -> str:
        """Path relative to the project root, as workers see it."""
        return Path(path).relative_to(self.root).as_posix()

    def exists(self) -> bool:
        return self.workflow_dir.is_dir()


def atomic_write_text(path: Path, content: str) -> None:
    """Write via a temp file and ``os.replace`` so readers never see partial JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def first_heading(text: str) -> Optional[str]:
    """Return the first H1 line of a markdown document."""
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# ") and stripped[2:].strip():
            return stripped[2:].strip()
    return None


class StateStore:
    """Reads and writes everything under .workflow/."""

    def __init__(self, paths: WorkflowPaths, bus: Optional[SignalBus] = None):
        self.paths = paths
        self.bus = bus if bus is not None else FileSignalBus(paths.signals_dir)

    # -- startup -------------------------------------------------------

    def ensure_initialized(self) -> None:
        if not self.paths.exists():
            raise WorkflowNotInitialized(
                f"No {WORKFLOW_DIRNAME}/ directory in {self.paths.root}. Run 'maestro init' first."
            )

    def check_access(self) -> None:
        """Abort early if the layout cannot be read and written."""
        for directory in (self.paths.workflow_dir, self.paths.signals_dir):
            if directory.exists() and not os.access(directory, os.R_OK | os.W_OK | os.X_OK):
                raise StartupError(f"Insufficient permissions on {directory}")

    # -- config --------------------------------------------------------

    def load_config(self) -> WorkflowConfig:
        data: Dict = {}
        if self.paths.config_file.exists():
            try:
                data = json.loads(self.paths.config_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ConfigError(f"Cannot parse {self.paths.config_file}: {e}") from e
        try:
            config = WorkflowConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid {self.paths.config_file}:\n{e}") from e

        # Environment overrides
        if os.environ.get("MAESTRO_SESSION"):
            config.session = os.environ["MAESTRO_SESSION"]
        if os.environ.get("MAESTRO_API_URL"):
            config.api_url = os.environ["MAESTRO_API_URL"]
        return config

    def save_config(self, config: WorkflowConfig) -> None:
        atomic_write_text(self.paths.config_file, config.model_dump_json(by_alias=True, indent=2) + "\n")

    # -- cached record -------------------------------------------------

    def load_record(self) -> Tuple[Optional[WorkflowRecord], bool]:
        """Load the cached record.

        Returns ``(record, corrupt)``; the record is None when the cache
        is missing or unreadable.
        """
        if not self.paths.state_file.exists():
            return None, False
        try:
            raw = self.paths.state_file.read_text(encoding="utf-8")
            return WorkflowRecord.model_validate_json(raw), False
        except (ValidationError, ValueError, OSError) as e:
            logger.warning("Ignoring unreadable %s: %s", self.paths.state_file, e)
            return None, True

    def save_record(self, record: WorkflowRecord) -> None:
        atomic_write_text(self.paths.state_file, record.model_dump_json(by_alias=True, indent=2) + "\n")

    # -- branch state --------------------------------------------------

    def load_branch(self) -> Optional[BranchState]:
        if not self.paths.branch_file.exists():
            return None
        try:
            return BranchState.model_validate_json(self.paths.branch_file.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as e:
            logger.warning("Ignoring unreadable %s: %s", self.paths.branch_file, e)
            return None

    def save_branch(self, branch: BranchState) -> None:
        atomic_write_text(self.paths.branch_file, branch.model_dump_json(by_alias=True, indent=2) + "\n")

    # -- artifacts -----------------------------------------------------

    def plan_exists(self) -> bool:
        return self.paths.plan_file.is_file()

    def review_exists(self) -> bool:
        return self.paths.review_file.is_file()

    def read_review(self) -> Optional[str]:
        try:
            return self.paths.review_file.read_text(encoding="utf-8")
        except (FileNotFoundError, UnicodeDecodeError):
            return None

    def read_verdict(self) -> ReviewVerdict:
        return read_review_status(self.paths.review_file)

    def feature_name(self) -> Optional[str]:
        try:
            return first_heading(self.paths.plan_file.read_text(encoding="utf-8"))
        except (FileNotFoundError, UnicodeDecodeError):
            return None

    def archived_reviews(self) -> List[Path]:
        if not self.paths.reviews_dir.is_dir():
            return []
        return sorted(self.paths.reviews_dir.glob("REVIEW-*.md"))

    def archive_review(self) -> Optional[Path]:
        """Move REVIEW.md aside so its verdict can no longer be trusted."""
        if not self.review_exists():
            return None
        self.paths.reviews_dir.mkdir(parents=True, exist_ok=True)
        number = len(self.archived_reviews()) + 1
        target = self.paths.reviews_dir / f"REVIEW-{number}.md"
        while target.exists():
            number += 1
            target = self.paths.reviews_dir / f"REVIEW-{number}.md"
        self.paths.review_file.rename(target)
        logger.info("Archived review to %s", target)
        return target

    # -- lifecycle -----------------------------------------------------

    def scaffold(self, config: WorkflowConfig, templates: Dict[str, str], overwrite_templates: bool = False) -> List[Path]:
        """Create the layout. Existing config and templates are kept."""
        created = []
        for directory in (
            self.paths.workflow_dir,
            self.paths.contracts_dir,
            self.paths.tasks_dir,
            self.paths.signals_dir,
        ):
            if not directory.exists():
                directory.mkdir(parents=True)
                created.append(directory)

        if not self.paths.config_file.exists():
            self.save_config(config)
            created.append(self.paths.config_file)

        for role, body in templates.items():
            task_file = self.paths.task_file(role)
            if overwrite_templates or not task_file.exists():
                task_file.write_text(body, encoding="utf-8")
                created.append(task_file)
        return created

    def reset(self) -> Optional[Path]:
        """Clear signals and archive artifacts, keeping config and tasks.

        Returns the archive directory, or None if nothing was archived.
        """
        self.bus.clear_all()

        movable = [
            self.paths.plan_file,
            self.paths.review_file,
            self.paths.reviews_dir,
            self.paths.contracts_dir,
        ]
        present = [path for path in movable if path.exists()]
        archive = None
        if present:
            archive = self.paths.archive_dir / datetime.now().strftime("%Y%m%d-%H%M%S")
            suffix = 1
            while archive.exists():
                archive = archive.with_name(f"{archive.name.split('.')[0]}.{suffix}")
                suffix += 1
            archive.mkdir(parents=True)
            for path in present:
                shutil.move(str(path), str(archive / path.name))
            logger.info("Archived previous feature artifacts to %s", archive)

        self.paths.contracts_dir.mkdir(parents=True, exist_ok=True)
        for path in (self.paths.state_file, self.paths.branch_file):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        return archive
