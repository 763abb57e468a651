"""
Worktree pool for parallel sessions.

Each session runs in its own git worktree at <repo>/.worktrees/worktree-<i>,
where i is a slot index in 1..max_parallel. A slot is held from acquire()
until release(); releasing a free slot does nothing.

Before any worktree is used the repo must document how parallel sessions are
kept apart: CLAUDE.md needs a "## Worktree Isolation Strategy" section with
subsections covering file paths, environment variables and branch naming.
A missing document or section fails closed.
"""

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from kanban.git.branch import branch_exists
from kanban.git.runner import GitError, GitExec, check_git, run_git
from kanban.lib.constants import ISOLATION_DOC_NAME, WORKTREE_DIR_NAME

logger = logging.getLogger(__name__)

ISOLATION_HEADING_RE = re.compile(r"^##\s+Worktree Isolation Strategy\s*$", re.IGNORECASE | re.MULTILINE)
H2_RE = re.compile(r"^##\s+", re.MULTILINE)
H3_RE = re.compile(r"^###\s+(.+?)\s*$", re.MULTILINE)

# Required subsection -> keywords, any of which may appear in its ### heading
REQUIRED_ISOLATION_SECTIONS = {
    "file-path conventions": ("path", "file"),
    "environment-variable conventions": ("env", "environment", "variable"),
    "branch-naming convention": ("branch",),
}


class WorktreeError(Exception):
    """Worktree could not be created."""
    pass


class IsolationValidationError(Exception):
    """Repo lacks a usable worktree isolation strategy."""

    def __init__(self, repo_path: Path, missing: list[str]):
        self.repo_path = repo_path
        self.missing = missing
        super().__init__(f"Isolation strategy invalid for {repo_path}: missing {', '.join(missing)}")


def validate_isolation_strategy(repo_path: Path) -> None:
    """Check CLAUDE.md for the isolation strategy section.

    Raises:
        IsolationValidationError: Listing every missing piece.
    """
    doc = Path(repo_path) / ISOLATION_DOC_NAME
    try:
        content = doc.read_text(encoding="utf-8")
    except OSError:
        raise IsolationValidationError(repo_path, [ISOLATION_DOC_NAME]) from None

    match = ISOLATION_HEADING_RE.search(content)
    if match is None:
        raise IsolationValidationError(repo_path, ["'## Worktree Isolation Strategy' section"])

    section = content[match.end():]
    next_h2 = H2_RE.search(section)
    if next_h2:
        section = section[:next_h2.start()]

    headings = [h.lower() for h in H3_RE.findall(section)]
    missing = [
        name for name, keywords in REQUIRED_ISOLATION_SECTIONS.items()
        if not any(kw in heading for heading in headings for kw in keywords)
    ]
    if missing:
        raise IsolationValidationError(repo_path, missing)


@dataclass
class WorktreeInfo:
    path: Path
    branch: str
    index: int


class WorktreeManager:
    """Fixed-size pool of worktree slots for one repo."""

    def __init__(self, repo_path: Path, max_parallel: int, git: GitExec = run_git):
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")
        self.repo_path = Path(repo_path)
        self.max_parallel = max_parallel
        self.git = git
        self._active: dict[int, WorktreeInfo] = {}
        self._reserved: set[int] = set()

    def worktree_path(self, index: int) -> Path:
        return self.repo_path / WORKTREE_DIR_NAME / f"worktree-{index}"

    def available_slots(self) -> int:
        return self.max_parallel - len(self._reserved)

    def active_worktrees(self) -> list[WorktreeInfo]:
        return [self._active[i] for i in sorted(self._active)]

    def _reserve_index(self) -> int:
        for i in range(1, self.max_parallel + 1):
            if i not in self._reserved:
                self._reserved.add(i)
                return i
        raise WorktreeError(f"Index pool exhausted: all {self.max_parallel} slots in use")

    def _clear_stale_slot(self, path: Path) -> None:
        """Drop whatever a crashed run left at path, and git's record of it."""
        if path.exists():
            logger.warning(f"[WORKTREE] Removing leftover worktree at {path}")
            self.git(["worktree", "remove", str(path), "--force"], self.repo_path)
            # Not always a registered worktree; remove can fail or leave files
            shutil.rmtree(path, ignore_errors=True)
        prune = self.git(["worktree", "prune"], self.repo_path)
        if not prune.success:
            logger.warning(f"[WORKTREE] git worktree prune failed: {prune.stderr.strip()}")

    def acquire(self, branch: str) -> WorktreeInfo:
        """Create a worktree for branch in the lowest free slot.

        Creates the branch if it doesn't exist yet. A leftover directory in
        the slot is removed first.

        Raises:
            WorktreeError: No free slot or git failed. The slot is freed again.
        """
        index = self._reserve_index()
        path = self.worktree_path(index)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._clear_stale_slot(path)
            if branch_exists(self.repo_path, branch, git=self.git):
                check_git(self.git, ["worktree", "add", str(path), branch], self.repo_path)
            else:
                check_git(self.git, ["worktree", "add", "-b", branch, str(path)], self.repo_path)
        except (GitError, OSError) as e:
            self._reserved.discard(index)
            raise WorktreeError(f"Failed to create worktree for {branch}: {e}") from e

        info = WorktreeInfo(path=path, branch=branch, index=index)
        self._active[index] = info
        logger.info(f"[WORKTREE] Created slot {index} at {path} (branch {branch})")
        return info

    def release(self, index: int) -> None:
        """Remove the slot's worktree and prune stale metadata. No-op for a free slot."""
        info = self._active.pop(index, None)
        if info is None:
            self._reserved.discard(index)
            return

        result = self.git(["worktree", "remove", str(info.path), "--force"], self.repo_path)
        if not result.success:
            logger.warning(f"[WORKTREE] git worktree remove failed for {info.path}: {result.stderr.strip()}")
            shutil.rmtree(info.path, ignore_errors=True)
        prune = self.git(["worktree", "prune"], self.repo_path)
        if not prune.success:
            logger.warning(f"[WORKTREE] git worktree prune failed: {prune.stderr.strip()}")

        self._reserved.discard(index)
        logger.info(f"[WORKTREE] Released slot {index}")

    def release_all(self) -> None:
        for index in list(self._active):
            self.release(index)
        self._reserved.clear()
