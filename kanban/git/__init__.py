"""Git operations for the kanban orchestrator.

Return type conventions:
- run_git returns GitResult: caller must check .success before using output.
- check_git raises GitError when the command fails.
- branch_exists returns bool.
- WorktreeManager raises WorktreeError on acquire failure; release never raises
  for git failures, it logs and falls back to deleting the directory.
"""

from kanban.git.runner import (
    GitError,
    GitExec,
    GitResult,
    check_git,
    run_git,
)
from kanban.git.branch import branch_exists
from kanban.git.worktree import (
    IsolationValidationError,
    WorktreeError,
    WorktreeInfo,
    WorktreeManager,
    validate_isolation_strategy,
)

__all__ = [
    # runner
    "GitError",
    "GitExec",
    "GitResult",
    "check_git",
    "run_git",
    # branch
    "branch_exists",
    # worktree
    "IsolationValidationError",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "validate_isolation_strategy",
]
