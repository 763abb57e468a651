"""Git branch operations."""

from pathlib import Path

from kanban.git.runner import GitExec, run_git


def branch_exists(repo: Path, branch: str, git: GitExec = run_git) -> bool:
    """Check if a local branch exists."""
    result = git(["branch", "--list", branch], repo)
    return result.success and bool(result.stdout.strip())