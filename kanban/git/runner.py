"""Git command runner.

Worktree code takes the runner as an injected callable (`GitExec`) so tests
can substitute a fake that records commands instead of touching a repo.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

DEFAULT_TIMEOUT = 60


@dataclass
class GitResult:
    """Result of a git command."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


GitExec = Callable[[list[str], Path], GitResult]


class GitError(Exception):
    """A git command that had to succeed failed."""

    def __init__(self, args: list[str], result: GitResult):
        self.args_run = args
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(f"git {' '.join(args)} failed: {detail}")


def run_git(
    args: list[str],
    cwd: Path,
    timeout: int = DEFAULT_TIMEOUT,
) -> GitResult:
    """
    Run a git command with timeout handling.

    Args:
        args: Git command arguments (e.g., ["worktree", "prune"])
        cwd: Repository directory for the command
        timeout: Timeout in seconds

    Returns:
        GitResult with returncode, stdout, stderr, and timed_out flag
    """
    cmd = ["git", "-C", str(cwd)] + args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return GitResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )
    except OSError as e:
        # git binary missing or cwd gone
        return GitResult(returncode=-1, stdout="", stderr=str(e))
    return GitResult(
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )


def check_git(git: GitExec, args: list[str], cwd: Path) -> GitResult:
    """Run through an injected GitExec and raise GitError unless it succeeded."""
    result = git(args, cwd)
    if not result.success:
        raise GitError(args, result)
    return result
