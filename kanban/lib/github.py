"""
GitHub code host adapter.

Queries pull request state through the gh CLI so the pr-status resolver and
the MR comment poll can tell whether a stage's PR merged or picked up review
threads, and retargets or un-drafts PRs in a merge chain.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

PR_URL_RE = re.compile(r"github\.com/([^/]+)/([^/]+)/pull/(\d+)")


@dataclass
class PRStatus:
    """Pull request state as seen by the resolver."""
    merged: bool
    has_unresolved_comments: bool
    state: str  # "open", "closed", "merged", "unknown" or "error"
    unresolved_thread_count: int = 0


def parse_github_pr_url(url: str) -> tuple[str, str, int] | None:
    """(owner, repo, number) from a PR URL, trailing path segments allowed."""
    match = PR_URL_RE.search(url)
    if match is None:
        return None
    return match.group(1), match.group(2), int(match.group(3))


def check_gh_cli() -> bool:
    """Check if gh CLI is available and authenticated."""
    try:
        result = subprocess.run(
            ["gh", "auth", "status"],
            capture_output=True,
            text=True,
            timeout=GH_TIMEOUT_SECONDS,
        )
        return result.returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False


class CodeHostError(Exception):
    """A gh command that changes a PR failed."""
    pass


class GitHubCodeHost:
    """PR lookups and edits via the gh CLI."""

    def __init__(self, run=subprocess.run):
        self.run = run

    def get_pr_status(self, pr_url: str) -> PRStatus:
        """
        Status of the PR at pr_url.

        Never raises: an unparseable URL gives state "unknown", a gh failure
        or unexpected output gives state "error". Both count as not merged
        with no comments.
        """
        parsed = parse_github_pr_url(pr_url)
        if parsed is None:
            return PRStatus(merged=False, has_unresolved_comments=False, state="unknown")
        owner, repo, number = parsed

        try:
            result = self.run(
                ["gh", "pr", "view", str(number),
                 "--repo", f"{owner}/{repo}",
                 "--json", "state,mergedAt,reviewDecision,reviewThreads"],
                capture_output=True,
                text=True,
                timeout=GH_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"gh pr view failed for {pr_url}: {e}")
            return PRStatus(merged=False, has_unresolved_comments=False, state="error")

        if result.returncode != 0:
            logger.warning(f"gh pr view failed for {pr_url}: {result.stderr.strip()}")
            return PRStatus(merged=False, has_unresolved_comments=False, state="error")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable gh output for {pr_url}: {e}")
            return PRStatus(merged=False, has_unresolved_comments=False, state="error")

        if not isinstance(data, dict):
            logger.warning(f"Unexpected gh output for {pr_url}: expected an object, got {type(data).__name__}")
            return PRStatus(merged=False, has_unresolved_comments=False, state="error")

        state = str(data.get("state") or "").lower()
        # Older gh releases don't know reviewThreads
        threads = data.get("reviewThreads") or []
        unresolved = sum(1 for t in threads if isinstance(t, dict) and not t.get("isResolved"))
        return PRStatus(
            merged=state == "merged" or data.get("mergedAt") is not None,
            has_unresolved_comments=data.get("reviewDecision") == "CHANGES_REQUESTED",
            state=state,
            unresolved_thread_count=unresolved,
        )

    def edit_pr_base(self, pr_url: str, new_base: str) -> None:
        """Point the PR at new_base.

        Raises:
            CodeHostError: Bad URL or gh failed.
        """
        self._edit(pr_url, ["edit", "--base", new_base])

    def mark_pr_ready(self, pr_url: str) -> None:
        """Take the PR out of draft.

        Raises:
            CodeHostError: Bad URL or gh failed.
        """
        self._edit(pr_url, ["ready"])

    def _edit(self, pr_url: str, args: list[str]) -> None:
        parsed = parse_github_pr_url(pr_url)
        if parsed is None:
            raise CodeHostError(f"Not a GitHub PR URL: {pr_url}")
        owner, repo, number = parsed
        cmd = ["gh", "pr", args[0], str(number), "--repo", f"{owner}/{repo}", *args[1:]]
        try:
            result = self.run(cmd, capture_output=True, text=True, timeout=GH_TIMEOUT_SECONDS)
        except (OSError, subprocess.SubprocessError) as e:
            raise CodeHostError(f"gh pr {args[0]} failed for {pr_url}: {e}") from e
        if result.returncode != 0:
            raise CodeHostError(f"gh pr {args[0]} failed for {pr_url}: {result.stderr.strip()}")
