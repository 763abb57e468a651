"""
Scheduled jobs that watch the world outside the repo.

mr_comment_poll
    Looks at the PRs of stages sitting in PR Created. A merged PR moves the
    stage to Done; more unresolved review threads than the last poll saw
    move it to Addressing Comments. The first poll of a stage only records a
    baseline count. The same job then walks draft stages whose parent PRs in
    a merge chain have merged: the child PR is retargeted and, once every
    parent is in, taken out of draft.

insights_threshold
    Counts unanalyzed learnings and starts a meta-insights session when the
    count passes WORKFLOW_LEARNINGS_THRESHOLD, at most once per cooldown.

Both jobs log and carry on when a single stage or command fails.
"""

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from kanban.lib.constants import (
    ADDRESSING_COMMENTS_STATUS,
    DONE_TARGET,
    PR_CREATED_STATUS,
    SOFT_RESOLVE_STATUSES,
)
from kanban.lib.frontmatter import MetadataError, read_frontmatter, write_frontmatter
from kanban.lib.github import CodeHostError
from kanban.lib.pipeline import PipelineConfig
from kanban.runner.exit_gates import ExitGateRunner
from kanban.runner.resolvers import CodeHost
from kanban.store.db import KanbanStore, StageRecord, now_iso
from kanban.workflow.fsm import PipelineFSM

logger = logging.getLogger(__name__)

MR_COMMENT_POLL_JOB = "mr_comment_poll"
INSIGHTS_THRESHOLD_JOB = "insights_threshold"

MAX_STAGES_PER_CYCLE = 20
DEFAULT_BASE_BRANCH = "main"

LEARNINGS_THRESHOLD_KEY = "WORKFLOW_LEARNINGS_THRESHOLD"
DEFAULT_LEARNINGS_THRESHOLD = 10
COUNT_SCRIPT = Path("skills") / "meta-insights" / "scripts" / "count-unanalyzed.sh"
COUNT_TIMEOUT_SECONDS = 30
INSIGHTS_SKILL = "meta-insights"

ACTION_FIRST_POLL = "first_poll"
ACTION_NEW_COMMENTS = "new_comments"
ACTION_MERGED = "merged"
ACTION_NO_CHANGE = "no_change"
ACTION_ERROR = "error"


class ChainCodeHost(CodeHost, Protocol):
    def edit_pr_base(self, pr_url: str, new_base: str) -> None: ...
    def mark_pr_ready(self, pr_url: str) -> None: ...


@dataclass
class MRPollResult:
    stage_id: str
    pr_url: str
    action: str
    unresolved_count: int | None = None
    previous_count: int | None = None


class MRCommentPoller:
    """Moves PR Created stages on merge or new review threads."""

    def __init__(
        self,
        store: KanbanStore,
        pipeline: PipelineConfig,
        exit_gates: ExitGateRunner,
        code_host: CodeHost | None,
        max_stages_per_cycle: int = MAX_STAGES_PER_CYCLE,
        clock: Callable[[], str] = now_iso,
    ):
        self.store = store
        self.exit_gates = exit_gates
        self.code_host = code_host
        self.max_stages_per_cycle = max_stages_per_cycle
        self.clock = clock
        self.fsm = PipelineFSM(pipeline)

    async def poll(self, repo_path: Path) -> list[MRPollResult]:
        results: list[MRPollResult] = []
        if self.code_host is None:
            logger.warning("[CRON] No code host available, skipping MR comment poll")
            return results

        repo_path = Path(repo_path).resolve()
        repo = await asyncio.to_thread(self.store.find_repo_by_path, repo_path)
        if repo is None:
            logger.info(f"[CRON] {repo_path} has not been synced yet, skipping MR comment poll")
            return results

        stages = await asyncio.to_thread(
            self.store.list_stages_by_status, repo.id, [PR_CREATED_STATUS], self.max_stages_per_cycle,
        )
        for stage in stages:
            if stage.session_active:
                continue
            if not stage.pr_url:
                logger.warning(f"[CRON] {stage.id}: in {PR_CREATED_STATUS} without a pr_url")
                continue
            try:
                results.append(await self._poll_stage(repo_path, stage))
            except Exception as e:
                logger.error(f"[CRON] {stage.id}: MR comment poll failed: {e}")
                results.append(MRPollResult(stage.id, stage.pr_url, ACTION_ERROR))
        return results

    async def _poll_stage(self, repo_path: Path, stage: StageRecord) -> MRPollResult:
        status = await asyncio.to_thread(self.code_host.get_pr_status, stage.pr_url)
        if status.state in ("error", "unknown"):
            return MRPollResult(stage.id, stage.pr_url, ACTION_ERROR)
        count = status.unresolved_thread_count

        if status.merged:
            logger.info(f"[CRON] {stage.id}: PR merged ({stage.pr_url})")
            if await self._transition(repo_path, stage, DONE_TARGET) is None:
                return MRPollResult(stage.id, stage.pr_url, ACTION_ERROR)
            await self._track(stage, count)
            return MRPollResult(stage.id, stage.pr_url, ACTION_MERGED, unresolved_count=count)

        tracking = await asyncio.to_thread(self.store.get_comment_tracking, stage.repo_id, stage.id)
        if tracking is None:
            logger.info(f"[CRON] {stage.id}: first poll, {count} unresolved thread(s)")
            await self._track(stage, count)
            return MRPollResult(stage.id, stage.pr_url, ACTION_FIRST_POLL, unresolved_count=count)

        previous = tracking.last_known_unresolved_count
        if count > previous:
            logger.info(f"[CRON] {stage.id}: unresolved threads {previous} -> {count}")
            # Tracking stays put on failure so the next poll tries again
            if await self._transition(repo_path, stage, ADDRESSING_COMMENTS_STATUS) is None:
                return MRPollResult(stage.id, stage.pr_url, ACTION_ERROR)
            await self._track(stage, count)
            return MRPollResult(stage.id, stage.pr_url, ACTION_NEW_COMMENTS,
                                unresolved_count=count, previous_count=previous)

        await self._track(stage, count)
        return MRPollResult(stage.id, stage.pr_url, ACTION_NO_CHANGE,
                            unresolved_count=count, previous_count=previous)

    async def _track(self, stage: StageRecord, count: int) -> None:
        await asyncio.to_thread(self.store.upsert_comment_tracking, stage.repo_id, stage.id, self.clock(), count)

    async def _transition(self, repo_path: Path, stage: StageRecord, target: str) -> str | None:
        """Write the new status and run the exit gate. None if nothing was written."""
        stage_file = Path(stage.file_path)
        try:
            fm = await asyncio.to_thread(read_frontmatter, stage_file)
        except MetadataError as e:
            logger.error(f"[CRON] {stage.id}: cannot read stage file: {e}")
            return None

        current = fm.data.get("status")
        if fm.data.get("session_active") is True or current != PR_CREATED_STATUS:
            logger.info(f"[CRON] {stage.id}: changed since last sync (status={current}), leaving it")
            return None

        new_status = self.fsm.resolve_transition_target(current, target)
        if new_status is None:
            logger.warning(f"[CRON] {stage.id}: '{target}' is not a valid transition from '{current}'")
            return None

        fm.data["status"] = new_status
        try:
            await asyncio.to_thread(write_frontmatter, stage_file, fm.data, fm.content)
        except OSError as e:
            logger.error(f"[CRON] {stage.id}: failed to write status {new_status}: {e}")
            return None
        logger.info(f"[CRON] {stage.id}: {current} -> {new_status}")

        try:
            await asyncio.to_thread(self.exit_gates.run, stage.id, stage_file, repo_path, current, new_status)
        except Exception as e:
            logger.error(f"[CRON] {stage.id}: exit gate failed: {e}")
        return new_status


@dataclass
class ChainCheckResult:
    child_stage_id: str
    merged_parents: list[str] = field(default_factory=list)
    remaining_parents: list[str] = field(default_factory=list)
    retargeted_to: str | None = None
    promoted: bool = False


class MRChainManager:
    """Retargets and un-drafts child PRs as their parent PRs merge.

    With more than one parent still open nothing changes. With exactly one
    left the child PR is pointed at that parent's branch. With none left it
    is pointed at the base branch and marked ready for review.
    """

    def __init__(self, store: KanbanStore, code_host: ChainCodeHost | None,
                 base_branch: str = DEFAULT_BASE_BRANCH):
        self.store = store
        self.code_host = code_host
        self.base_branch = base_branch

    async def check_parent_chains(self, repo_path: Path) -> list[ChainCheckResult]:
        results: list[ChainCheckResult] = []
        if self.code_host is None:
            logger.warning("[CRON] No code host available, skipping parent chain checks")
            return results

        repo_path = Path(repo_path).resolve()
        repo = await asyncio.to_thread(self.store.find_repo_by_path, repo_path)
        if repo is None:
            return results

        stages = await asyncio.to_thread(self.store.list_stages_by_status, repo.id, list(SOFT_RESOLVE_STATUSES))
        for stage in stages:
            if not stage.pending_merge_parents or stage.session_active:
                continue
            try:
                results.append(await self._check_child(stage))
            except Exception as e:
                logger.error(f"[CRON] {stage.id}: parent chain check failed: {e}")
        return results

    async def _check_child(self, stage: StageRecord) -> ChainCheckResult:
        merged, remaining = [], []
        for parent in stage.pending_merge_parents:
            pr_url = parent.get("pr_url")
            status = await asyncio.to_thread(self.code_host.get_pr_status, pr_url) if pr_url else None
            if status is not None and status.merged:
                merged.append(parent)
            else:
                remaining.append(parent)

        result = ChainCheckResult(
            child_stage_id=stage.id,
            merged_parents=[p.get("stage_id") for p in merged],
            remaining_parents=[p.get("stage_id") for p in remaining],
        )
        if not merged:
            return result
        logger.info(f"[CRON] {stage.id}: parent PR(s) merged: {', '.join(result.merged_parents)}")

        new_base = None
        if stage.pr_url and len(remaining) <= 1:
            new_base = remaining[0]["branch"] if remaining else self.base_branch

        if new_base is not None:
            try:
                await asyncio.to_thread(self.code_host.edit_pr_base, stage.pr_url, new_base)
                result.retargeted_to = new_base
                logger.info(f"[CRON] {stage.id}: retargeted PR to {new_base}")
                if not remaining:
                    await asyncio.to_thread(self.code_host.mark_pr_ready, stage.pr_url)
                    result.promoted = True
                    logger.info(f"[CRON] {stage.id}: PR marked ready for review")
            except CodeHostError as e:
                # Frontmatter is left alone so the next poll retries
                logger.error(f"[CRON] {stage.id}: {e}")
                return result

        await asyncio.to_thread(self._record, stage, remaining, new_base)
        return result

    @staticmethod
    def _record(stage: StageRecord, remaining: list[dict], new_base: str | None) -> None:
        fm = read_frontmatter(stage.file_path)
        fm.data["pending_merge_parents"] = remaining
        fm.data["is_draft"] = bool(remaining)
        if new_base is not None:
            fm.data["mr_target_branch"] = new_base
        write_frontmatter(stage.file_path, fm.data, fm.content)


def learnings_threshold(pipeline: PipelineConfig, workflow_env: dict[str, str]) -> int:
    """WORKFLOW_LEARNINGS_THRESHOLD from the environment, else pipeline defaults, else 10."""
    raw = workflow_env.get(LEARNINGS_THRESHOLD_KEY, pipeline.defaults.get(LEARNINGS_THRESHOLD_KEY))
    if raw is None:
        return DEFAULT_LEARNINGS_THRESHOLD
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning(f"[CRON] {LEARNINGS_THRESHOLD_KEY}={raw!r} is not an integer, using {DEFAULT_LEARNINGS_THRESHOLD}")
        return DEFAULT_LEARNINGS_THRESHOLD


def count_unanalyzed_learnings(repo_path: Path, run=subprocess.run) -> int:
    """Number of non-blank lines printed by the repo's count-unanalyzed.sh.

    Raises:
        RuntimeError: The script exited non-zero.
        OSError, subprocess.SubprocessError: The script could not be run.
    """
    result = run(
        ["bash", str(COUNT_SCRIPT)],
        cwd=str(repo_path),
        capture_output=True,
        text=True,
        timeout=COUNT_TIMEOUT_SECONDS,
    )
    if result.returncode != 0:
        raise RuntimeError(f"{COUNT_SCRIPT} exited {result.returncode}: {result.stderr.strip()}")
    return sum(1 for line in result.stdout.splitlines() if line.strip())


class InsightsThresholdChecker:
    """Starts a meta-insights session when learnings pile up.

    The cooldown starts when a spawn is attempted, failed or not.
    """

    def __init__(
        self,
        threshold: int,
        spawn_session: Callable[[Path], Awaitable[None]],
        cooldown_seconds: float,
        count_learnings: Callable[[Path], int] = count_unanalyzed_learnings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.spawn_session = spawn_session
        self.cooldown_seconds = cooldown_seconds
        self.count_learnings = count_learnings
        self.clock = clock
        self._last_triggered: float | None = None

    async def check(self, repo_path: Path) -> bool:
        """True if a session was spawned (or its spawn attempted)."""
        try:
            count = await asyncio.to_thread(self.count_learnings, repo_path)
        except Exception as e:
            logger.error(f"[CRON] Failed to count learnings in {repo_path}: {e}")
            return False

        if count <= self.threshold:
            logger.info(f"[CRON] Learnings {count} within threshold {self.threshold}")
            return False

        if self._last_triggered is not None and self.clock() - self._last_triggered < self.cooldown_seconds:
            logger.info(f"[CRON] Learnings {count} over threshold {self.threshold}, cooldown active")
            return False

        logger.info(f"[CRON] Learnings {count} over threshold {self.threshold}, starting {INSIGHTS_SKILL} session")
        try:
            await self.spawn_session(Path(repo_path))
        except Exception as e:
            logger.error(f"[CRON] Failed to start {INSIGHTS_SKILL} session: {e}")
        self._last_triggered = self.clock()
        return True
