"""
Orchestrator main loop.

Each tick:
1. Run resolver checks (stages in resolver states such as PR Created).
2. If every worktree slot is busy, wait for a worker to exit.
3. Sync the repo and discover ready stages.
4. For each candidate, in discovery order, until the slots are full:
   lock -> read status -> onboard Not Started -> look up skill ->
   isolation check -> worktree -> session log -> spawn.
5. Idle: nothing spawned and nothing running. Return in once-mode,
   otherwise sleep idle_seconds (woken early by stop or a worker exit).

A failure while starting one candidate releases whatever that candidate
acquired and moves on to the next; it never stops the loop. Every started
session is cleaned up on exit (lock, worktree, session log) whatever the
outcome.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from kanban.git.worktree import (
    IsolationValidationError,
    WorktreeError,
    WorktreeManager,
    validate_isolation_strategy,
)
from kanban.lib.config import OrchestratorConfig
from kanban.lib.constants import NOT_STARTED_STATUS
from kanban.lib.frontmatter import MetadataError
from kanban.lib.logs import SessionLog
from kanban.lib.pipeline import CronJobConfig
from kanban.runner.cron_jobs import (
    INSIGHTS_SKILL,
    INSIGHTS_THRESHOLD_JOB,
    MR_COMMENT_POLL_JOB,
    InsightsThresholdChecker,
    MRChainManager,
    MRCommentPoller,
    learnings_threshold,
)
from kanban.runner.discovery import ReadyStage, discover
from kanban.runner.exit_gates import ExitGateRunner
from kanban.runner.locking import LockConflict, Locker
from kanban.runner.resolvers import CodeHost, ResolverRunner, default_registry
from kanban.runner.scheduler import IntervalScheduler, ScheduledJob
from kanban.runner.session import (
    OUTCOME_COMPLETED,
    OUTCOME_CRASHED,
    SessionExecutor,
    SessionOptions,
    SessionResult,
    classify_outcome,
)
from kanban.store.db import KanbanStore
from kanban.sync.engine import sync_repo

logger = logging.getLogger(__name__)

RESYNC_JOB = "resync"


@dataclass
class WorkerInfo:
    """A running session and what it holds."""
    stage_id: str
    stage_file: Path
    worktree_path: Path
    worktree_index: int
    status_before: str
    started_at: float


def default_branch(stage: ReadyStage) -> str:
    return stage.worktree_branch or f"kanban/{stage.id}"


def candidate_limit(free_slots: int) -> int:
    """How many candidates to ask discovery for. Some get skipped, so over-fetch."""
    return max(free_slots * 3, free_slots + 10)


class Orchestrator:
    """Runs sessions for ready stages, at most max_parallel at a time."""

    def __init__(
        self,
        config: OrchestratorConfig,
        store: KanbanStore,
        locker: Locker | None = None,
        worktrees: WorktreeManager | None = None,
        executor: SessionExecutor | None = None,
        exit_gates: ExitGateRunner | None = None,
        resolver_runner: ResolverRunner | None = None,
        scheduler: IntervalScheduler | None = None,
        code_host: CodeHost | None = None,
        validate_isolation: Callable[[Path], None] = validate_isolation_strategy,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.locker = locker or Locker()
        self.worktrees = worktrees or WorktreeManager(config.repo_path, config.max_parallel)
        self.executor = executor or SessionExecutor()
        self.code_host = code_host
        self.exit_gates = exit_gates or ExitGateRunner(self.sync)
        self.resolver_runner = resolver_runner or ResolverRunner(
            config.pipeline, default_registry(), self.exit_gates,
            code_host=code_host, env=config.workflow_env,
        )
        self.scheduler = scheduler or self._build_scheduler()
        self.validate_isolation = validate_isolation
        self.clock = clock

        self._running = False
        self._wake = asyncio.Event()
        self._workers: dict[int, WorkerInfo] = {}
        self._tasks: set[asyncio.Task] = set()
        self._isolation_ok: bool | None = None

    # -- public --

    def is_running(self) -> bool:
        return self._running

    def active_workers(self) -> dict[int, WorkerInfo]:
        return dict(self._workers)

    def sync(self, repo_path: Path | None = None):
        return sync_repo(repo_path or self.config.repo_path, self.store, self.config.pipeline)

    async def start(self) -> None:
        """
        Run until stop(), or until idle in once-mode.

        Raises:
            RuntimeError: Already running.
        """
        if self._running:
            raise RuntimeError("Orchestrator already running")
        self._running = True
        self._isolation_ok = None
        self._wake.clear()
        logger.info(
            f"[LOOP] Starting repo={self.config.repo_path} max_parallel={self.config.max_parallel} "
            f"once={self.config.once}"
        )

        self.scheduler.start()
        try:
            await self._run()
        finally:
            self._running = False
            self.scheduler.stop()
            logger.info("[LOOP] Stopped")

    async def stop(self) -> None:
        """Stop taking new work. Running sessions are not touched."""
        self._running = False
        self.scheduler.stop()
        self._wake.set()

    async def wait_for_workers(self, timeout: float | None = None) -> bool:
        """Wait until no session is running. False if the timeout hit first."""
        tasks = list(self._tasks)
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    # -- loop --

    async def _run(self) -> None:
        while self._running:
            await self._check_resolvers()

            free = self.config.max_parallel - len(self._workers)
            if free <= 0:
                await self._wait()
                continue

            spawned = await self._fill_slots(free)
            if not self._running:
                break

            if spawned == 0 and not self._workers:
                if self.config.once:
                    break
                logger.debug(f"[LOOP] Idle, sleeping {self.config.idle_seconds}s")
                await self._wait(self.config.idle_seconds)
                continue

            if self.config.once:
                await self.wait_for_workers()
                break

            if spawned == 0:
                await self._wait()

    async def _wait(self, timeout: float | None = None) -> None:
        """Sleep until a worker exits, stop() is called, or timeout."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _check_resolvers(self) -> None:
        try:
            results = await self.resolver_runner.check_all(self.config.repo_path)
        except Exception as e:
            logger.error(f"[LOOP] Resolver check failed: {e}")
            return
        for r in results:
            if r.new_status:
                logger.info(f"[LOOP] Resolver {r.resolver_name} moved {r.stage_id}: {r.previous_status} -> {r.new_status}")

    async def _fill_slots(self, free: int) -> int:
        try:
            await asyncio.to_thread(self.sync)
            result = await asyncio.to_thread(
                discover, self.store, self.config.repo_path, self.config.pipeline, candidate_limit(free),
            )
        except Exception as e:
            logger.error(f"[LOOP] Sync/discovery failed: {e}")
            return 0

        spawned = 0
        for stage in result.ready_stages:
            if not self._running or len(self._workers) >= self.config.max_parallel:
                break
            if await self._try_start(stage):
                spawned += 1
        return spawned

    async def _try_start(self, stage: ReadyStage) -> bool:
        stage_file = Path(stage.file_path)

        try:
            await asyncio.to_thread(self.locker.acquire, stage_file)
        except LockConflict as e:
            logger.info(f"[LOOP] Skipping {stage.id}: {e}")
            return False
        except (MetadataError, OSError) as e:
            logger.warning(f"[LOOP] Skipping {stage.id}: cannot lock: {e}")
            return False

        # Lock held from here on: every skip path must release it
        try:
            status = await asyncio.to_thread(self.locker.read_status, stage_file)
            if status == NOT_STARTED_STATUS:
                status = self.config.pipeline.entry_state().status
                await asyncio.to_thread(self.locker.write_status, stage_file, status)
                logger.info(f"[LOOP] Onboarded {stage.id} to entry phase status '{status}'")
        except (MetadataError, OSError) as e:
            logger.warning(f"[LOOP] Skipping {stage.id}: {e}")
            await self._release_lock(stage.id, stage_file)
            return False

        state = self.config.pipeline.state_by_status(status)
        if state is None or not state.is_skill:
            logger.info(f"[LOOP] Skipping {stage.id}: status '{status}' has no skill")
            await self._release_lock(stage.id, stage_file)
            return False

        if not await self._isolation_valid():
            logger.warning(f"[LOOP] Skipping {stage.id}: worktree isolation strategy is invalid")
            await self._release_lock(stage.id, stage_file)
            return False

        try:
            worktree = await asyncio.to_thread(self.worktrees.acquire, default_branch(stage))
        except WorktreeError as e:
            logger.warning(f"[LOOP] Skipping {stage.id}: {e}")
            await self._release_lock(stage.id, stage_file)
            return False

        try:
            session_log = SessionLog(self.config.log_dir, stage.id)
        except OSError as e:
            logger.warning(f"[LOOP] Skipping {stage.id}: cannot open session log: {e}")
            await asyncio.to_thread(self.worktrees.release, worktree.index)
            await self._release_lock(stage.id, stage_file)
            return False

        worker = WorkerInfo(
            stage_id=stage.id,
            stage_file=stage_file,
            worktree_path=worktree.path,
            worktree_index=worktree.index,
            status_before=status,
            started_at=self.clock(),
        )
        self._workers[worktree.index] = worker

        options = SessionOptions(
            stage_id=stage.id,
            stage_file=stage_file,
            worktree_path=worktree.path,
            worktree_index=worktree.index,
            skill_name=state.skill,
            model=self.config.model,
            workflow_env=self.config.workflow_env,
        )
        task = asyncio.create_task(self._run_session(worker, options, session_log), name=f"session-{stage.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"[LOOP] Spawned {stage.id} skill={state.skill} worktree={worktree.index}")
        return True

    async def _isolation_valid(self) -> bool:
        if self._isolation_ok is None:
            try:
                await asyncio.to_thread(self.validate_isolation, self.config.repo_path)
                self._isolation_ok = True
            except IsolationValidationError as e:
                logger.warning(f"[LOOP] {e}")
                self._isolation_ok = False
        return self._isolation_ok

    async def _release_lock(self, stage_id: str, stage_file: Path) -> None:
        try:
            await asyncio.to_thread(self.locker.release, stage_file)
        except (MetadataError, OSError) as e:
            logger.error(f"[LOOP] Failed to release lock for {stage_id}: {e}")

    # -- session exit --

    async def _run_session(self, worker: WorkerInfo, options: SessionOptions, session_log: SessionLog) -> None:
        try:
            try:
                result = await self.executor.spawn(options, session_log)
            except Exception as e:
                logger.error(f"[LOOP] Session error for {worker.stage_id}: {e}")
                result = SessionResult(exit_code=1, duration_ms=0)
            finally:
                # Unlock before the exit gate so its re-sync sees the stage as free
                await self._release_lock(worker.stage_id, worker.stage_file)
                try:
                    await asyncio.to_thread(self.worktrees.release, worker.worktree_index)
                except Exception as e:
                    logger.error(f"[LOOP] Failed to release worktree {worker.worktree_index}: {e}")
            await self._handle_exit(worker, result)
        finally:
            session_log.close()
            self._workers.pop(worker.worktree_index, None)
            self._wake.set()

    async def _handle_exit(self, worker: WorkerInfo, result: SessionResult) -> None:
        try:
            status_after = await asyncio.to_thread(self.locker.read_status, worker.stage_file)
        except (MetadataError, OSError) as e:
            logger.error(f"[LOOP] {worker.stage_id}: cannot read status after session: {e}")
            return

        outcome = classify_outcome(result.exit_code, worker.status_before, status_after)
        if outcome == OUTCOME_CRASHED:
            logger.error(
                f"[LOOP] Session crashed stage={worker.stage_id} exit_code={result.exit_code} "
                f"status={worker.status_before}"
            )
        elif outcome == OUTCOME_COMPLETED:
            logger.info(
                f"[LOOP] Session completed stage={worker.stage_id} exit_code={result.exit_code} "
                f"{worker.status_before} -> {status_after} duration_ms={result.duration_ms}"
            )
        else:
            logger.info(f"[LOOP] Session completed without status change stage={worker.stage_id}")

        if status_after == worker.status_before:
            return
        try:
            gate = await asyncio.to_thread(
                self.exit_gates.run, worker.stage_id, worker.stage_file, self.config.repo_path,
                worker.status_before, status_after,
            )
        except Exception as e:
            logger.error(f"[LOOP] Exit gate failed for {worker.stage_id}: {e}")
            return
        if gate.ticket_completed:
            logger.info(f"[LOOP] Ticket completed: all stages of {worker.stage_id}'s ticket are done")
        if gate.epic_completed:
            logger.info(f"[LOOP] Epic completed: all tickets of {worker.stage_id}'s epic are done")

    # -- cron --

    def _build_scheduler(self) -> IntervalScheduler:
        jobs = []
        for name, job in self.config.pipeline.cron.items():
            execute = self._cron_job(name, job)
            if execute is None:
                logger.warning(f"[CRON] Unknown job '{name}' in pipeline config, ignoring")
                continue
            jobs.append(ScheduledJob(
                name=name,
                enabled=job.enabled,
                interval_seconds=job.interval_seconds,
                execute=execute,
            ))
        return IntervalScheduler(jobs)

    def _cron_job(self, name: str, job: CronJobConfig) -> Callable[[], Awaitable[None]] | None:
        if name == RESYNC_JOB:
            return self._resync

        if name == MR_COMMENT_POLL_JOB:
            poller = MRCommentPoller(self.store, self.config.pipeline, self.exit_gates, self.code_host)
            chains = MRChainManager(self.store, self.code_host)

            async def mr_comment_poll() -> None:
                await poller.poll(self.config.repo_path)
                await chains.check_parent_chains(self.config.repo_path)
            return mr_comment_poll

        if name == INSIGHTS_THRESHOLD_JOB:
            checker = InsightsThresholdChecker(
                learnings_threshold(self.config.pipeline, self.config.workflow_env),
                self._spawn_insights_session,
                cooldown_seconds=job.interval_seconds,
            )

            async def insights_threshold() -> None:
                await checker.check(self.config.repo_path)
            return insights_threshold

        return None

    async def _resync(self) -> None:
        result = await asyncio.to_thread(self.sync)
        if result.errors:
            logger.warning(f"[CRON] Resync finished with {len(result.errors)} error(s)")

    async def _spawn_insights_session(self, repo_path: Path) -> None:
        """Start a meta-insights session in the repo root. It holds no lock or worktree slot."""
        session_log = SessionLog(self.config.log_dir, INSIGHTS_SKILL)
        options = SessionOptions(
            stage_id=INSIGHTS_SKILL,
            stage_file=Path(""),
            worktree_path=repo_path,
            worktree_index=-1,
            skill_name=INSIGHTS_SKILL,
            model=self.config.model,
            workflow_env=self.config.workflow_env,
        )
        task = asyncio.create_task(self._run_insights_session(options, session_log), name=f"session-{INSIGHTS_SKILL}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_insights_session(self, options: SessionOptions, session_log: SessionLog) -> None:
        try:
            result = await self.executor.spawn(options, session_log)
            logger.info(f"[CRON] {INSIGHTS_SKILL} session exited with code {result.exit_code}")
        except Exception as e:
            logger.error(f"[CRON] {INSIGHTS_SKILL} session failed: {e}")
        finally:
            session_log.close()
