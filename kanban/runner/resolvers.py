"""
Resolver states: pipeline phases advanced by code instead of a session.

A phase with `resolver: <name>` is checked on every orchestrator tick. The
named function looks at the stage (and the outside world, e.g. the PR) and
returns a transition target name, or None to leave the stage where it is.
Targets are checked against the pipeline FSM before anything is written.
"""

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

from kanban.lib.frontmatter import MetadataError, read_frontmatter, write_frontmatter
from kanban.lib.github import PRStatus
from kanban.lib.pipeline import PipelineConfig
from kanban.runner.exit_gates import ExitGateRunner
from kanban.sync.items import discover_stage_files
from kanban.workflow.fsm import PipelineFSM

logger = logging.getLogger(__name__)

PR_STATUS_RESOLVER = "pr-status"


class CodeHost(Protocol):
    def get_pr_status(self, pr_url: str) -> PRStatus: ...


@dataclass
class ResolverContext:
    code_host: CodeHost | None = None
    env: dict[str, str] = field(default_factory=dict)


# Returns a transition target name or None, directly or as an awaitable
ResolverFn = Callable[[dict, ResolverContext], Any]


class ResolverRegistry:
    """Resolver functions by name."""

    def __init__(self):
        self._resolvers: dict[str, ResolverFn] = {}

    def register(self, name: str, fn: ResolverFn) -> None:
        """
        Raises:
            ValueError: name is already registered
        """
        if name in self._resolvers:
            raise ValueError(f'Resolver "{name}" is already registered')
        self._resolvers[name] = fn

    def get(self, name: str) -> ResolverFn | None:
        return self._resolvers.get(name)

    def has(self, name: str) -> bool:
        return name in self._resolvers

    def names(self) -> list[str]:
        return list(self._resolvers)

    async def execute(self, name: str, stage: dict, context: ResolverContext) -> str | None:
        """Run a resolver. Unknown names return None.

        Coroutine functions are awaited on the loop; plain functions may block
        on the code host, so they run in a worker thread.
        """
        fn = self._resolvers.get(name)
        if fn is None:
            return None
        if inspect.iscoroutinefunction(fn):
            return await fn(stage, context)
        result = await asyncio.to_thread(fn, stage, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def pr_status_resolver(stage: dict, context: ResolverContext) -> str | None:
    """Merged PR -> Done, changes requested -> Addressing Comments."""
    pr_url = stage.get("pr_url")
    if context.code_host is None or not pr_url:
        return None
    status = context.code_host.get_pr_status(pr_url)
    if status.merged:
        return "Done"
    if status.has_unresolved_comments:
        return "Addressing Comments"
    return None


def default_registry() -> ResolverRegistry:
    registry = ResolverRegistry()
    registry.register(PR_STATUS_RESOLVER, pr_status_resolver)
    return registry


@dataclass
class ResolverResult:
    stage_id: str
    resolver_name: str
    previous_status: str
    new_status: str | None
    propagated: bool = False


def _stage_input(data: dict) -> dict[str, Any]:
    return {
        "id": data.get("id"),
        "status": data.get("status"),
        "ticket_id": data.get("ticket"),
        "epic_id": data.get("epic"),
        "pr_url": data.get("pr_url"),
        "pr_number": data.get("pr_number"),
        "worktree_branch": data.get("worktree_branch"),
        "refinement_type": data.get("refinement_type") or [],
    }


class ResolverRunner:
    """Checks every unlocked stage sitting in a resolver state."""

    def __init__(
        self,
        pipeline: PipelineConfig,
        registry: ResolverRegistry,
        exit_gates: ExitGateRunner,
        code_host: CodeHost | None = None,
        env: dict[str, str] | None = None,
    ):
        self.pipeline = pipeline
        self.registry = registry
        self.exit_gates = exit_gates
        self.fsm = PipelineFSM(pipeline)
        self.context = ResolverContext(code_host=code_host, env=dict(os.environ) if env is None else env)
        self.resolver_by_status = {s.status: s.resolver for s in pipeline.resolver_states()}

    async def check_all(self, repo_path: Path) -> list[ResolverResult]:
        results: list[ResolverResult] = []
        if not self.resolver_by_status:
            return results

        try:
            stage_files = await asyncio.to_thread(discover_stage_files, repo_path)
        except OSError as e:
            logger.error(f"[RESOLVER] Failed to discover stage files in {repo_path}: {e}")
            return results

        for stage_file in stage_files:
            result = await self._check_stage(Path(repo_path), stage_file)
            if result is not None:
                results.append(result)
        return results

    async def _check_stage(self, repo_path: Path, stage_file: Path) -> ResolverResult | None:
        try:
            fm = await asyncio.to_thread(read_frontmatter, stage_file)
        except MetadataError as e:
            logger.warning(f"[RESOLVER] Failed to read {stage_file}: {e}")
            return None

        stage_id = fm.data.get("id")
        status = fm.data.get("status")
        if not stage_id or not status:
            logger.warning(f"[RESOLVER] {stage_file} has no id or status")
            return None
        if fm.data.get("session_active") is True:
            return None
        resolver_name = self.resolver_by_status.get(status)
        if resolver_name is None:
            return None

        if not self.registry.has(resolver_name):
            logger.warning(f"[RESOLVER] {stage_id}: resolver '{resolver_name}' is not registered")
            return None

        try:
            target = await self.registry.execute(resolver_name, _stage_input(fm.data), self.context)
        except Exception as e:
            logger.error(f"[RESOLVER] {stage_id}: resolver '{resolver_name}' failed: {e}")
            return None

        result = ResolverResult(stage_id, resolver_name, previous_status=status, new_status=None)
        if target is None:
            return result

        new_status = self.fsm.resolve_transition_target(status, target)
        if new_status is None:
            logger.warning(
                f"[RESOLVER] {stage_id}: '{resolver_name}' returned '{target}', "
                f"not a valid transition from '{status}'"
            )
            return result

        fm.data["status"] = new_status
        try:
            await asyncio.to_thread(write_frontmatter, stage_file, fm.data, fm.content)
        except OSError as e:
            logger.error(f"[RESOLVER] {stage_id}: failed to write status {new_status}: {e}")
            return result

        result.new_status = new_status
        logger.info(f"[RESOLVER] {stage_id}: {status} -> {new_status} (resolver={resolver_name})")

        try:
            await asyncio.to_thread(self.exit_gates.run, stage_id, stage_file, repo_path, status, new_status)
            result.propagated = True
        except Exception as e:
            logger.error(f"[RESOLVER] {stage_id}: exit gate failed: {e}")
        return result
