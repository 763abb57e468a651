#!/usr/bin/env python3
"""kanban CLI entrypoint."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from kanban.lib.config import DEFAULT_IDLE_SECONDS, DEFAULT_MODEL, OrchestratorConfig, load_orchestrator_config
from kanban.lib.constants import DEFAULT_DB_PATH
from kanban.lib.github import GitHubCodeHost, check_gh_cli
from kanban.lib.logs import configure_logging
from kanban.lib.pipeline import PipelineConfigError, load_pipeline_config, validate_pipeline
from kanban.runner.discovery import discover
from kanban.runner.loop import Orchestrator
from kanban.runner.session import SessionExecutor
from kanban.runner.shutdown import install_signal_handlers
from kanban.store.db import KanbanStore
from kanban.sync.engine import sync_repo

logger = logging.getLogger(__name__)

GIT_PLATFORM_ENV = "WORKFLOW_GIT_PLATFORM"


def _repo(args) -> Path:
    return Path(args.repo).resolve()


def _open_store(repo_path: Path) -> KanbanStore:
    return KanbanStore(repo_path / DEFAULT_DB_PATH)


def _load_pipeline(repo_path: Path):
    try:
        return load_pipeline_config(repo_path)
    except PipelineConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)


def select_code_host(config: OrchestratorConfig):
    """GitHub adapter when configured (or auto-detected via gh), else None."""
    platform = str(config.workflow_env.get(GIT_PLATFORM_ENV)
                   or config.pipeline.defaults.get(GIT_PLATFORM_ENV, "auto")).lower()
    if platform == "github" or (platform == "auto" and check_gh_cli()):
        return GitHubCodeHost()
    if platform not in ("auto", "github"):
        logger.info(f"No code host adapter for platform '{platform}', PR resolvers will not move stages")
    return None


def cmd_sync(args):
    repo_path = _repo(args)
    pipeline = _load_pipeline(repo_path)
    store = _open_store(repo_path)
    try:
        result = sync_repo(repo_path, store, pipeline)
    finally:
        store.close()
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_next(args):
    repo_path = _repo(args)
    pipeline = _load_pipeline(repo_path)
    store = _open_store(repo_path)
    try:
        sync_repo(repo_path, store, pipeline)
        result = discover(store, repo_path, pipeline, max_candidates=args.max, include_human=args.include_human)
    finally:
        store.close()
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_validate_pipeline(args):
    repo_path = _repo(args)
    pipeline = _load_pipeline(repo_path)
    _, warnings = validate_pipeline(pipeline)
    print(json.dumps({
        "valid": True,
        "entry_phase": pipeline.entry_phase,
        "phases": [p.name for p in pipeline.phases],
        "warnings": warnings,
    }, indent=2))
    return 0


async def _run_orchestrator(config: OrchestratorConfig) -> None:
    store = KanbanStore(config.db_path)
    executor = SessionExecutor()
    orchestrator = Orchestrator(config, store, executor=executor, code_host=select_code_host(config))
    shutdown = install_signal_handlers(asyncio.get_running_loop(), orchestrator, executor)
    try:
        await orchestrator.start()
        if shutdown.task is not None:
            await shutdown.task
    finally:
        store.close()


def cmd_run(args):
    try:
        config = load_orchestrator_config(
            repo_path=_repo(args),
            once=args.once,
            idle_seconds=args.idle_seconds,
            log_dir=args.log_dir,
            model=args.model,
            verbose=args.verbose,
            max_parallel=args.max_parallel,
        )
    except (PipelineConfigError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    logger.info(
        f"Starting orchestrator repo={config.repo_path} max_parallel={config.max_parallel} "
        f"once={config.once} model={config.model}"
    )
    asyncio.run(_run_orchestrator(config))
    logger.info("Orchestrator finished")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog='kanban', description='Kanban workflow orchestrator')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # kanban sync
    p_sync = subparsers.add_parser('sync', help='Sync work item files into the board database')
    p_sync.add_argument('--repo', default='.', help='Target repository (default: cwd)')
    p_sync.set_defaults(func=cmd_sync)

    # kanban next
    p_next = subparsers.add_parser('next', help='Show stages ready for a session')
    p_next.add_argument('--repo', default='.', help='Target repository (default: cwd)')
    p_next.add_argument('--max', type=int, default=None, help='Maximum number of stages to return')
    p_next.add_argument('--include-human', action='store_true', help='Include stages that need a human')
    p_next.set_defaults(func=cmd_next)

    # kanban run
    p_run = subparsers.add_parser('run', help='Run the orchestrator loop')
    p_run.add_argument('--repo', default='.', help='Target repository (default: cwd)')
    p_run.add_argument('--once', action='store_true', help='Exit once idle instead of polling')
    p_run.add_argument('--idle-seconds', type=float, default=DEFAULT_IDLE_SECONDS,
                       help=f'Wait time when nothing is ready (default: {DEFAULT_IDLE_SECONDS})')
    p_run.add_argument('--max-parallel', type=int, default=None, help='Maximum concurrent sessions')
    p_run.add_argument('--model', default=DEFAULT_MODEL, help=f'Model for sessions (default: {DEFAULT_MODEL})')
    p_run.add_argument('--log-dir', default=None, help='Session log directory (default: <repo>/.kanban-logs)')
    p_run.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    p_run.set_defaults(func=cmd_run)

    # kanban validate-pipeline
    p_validate = subparsers.add_parser('validate-pipeline', help='Validate the effective pipeline config')
    p_validate.add_argument('--repo', default='.', help='Target repository (default: cwd)')
    p_validate.set_defaults(func=cmd_validate_pipeline)

    args = parser.parse_args(argv)
    configure_logging(getattr(args, "verbose", False))
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
