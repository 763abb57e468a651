"""
Graceful shutdown on SIGINT/SIGTERM.

First signal: stop taking work and give running sessions drain_timeout
seconds to finish. Sessions still running after that get SIGTERM, then
SIGKILL after kill_grace seconds. A second signal skips the wait and
sends SIGKILL straight away.
"""

import asyncio
import logging
import signal

from kanban.runner.loop import Orchestrator
from kanban.runner.session import SessionExecutor

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT = 60.0
DEFAULT_KILL_GRACE = 5.0


class GracefulShutdown:
    def __init__(
        self,
        orchestrator: Orchestrator,
        executor: SessionExecutor,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ):
        self.orchestrator = orchestrator
        self.executor = executor
        self.drain_timeout = drain_timeout
        self.kill_grace = kill_grace
        self.task: asyncio.Task | None = None

    def handle_signal(self, signame: str) -> None:
        if self.task is not None:
            logger.warning(f"[LOOP] Received {signame} again, killing sessions now")
            self.executor.kill_all(signal.SIGKILL)
            return
        logger.info(f"[LOOP] Received {signame}, draining active sessions")
        self.task = asyncio.get_running_loop().create_task(self.shutdown())

    async def shutdown(self) -> None:
        await self.orchestrator.stop()

        if not await self.orchestrator.wait_for_workers(self.drain_timeout):
            logger.warning(f"[LOOP] Drain timeout ({self.drain_timeout}s) reached, terminating sessions")
            self.executor.kill_all(signal.SIGTERM)
            if not await self.orchestrator.wait_for_workers(self.kill_grace):
                self.executor.kill_all(signal.SIGKILL)
                await self.orchestrator.wait_for_workers(self.kill_grace)

        await asyncio.to_thread(self.orchestrator.worktrees.release_all)
        logger.info("[LOOP] Shutdown complete")


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    orchestrator: Orchestrator,
    executor: SessionExecutor,
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> GracefulShutdown:
    """Route SIGINT and SIGTERM to a GracefulShutdown. Await its .task before exiting."""
    handler = GracefulShutdown(orchestrator, executor, drain_timeout, kill_grace)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handler.handle_signal, sig.name)
    return handler
