"""
Session execution: one `claude -p` child process per stage.

The prompt goes to stdin, stdout and stderr are streamed into the session
log, and the coroutine resolves once the process exits. There is no
timeout; long sessions are expected. Shutdown uses kill_all().
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from kanban.lib.logs import SessionLog

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ("claude", "-p")
SHARED_CONTEXT_SKILL = "ticket-stage-workflow"

OUTCOME_CRASHED = "crashed"
OUTCOME_NO_CHANGE = "no_change"
OUTCOME_COMPLETED = "completed"


@dataclass
class SessionOptions:
    stage_id: str
    stage_file: Path
    worktree_path: Path
    worktree_index: int
    skill_name: str
    model: str
    workflow_env: dict[str, str] = field(default_factory=dict)


@dataclass
class SessionResult:
    exit_code: int
    duration_ms: int


def assemble_prompt(options: SessionOptions) -> str:
    """Prompt telling the session which stage to work on and which skills to load."""
    lines = [
        f"You are working on stage {options.stage_id}.",
        "",
        f"Stage file: {options.stage_file}",
        f"Worktree path: {options.worktree_path}",
        f"Worktree index: {options.worktree_index}",
        "",
        f"Invoke the `{SHARED_CONTEXT_SKILL}` skill to load shared context.",
        f"Then invoke the `{options.skill_name}` skill to begin work on this stage.",
        "",
        "Environment configuration:",
    ]
    for key in sorted(options.workflow_env):
        lines.append(f"- {key}={options.workflow_env[key]}")
    return "\n".join(lines)


def classify_outcome(exit_code: int, status_before: str, status_after: str) -> str:
    """How a finished session went, judged by exit code and stage status.

    A changed status counts as completed even on a non-zero exit: the session
    got far enough to move the stage.
    """
    if status_after != status_before:
        return OUTCOME_COMPLETED
    if exit_code != 0:
        return OUTCOME_CRASHED
    return OUTCOME_NO_CHANGE


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class SessionExecutor:
    """Spawns and tracks session subprocesses."""

    def __init__(self, command: tuple[str, ...] = DEFAULT_COMMAND, clock: Callable[[], int] = _monotonic_ms):
        self.command = tuple(command)
        self.clock = clock
        self._active: dict[int, asyncio.subprocess.Process] = {}

    def build_command(self, model: str) -> list[str]:
        return [*self.command, "--model", model]

    def build_env(self, options: SessionOptions) -> dict[str, str]:
        env = os.environ.copy()
        env["WORKTREE_INDEX"] = str(options.worktree_index)
        env.update(options.workflow_env)
        return env

    async def spawn(self, options: SessionOptions, session_log: SessionLog) -> SessionResult:
        """Run one session to completion.

        Never raises for process failures: a spawn error or a signal-killed
        process both come back as exit code 1.
        """
        prompt = assemble_prompt(options)
        started = self.clock()

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(options.model),
                cwd=str(options.worktree_path),
                env=self.build_env(options),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[SESSION] Failed to spawn session for {options.stage_id}: {e}")
            session_log.write(f"spawn failed: {e}\n")
            return SessionResult(exit_code=1, duration_ms=self.clock() - started)

        self._active[process.pid] = process
        logger.info(f"[SESSION] Started {options.stage_id} pid={process.pid} worktree={options.worktree_index}")

        try:
            await self._feed_stdin(process, prompt)
            await asyncio.gather(
                self._pump(process.stdout, session_log),
                self._pump(process.stderr, session_log),
            )
            returncode = await process.wait()
        finally:
            self._active.pop(process.pid, None)

        # Negative return codes mean the process died from a signal
        exit_code = returncode if returncode is not None and returncode >= 0 else 1
        duration_ms = self.clock() - started
        logger.info(f"[SESSION] Exited {options.stage_id} exit_code={exit_code} duration_ms={duration_ms}")
        return SessionResult(exit_code=exit_code, duration_ms=duration_ms)

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"[SESSION] pid={process.pid} closed stdin early: {e}")
        finally:
            process.stdin.close()

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, session_log: SessionLog) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            session_log.write_bytes(chunk)

    def kill_all(self, sig: int = signal.SIGTERM) -> int:
        """Signal every live session. Returns how many were signalled."""
        sent = 0
        for pid, process in list(self._active.items()):
            try:
                process.send_signal(sig)
                sent += 1
            except ProcessLookupError:
                self._active.pop(pid, None)
        if sent:
            logger.warning(f"[SESSION] Sent signal {sig} to {sent} session(s)")
        return sent

    def active_count(self) -> int:
        return len(self._active)
