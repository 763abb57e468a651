"""Tests for kanban.runner.session."""

import asyncio
import signal
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from kanban.lib.logs import SessionLog
from kanban.runner.session import (
    OUTCOME_COMPLETED,
    OUTCOME_CRASHED,
    OUTCOME_NO_CHANGE,
    SessionExecutor,
    SessionOptions,
    assemble_prompt,
    classify_outcome,
)

# Echoes the prompt and its environment, then exits with WORKFLOW_EXIT
CHILD_SCRIPT = """
import os, sys
prompt = sys.stdin.read()
print("PROMPT:" + prompt.splitlines()[0])
print("INDEX:" + os.environ["WORKTREE_INDEX"])
print("CWD:" + os.getcwd())
print("ARGS:" + " ".join(sys.argv[1:]))
sys.stderr.write("to stderr\\n")
sys.exit(int(os.environ.get("WORKFLOW_EXIT", "0")))
"""

SLEEP_SCRIPT = "import sys, time; sys.stdin.read(); time.sleep(30)"


def _options(tmp_path, **overrides):
    fields = dict(
        stage_id="STAGE-001-001-001",
        stage_file=Path("/repo/epics/EPIC-001/TICKET-001-001/STAGE-001-001-001.md"),
        worktree_path=tmp_path,
        worktree_index=2,
        skill_name="phase-build",
        model="sonnet",
        workflow_env={"WORKFLOW_REMOTE_MODE": "false", "WORKFLOW_AUTO_DESIGN": "true"},
    )
    fields.update(overrides)
    return SessionOptions(**fields)


class TestAssemblePrompt:
    """Prompt contents."""

    def test_prompt_lines(self, tmp_path):
        prompt = assemble_prompt(_options(tmp_path))
        lines = prompt.splitlines()
        assert lines[0] == "You are working on stage STAGE-001-001-001."
        assert "Stage file: /repo/epics/EPIC-001/TICKET-001-001/STAGE-001-001-001.md" in lines
        assert f"Worktree path: {tmp_path}" in lines
        assert "Worktree index: 2" in lines
        assert "Invoke the `ticket-stage-workflow` skill to load shared context." in lines
        assert "Then invoke the `phase-build` skill to begin work on this stage." in lines

    def test_env_sorted_under_header(self, tmp_path):
        lines = assemble_prompt(_options(tmp_path)).splitlines()
        header = lines.index("Environment configuration:")
        assert lines[header + 1:] == [
            "- WORKFLOW_AUTO_DESIGN=true",
            "- WORKFLOW_REMOTE_MODE=false",
        ]

    def test_empty_env_keeps_header(self, tmp_path):
        prompt = assemble_prompt(_options(tmp_path, workflow_env={}))
        assert prompt.endswith("Environment configuration:")


class TestClassifyOutcome:
    @pytest.mark.parametrize("exit_code,before,after,expected", [
        (0, "Build", "Automatic Testing", OUTCOME_COMPLETED),
        (1, "Build", "Automatic Testing", OUTCOME_COMPLETED),
        (1, "Build", "Build", OUTCOME_CRASHED),
        (0, "Build", "Build", OUTCOME_NO_CHANGE),
    ])
    def test_outcomes(self, exit_code, before, after, expected):
        assert classify_outcome(exit_code, before, after) == expected


class TestSessionExecutor:
    """Real child processes via the current interpreter."""

    def test_build_command_appends_model(self):
        assert SessionExecutor().build_command("opus") == ["claude", "-p", "--model", "opus"]

    def test_build_env(self, tmp_path):
        env = SessionExecutor().build_env(_options(tmp_path))
        assert env["WORKTREE_INDEX"] == "2"
        assert env["WORKFLOW_AUTO_DESIGN"] == "true"

    @pytest.mark.asyncio
    async def test_spawn_streams_output_to_log(self, tmp_path):
        executor = SessionExecutor(command=(sys.executable, "-c", CHILD_SCRIPT))
        log = SessionLog(tmp_path / "logs", "STAGE-001-001-001")
        worktree = tmp_path / "wt"
        worktree.mkdir()

        result = await executor.spawn(_options(tmp_path, worktree_path=worktree), log)
        log.close()

        assert result.exit_code == 0
        assert result.duration_ms >= 0
        text = log.path.read_text()
        assert "PROMPT:You are working on stage STAGE-001-001-001." in text
        assert "INDEX:2" in text
        assert f"CWD:{worktree.resolve()}" in text
        assert "ARGS:--model sonnet" in text
        assert "to stderr" in text
        assert executor.active_count() == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_code(self, tmp_path):
        executor = SessionExecutor(command=(sys.executable, "-c", CHILD_SCRIPT))
        log = SessionLog(tmp_path / "logs", "S")
        options = _options(tmp_path, workflow_env={"WORKFLOW_EXIT": "3"})
        result = await executor.spawn(options, log)
        log.close()
        assert result.exit_code == 3

    @pytest.mark.asyncio
    async def test_spawn_failure_is_exit_one(self, tmp_path):
        executor = SessionExecutor(command=(str(tmp_path / "no-such-binary"),))
        log = SessionLog(tmp_path / "logs", "S")
        result = await executor.spawn(_options(tmp_path), log)
        log.close()
        assert result.exit_code == 1
        assert "spawn failed" in log.path.read_text()

    @pytest.mark.asyncio
    async def test_kill_all_terminates_sessions(self, tmp_path):
        executor = SessionExecutor(command=(sys.executable, "-c", SLEEP_SCRIPT))
        log = SessionLog(tmp_path / "logs", "S")
        task = asyncio.create_task(executor.spawn(_options(tmp_path), log))
        for _ in range(200):
            if executor.active_count():
                break
            await asyncio.sleep(0.01)

        assert executor.kill_all(signal.SIGKILL) == 1
        result = await asyncio.wait_for(task, timeout=10)
        log.close()
        # Signal deaths map to exit code 1
        assert result.exit_code == 1

    def test_kill_all_skips_vanished_process(self):
        executor = SessionExecutor()
        process = MagicMock()
        process.send_signal.side_effect = ProcessLookupError
        executor._active[123] = process
        assert executor.kill_all() == 0
        assert executor.active_count() == 0
