"""Tests for the kanban CLI."""

import json
from unittest.mock import patch

import pytest

from kanban.cli import main, select_code_host
from kanban.lib.config import load_orchestrator_config
from kanban.lib.github import GitHubCodeHost


@pytest.fixture(autouse=True)
def no_global_config(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def repo(make_repo):
    r = make_repo()
    r.epic("EPIC-001")
    r.ticket("TICKET-001-001", "EPIC-001")
    r.stage("STAGE-001-001-001", "TICKET-001-001", "EPIC-001", status="Build")
    r.stage("STAGE-001-001-002", "TICKET-001-001", "EPIC-001", depends_on=["STAGE-001-001-001"])
    return r


class TestSyncCommand:
    def test_prints_counts(self, repo, capsys):
        assert main(["sync", "--repo", str(repo.root)]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out == {"epics": 1, "tickets": 1, "stages": 2, "dependencies": 1, "errors": []}
        assert (repo.root / ".kanban" / "kanban.db").exists()


class TestNextCommand:
    def test_lists_ready_stages(self, repo, capsys):
        assert main(["next", "--repo", str(repo.root)]) == 0
        out = json.loads(capsys.readouterr().out)
        assert [s["id"] for s in out["ready_stages"]] == ["STAGE-001-001-001"]
        assert out["blocked_count"] == 1

    def test_max_zero(self, repo, capsys):
        main(["next", "--repo", str(repo.root), "--max", "0"])
        assert json.loads(capsys.readouterr().out)["ready_stages"] == []


class TestValidatePipelineCommand:
    def test_default_pipeline(self, tmp_path, capsys):
        assert main(["validate-pipeline", "--repo", str(tmp_path)]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["valid"] is True
        assert out["entry_phase"] == "Design"
        assert "PR Created" in out["phases"]

    def test_invalid_pipeline_exits_2(self, tmp_path, capsys):
        (tmp_path / ".kanban-workflow.yaml").write_text("workflow:\n  entry_phase: Nowhere\n")
        with pytest.raises(SystemExit) as exc:
            main(["validate-pipeline", "--repo", str(tmp_path)])
        assert exc.value.code == 2
        assert "Nowhere" in capsys.readouterr().err


class TestRunCommand:
    def test_bad_max_parallel_returns_2(self, tmp_path, capsys):
        assert main(["run", "--repo", str(tmp_path), "--max-parallel", "0"]) == 2
        assert "max_parallel" in capsys.readouterr().err

    def test_runs_orchestrator(self, tmp_path):
        with patch("kanban.cli.asyncio.run") as mock_run:
            assert main(["run", "--repo", str(tmp_path), "--once", "--model", "opus"]) == 0
        mock_run.assert_called_once()
        mock_run.call_args[0][0].close()


class TestSelectCodeHost:
    def _config(self, tmp_path, pipeline, **env):
        return load_orchestrator_config(tmp_path, pipeline=pipeline, environ=env)

    def test_explicit_github(self, tmp_path, pipeline):
        config = self._config(tmp_path, pipeline, WORKFLOW_GIT_PLATFORM="github")
        assert isinstance(select_code_host(config), GitHubCodeHost)

    def test_auto_uses_gh_when_authenticated(self, tmp_path, pipeline):
        config = self._config(tmp_path, pipeline)
        with patch("kanban.cli.check_gh_cli", return_value=True):
            assert isinstance(select_code_host(config), GitHubCodeHost)
        with patch("kanban.cli.check_gh_cli", return_value=False):
            assert select_code_host(config) is None

    def test_other_platform(self, tmp_path, pipeline):
        config = self._config(tmp_path, pipeline, WORKFLOW_GIT_PLATFORM="gitlab")
        assert select_code_host(config) is None
