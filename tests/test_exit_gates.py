"""Tests for kanban.runner.exit_gates."""

from unittest.mock import MagicMock

from kanban.lib.frontmatter import read_frontmatter
from kanban.runner.exit_gates import ExitGateRunner, find_item_file

EPIC = "EPIC-001"
TICKET = "TICKET-001-001"


class TestExitGateRunner:
    """Propagation from stage to ticket to epic."""

    def test_unchanged_status_is_a_no_op(self, make_repo):
        repo = make_repo()
        stage = repo.stage("STAGE-1", TICKET, EPIC, status="Build")
        run_sync = MagicMock()

        result = ExitGateRunner(run_sync).run("STAGE-1", stage, repo.root, "Build", "Build")

        assert not result.status_changed
        assert result.synced
        run_sync.assert_not_called()

    def test_updates_ticket_and_epic(self, make_repo):
        repo = make_repo()
        epic_file = repo.epic(EPIC, status="Not Started", ticket_statuses={"TICKET-001-002": "Not Started"})
        ticket_file = repo.ticket(TICKET, EPIC, stage_statuses={"STAGE-2": "Not Started"})
        stage = repo.stage("STAGE-1", TICKET, EPIC, status="Automatic Testing")
        run_sync = MagicMock()

        result = ExitGateRunner(run_sync).run("STAGE-1", stage, repo.root, "Build", "Automatic Testing")

        assert result.ticket_updated and result.epic_updated
        assert not result.ticket_completed
        ticket = read_frontmatter(ticket_file).data
        assert ticket["stage_statuses"] == {"STAGE-2": "Not Started", "STAGE-1": "Automatic Testing"}
        assert ticket["status"] == "In Progress"
        epic = read_frontmatter(epic_file).data
        assert epic["ticket_statuses"] == {"TICKET-001-002": "Not Started", TICKET: "In Progress"}
        assert epic["status"] == "In Progress"
        run_sync.assert_called_once_with(repo.root)
        assert result.synced

    def test_completion_rolls_up(self, make_repo):
        repo = make_repo()
        epic_file = repo.epic(EPIC)
        repo.ticket(TICKET, EPIC, stage_statuses={"STAGE-2": "Complete"})
        stage = repo.stage("STAGE-1", TICKET, EPIC, status="Complete")

        result = ExitGateRunner(MagicMock()).run("STAGE-1", stage, repo.root, "Finalize", "Complete")

        assert result.ticket_completed
        assert result.epic_completed
        assert read_frontmatter(epic_file).data["status"] == "Complete"

    def test_missing_ticket_still_syncs(self, make_repo, caplog):
        repo = make_repo()
        stage = repo.stage("STAGE-1", TICKET, EPIC, status="Build")
        run_sync = MagicMock()

        result = ExitGateRunner(run_sync).run("STAGE-1", stage, repo.root, "Design", "Build")

        assert not result.ticket_updated
        assert not result.epic_updated
        assert result.synced
        assert "ticket file for" in caplog.text

    def test_ticket_outside_conventional_path(self, make_repo):
        repo = make_repo()
        elsewhere = repo.root / "epics" / "misc" / f"{TICKET}.md"
        elsewhere.parent.mkdir(parents=True)
        elsewhere.write_text(f"---\nid: {TICKET}\nepic: {EPIC}\ntitle: t\nstatus: Not Started\n---\n")
        stage = repo.stage("STAGE-1", TICKET, EPIC, status="Build")

        result = ExitGateRunner(MagicMock()).run("STAGE-1", stage, repo.root, "Design", "Build")

        assert result.ticket_updated
        assert read_frontmatter(elsewhere).data["stage_statuses"] == {"STAGE-1": "Build"}

    def test_sync_retried_once(self, make_repo):
        repo = make_repo()
        stage = repo.stage("STAGE-1", TICKET, EPIC, status="Build")
        run_sync = MagicMock(side_effect=[RuntimeError("db locked"), None])

        result = ExitGateRunner(run_sync).run("STAGE-1", stage, repo.root, "Design", "Build")

        assert run_sync.call_count == 2
        assert result.synced
        assert result.sync_error is None

    def test_sync_failure_reported(self, make_repo):
        repo = make_repo()
        stage = repo.stage("STAGE-1", TICKET, EPIC, status="Build")
        run_sync = MagicMock(side_effect=RuntimeError("db locked"))

        result = ExitGateRunner(run_sync).run("STAGE-1", stage, repo.root, "Design", "Build")

        assert run_sync.call_count == 2
        assert not result.synced
        assert result.sync_error == "db locked"


class TestFindItemFile:
    def test_conventional_path_wins(self, make_repo):
        repo = make_repo()
        path = repo.ticket(TICKET, EPIC)
        assert find_item_file(repo.root, TICKET, path) == path

    def test_missing_everywhere(self, tmp_path):
        assert find_item_file(tmp_path, TICKET, tmp_path / "nope.md") is None
