"""Tests for kanban.sync.engine."""

import logging

from kanban.lib.frontmatter import read_frontmatter, update_frontmatter
from kanban.sync.engine import SyncResult, sync_repo

EPIC = "EPIC-001"
TICKET = "TICKET-001-001"


def _columns(store, repo_root):
    repo = store.find_repo_by_path(repo_root.resolve())
    return {s.id: s.kanban_column for s in store.list_stages(repo.id)}


def _deps(store, repo_root):
    repo = store.find_repo_by_path(repo_root.resolve())
    return store.list_dependencies(repo.id)


class TestSyncRepo:
    """Basic sync behaviour."""

    def test_counts_and_columns(self, make_repo, store, pipeline):
        repo = make_repo()
        repo.epic(EPIC)
        repo.ticket(TICKET, EPIC)
        repo.stage("STAGE-001-001-001", TICKET, EPIC, status="Not Started")
        repo.stage("STAGE-001-001-002", TICKET, EPIC, status="Build")
        repo.stage("STAGE-001-001-003", TICKET, EPIC, status="Complete")

        result = sync_repo(repo.root, store, pipeline)

        assert result.to_dict() == {"epics": 1, "tickets": 1, "stages": 3, "dependencies": 0, "errors": []}
        assert _columns(store, repo.root) == {
            "STAGE-001-001-001": "ready_for_work",
            "STAGE-001-001-002": "build",
            "STAGE-001-001-003": "done",
        }

    def test_idempotent(self, make_repo, store, pipeline):
        """Re-running on unchanged files yields the same rows and edges."""
        repo = make_repo()
        repo.epic(EPIC)
        repo.ticket(TICKET, EPIC)
        repo.stage("STAGE-001-001-001", TICKET, EPIC)
        repo.stage("STAGE-001-001-002", TICKET, EPIC, depends_on=["STAGE-001-001-001"])

        first = sync_repo(repo.root, store, pipeline)
        rows_first = store.list_stages(store.find_repo_by_path(repo.root.resolve()).id)
        deps_first = _deps(store, repo.root)
        second = sync_repo(repo.root, store, pipeline)
        rows_second = store.list_stages(store.find_repo_by_path(repo.root.resolve()).id)

        assert first.to_dict() == second.to_dict()
        assert rows_first == rows_second
        assert _deps(store, repo.root) == deps_first
        assert len(store.list_repos()) == 1
        assert store.count_epics(store.find_repo_by_path(repo.root.resolve()).id) == 1

    def test_malformed_file_reported_and_skipped(self, make_repo, store, pipeline):
        repo = make_repo()
        repo.epic(EPIC)
        good = repo.stage("STAGE-001-001-001", TICKET, EPIC)
        bad = good.parent / "STAGE-001-001-002.md"
        bad.write_text("no frontmatter here\n")

        result = sync_repo(repo.root, store, pipeline)

        assert result.stages == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"{bad.resolve()}: ")
        assert "No frontmatter found" in result.errors[0]

    def test_duplicate_id_reported(self, make_repo, store, pipeline):
        repo = make_repo()
        repo.stage("STAGE-001-001-001", TICKET, EPIC)
        dup = repo.root / "epics" / EPIC / "TICKET-001-002" / "STAGE-001-001-001.md"
        dup.parent.mkdir(parents=True)
        dup.write_text((repo.root / "epics" / EPIC / TICKET / "STAGE-001-001-001.md").read_text())

        result = sync_repo(repo.root, store, pipeline)

        assert result.stages == 1
        assert any("Duplicate id STAGE-001-001-001" in e for e in result.errors)

    def test_ticket_without_stages(self, make_repo, store, pipeline):
        repo = make_repo()
        repo.epic(EPIC)
        repo.ticket(TICKET, EPIC)
        repo.ticket("TICKET-001-002", EPIC)
        repo.stage("STAGE-001-002-001", "TICKET-001-002", EPIC)

        sync_repo(repo.root, store, pipeline)

        repo_id = store.find_repo_by_path(repo.root.resolve()).id
        has_stages = {t.id: t.has_stages for t in store.list_tickets(repo_id)}
        assert has_stages == {TICKET: False, "TICKET-001-002": True}

    def test_unknown_status_goes_to_backlog_with_warning(self, make_repo, store, pipeline, caplog):
        repo = make_repo()
        repo.stage("STAGE-001-001-001", TICKET, EPIC, status="Blocked On Vendor")
        with caplog.at_level(logging.WARNING, logger="kanban"):
            sync_repo(repo.root, store, pipeline)
        assert _columns(store, repo.root) == {"STAGE-001-001-001": "backlog"}
        assert "Blocked On Vendor" in caplog.text

    def test_empty_repo(self, tmp_path, store, pipeline):
        assert sync_repo(tmp_path, store, pipeline) == SyncResult()


class TestDependencyScenario:
    """Stage A depends on stage B in the same repo."""

    def test_a_waits_for_b(self, make_repo, store, pipeline):
        repo = make_repo()
        repo.epic(EPIC)
        repo.ticket(TICKET, EPIC)
        b_path = repo.stage("STAGE-B", TICKET, EPIC, status="Not Started")
        repo.stage("STAGE-A", TICKET, EPIC, status="Not Started", depends_on=["STAGE-B"])

        result = sync_repo(repo.root, store, pipeline)
        assert result.dependencies == 1
        assert _columns(store, repo.root) == {"STAGE-A": "backlog", "STAGE-B": "ready_for_work"}
        [edge] = _deps(store, repo.root)
        assert (edge.from_id, edge.to_id, edge.resolved) == ("STAGE-A", "STAGE-B", False)

        update_frontmatter(b_path, status="Complete")
        sync_repo(repo.root, store, pipeline)

        assert _columns(store, repo.root) == {"STAGE-A": "ready_for_work", "STAGE-B": "done"}
        [edge] = _deps(store, repo.root)
        assert edge.resolved is True

    def test_dependency_on_ticket(self, make_repo, store, pipeline):
        repo = make_repo()
        repo.stage("STAGE-001-001-001", TICKET, EPIC, status="Complete")
        repo.ticket(TICKET, EPIC)
        repo.stage("STAGE-002-001-001", "TICKET-002-001", "EPIC-002", depends_on=[TICKET])

        sync_repo(repo.root, store, pipeline)

        assert _columns(store, repo.root)["STAGE-002-001-001"] == "ready_for_work"
        [edge] = _deps(store, repo.root)
        assert edge.to_type == "ticket"
        assert edge.resolved is True


class TestCrossRepo:
    """Dependencies on stages in another synced repo."""

    def test_unsynced_repo_blocks(self, make_repo, store, pipeline):
        frontend = make_repo("frontend")
        frontend.stage("STAGE-F", TICKET, EPIC, depends_on=["backend/STAGE-B"])

        sync_repo(frontend.root, store, pipeline)

        assert _columns(store, frontend.root) == {"STAGE-F": "backlog"}
        [edge] = _deps(store, frontend.root)
        assert edge.target_repo_name == "backend"
        assert edge.resolved is False

    def test_soft_resolution_records_pending_merge_parent(self, make_repo, store, pipeline):
        backend = make_repo("backend")
        b_path = backend.stage("STAGE-B", TICKET, EPIC, status="PR Created",
                               worktree_branch="feat/api", pr_url="https://github.com/o/backend/pull/12",
                               pr_number=12)
        frontend = make_repo("frontend")
        f_path = frontend.stage("STAGE-F", TICKET, EPIC, depends_on=["backend/STAGE-B"])

        sync_repo(backend.root, store, pipeline)
        sync_repo(frontend.root, store, pipeline)

        # Unblocked for placement, but the edge itself stays unresolved
        assert _columns(store, frontend.root) == {"STAGE-F": "ready_for_work"}
        [edge] = _deps(store, frontend.root)
        assert edge.resolved is False

        data = read_frontmatter(f_path).data
        assert data["is_draft"] is True
        assert data["pending_merge_parents"] == [{
            "stage_id": "STAGE-B",
            "repo": "backend",
            "branch": "feat/api",
            "pr_url": "https://github.com/o/backend/pull/12",
            "pr_number": 12,
        }]
        frontend_id = store.find_repo_by_path(frontend.root.resolve()).id
        assert store.find_stage(frontend_id, "STAGE-F").is_draft is True

        # Parent merges: pending list clears on the next syncs
        update_frontmatter(b_path, status="Complete")
        sync_repo(backend.root, store, pipeline)
        sync_repo(frontend.root, store, pipeline)

        data = read_frontmatter(f_path).data
        assert data["is_draft"] is False
        assert data["pending_merge_parents"] == []
        [edge] = _deps(store, frontend.root)
        assert edge.resolved is True

    def test_unchanged_pending_parents_not_rewritten(self, make_repo, store, pipeline):
        backend = make_repo("backend")
        backend.stage("STAGE-B", TICKET, EPIC, status="Build")
        frontend = make_repo("frontend")
        f_path = frontend.stage("STAGE-F", TICKET, EPIC, depends_on=["backend/STAGE-B"])
        before = f_path.read_text()

        sync_repo(backend.root, store, pipeline)
        sync_repo(frontend.root, store, pipeline)

        assert f_path.read_text() == before
        assert _columns(store, frontend.root) == {"STAGE-F": "backlog"}

    def test_soft_parent_without_pr_details_not_recorded(self, make_repo, store, pipeline):
        backend = make_repo("backend")
        backend.stage("STAGE-B", TICKET, EPIC, status="Addressing Comments")
        frontend = make_repo("frontend")
        f_path = frontend.stage("STAGE-F", TICKET, EPIC, depends_on=["backend/STAGE-B"])
        before = f_path.read_text()

        sync_repo(backend.root, store, pipeline)
        sync_repo(frontend.root, store, pipeline)

        assert _columns(store, frontend.root) == {"STAGE-F": "ready_for_work"}
        assert f_path.read_text() == before
