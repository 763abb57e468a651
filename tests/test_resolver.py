"""Tests for kanban.sync.resolver."""

from pathlib import Path

from kanban.store.db import StageRecord, now_iso
from kanban.sync.items import Stage, Ticket
from kanban.sync.resolver import DependencyResolver


def _stage(stage_id, ticket="TICKET-1", status="Not Started"):
    return Stage(id=stage_id, ticket=ticket, epic="EPIC-1", title=stage_id, status=status,
                 file_path=Path(f"/r/{stage_id}.md"))


def _ticket(ticket_id, epic="EPIC-1"):
    return Ticket(id=ticket_id, epic=epic, title=ticket_id, status="Not Started",
                  file_path=Path(f"/r/{ticket_id}.md"))


def _store_stage(store, repo_id, stage_id, status, ticket="TICKET-9", **extra):
    store.upsert_stage(StageRecord(
        id=stage_id, repo_id=repo_id, ticket_id=ticket, epic_id="EPIC-9", title=stage_id,
        status=status, kanban_column="x", file_path=f"/other/{stage_id}.md", **extra,
    ), now_iso())


class TestLocalResolution:
    """Hard resolution against items parsed in this sync."""

    def test_stage_resolved_iff_complete(self):
        resolver = DependencyResolver("app", [], [_stage("STAGE-1", status="Complete"), _stage("STAGE-2")])
        assert resolver.is_resolved("STAGE-1")
        assert not resolver.is_resolved("STAGE-2")
        assert not resolver.is_resolved("STAGE-404")

    def test_ticket_needs_all_stages_complete(self):
        stages = [_stage("STAGE-1", status="Complete"), _stage("STAGE-2", status="Build")]
        resolver = DependencyResolver("app", [_ticket("TICKET-1")], stages)
        assert not resolver.is_resolved("TICKET-1")

        stages[1].status = "Complete"
        assert DependencyResolver("app", [_ticket("TICKET-1")], stages).is_resolved("TICKET-1")

    def test_ticket_without_stages_unresolved(self):
        resolver = DependencyResolver("app", [_ticket("TICKET-1")], [])
        assert not resolver.is_resolved("TICKET-1")

    def test_epic_needs_every_ticket_done(self):
        tickets = [_ticket("TICKET-1"), _ticket("TICKET-2")]
        stages = [_stage("STAGE-1", ticket="TICKET-1", status="Complete")]
        resolver = DependencyResolver("app", tickets, stages)
        # TICKET-2 has no stages yet
        assert not resolver.is_resolved("EPIC-1")

        stages.append(_stage("STAGE-2", ticket="TICKET-2", status="Complete"))
        assert DependencyResolver("app", tickets, stages).is_resolved("EPIC-1")

    def test_epic_without_tickets_unresolved(self):
        assert not DependencyResolver("app", [], []).is_resolved("EPIC-1")

    def test_ref_naming_own_repo_is_local(self):
        resolver = DependencyResolver("app", [], [_stage("STAGE-1", status="Complete")])
        assert resolver.is_resolved("app/STAGE-1")


class TestCrossRepoResolution:
    """Resolution against other repos' synced rows."""

    def test_unknown_repo_unresolved(self, store):
        resolver = DependencyResolver("app", [], [], store)
        assert not resolver.is_resolved("nowhere/STAGE-1")
        assert not resolver.is_soft_or_hard_resolved("nowhere/STAGE-1")

    def test_no_store_unresolved(self):
        assert not DependencyResolver("app", [], []).is_resolved("backend/STAGE-1")

    def test_complete_stage_resolved(self, store):
        repo_id = store.upsert_repo("/backend", "backend")
        _store_stage(store, repo_id, "STAGE-1", "Complete")
        assert DependencyResolver("app", [], [], store).is_resolved("backend/STAGE-1")

    def test_cross_repo_ticket(self, store):
        repo_id = store.upsert_repo("/backend", "backend")
        _store_stage(store, repo_id, "STAGE-1", "Complete", ticket="TICKET-9")
        _store_stage(store, repo_id, "STAGE-2", "Build", ticket="TICKET-9")
        assert not DependencyResolver("app", [], [], store).is_resolved("backend/TICKET-9")


class TestSoftResolution:
    """PR Created / Addressing Comments unblock cross-repo stage edges only."""

    def test_pr_created_is_soft_not_hard(self, store):
        repo_id = store.upsert_repo("/backend", "backend")
        _store_stage(store, repo_id, "STAGE-1", "PR Created")
        resolver = DependencyResolver("app", [], [], store)
        assert not resolver.is_resolved("backend/STAGE-1")
        assert resolver.is_soft_resolved("backend/STAGE-1")
        assert resolver.is_soft_or_hard_resolved("backend/STAGE-1")

    def test_addressing_comments_is_soft(self, store):
        repo_id = store.upsert_repo("/backend", "backend")
        _store_stage(store, repo_id, "STAGE-1", "Addressing Comments")
        assert DependencyResolver("app", [], [], store).is_soft_resolved("backend/STAGE-1")

    def test_other_phases_not_soft(self, store):
        repo_id = store.upsert_repo("/backend", "backend")
        _store_stage(store, repo_id, "STAGE-1", "Build")
        assert not DependencyResolver("app", [], [], store).is_soft_resolved("backend/STAGE-1")

    def test_local_pr_created_not_soft(self):
        resolver = DependencyResolver("app", [], [_stage("STAGE-1", status="PR Created")])
        assert not resolver.is_soft_or_hard_resolved("STAGE-1")

    def test_soft_parent_returns_stored_row(self, store):
        repo_id = store.upsert_repo("/backend", "backend")
        _store_stage(store, repo_id, "STAGE-1", "PR Created", worktree_branch="feat/x",
                     pr_url="https://github.com/o/r/pull/7", pr_number=7)
        parent = DependencyResolver("app", [], [], store).soft_parent("backend/STAGE-1")
        assert parent.worktree_branch == "feat/x"
        assert parent.pr_number == 7
