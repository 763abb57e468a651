"""Tests for kanban.sync.items."""

import pytest

from kanban.lib.frontmatter import MetadataError
from kanban.sync.items import (
    Epic,
    Stage,
    Ticket,
    discover_stage_files,
    discover_work_item_files,
    entity_type,
    file_type,
    parse_dependency_ref,
    parse_work_item,
)


class TestParseDependencyRef:
    """Test dependency reference parsing."""

    def test_local_ref(self):
        ref = parse_dependency_ref("STAGE-001-001-001")
        assert ref.item_id == "STAGE-001-001-001"
        assert ref.repo_name is None
        assert not ref.is_cross_repo

    def test_cross_repo_ref(self):
        ref = parse_dependency_ref("backend/TICKET-002-001")
        assert ref.repo_name == "backend"
        assert ref.item_id == "TICKET-002-001"
        assert ref.is_cross_repo
        assert ref.item_type == "ticket"

    def test_splits_on_first_slash_only(self):
        ref = parse_dependency_ref("repo/STAGE/extra")
        assert ref.repo_name == "repo"
        assert ref.item_id == "STAGE/extra"

    @pytest.mark.parametrize("bad", ["/STAGE-1", "repo/", ""])
    def test_empty_parts_rejected(self, bad):
        with pytest.raises(ValueError):
            parse_dependency_ref(bad)


class TestTypes:
    def test_entity_type_from_prefix(self):
        assert entity_type("EPIC-001") == "epic"
        assert entity_type("TICKET-001-002") == "ticket"
        assert entity_type("STAGE-001-002-003") == "stage"
        assert entity_type("anything-else") == "stage"

    def test_file_type_from_name(self, tmp_path):
        assert file_type(tmp_path / "EPIC-001.md") == "epic"
        assert file_type(tmp_path / "STAGE-001-001-001.md") == "stage"
        assert file_type(tmp_path / "README.md") is None
        assert file_type(tmp_path / "STAGE-001.txt") is None


class TestParseWorkItem:
    """Test parse_work_item across item types."""

    def test_parses_each_type(self, make_repo):
        repo = make_repo()
        epic = parse_work_item(repo.epic("EPIC-001"))
        ticket = parse_work_item(repo.ticket("TICKET-001-001", "EPIC-001", stages=["STAGE-001-001-001"]))
        stage = parse_work_item(repo.stage(
            "STAGE-001-001-001", "TICKET-001-001", "EPIC-001",
            status="Build", priority=2, refinement_type=["frontend", "frontend"],
            depends_on=["other/STAGE-9"],
        ))
        assert isinstance(epic, Epic)
        assert isinstance(ticket, Ticket) and ticket.stages == ["STAGE-001-001-001"]
        assert isinstance(stage, Stage)
        assert stage.priority == 2
        assert stage.refinement_type == ["frontend"]
        assert stage.depends_on == ["other/STAGE-9"]
        assert stage.session_active is False

    def test_missing_required_field_names_it(self, make_repo):
        repo = make_repo()
        path = repo.root / "epics" / "EPIC-001" / "TICKET-001-001" / "STAGE-X.md"
        path.parent.mkdir(parents=True)
        path.write_text("---\nid: STAGE-X\nticket: TICKET-001-001\nepic: EPIC-001\nstatus: Build\n---\n")
        with pytest.raises(MetadataError, match='Missing required field "title"'):
            parse_work_item(path)

    def test_wrong_type_rejected_by_schema(self, make_repo):
        repo = make_repo()
        path = repo.stage("STAGE-1", "TICKET-1", "EPIC-1", pr_number="not-a-number")
        with pytest.raises(MetadataError, match="Invalid stage frontmatter"):
            parse_work_item(path)

    def test_bad_dependency_ref_rejected(self, make_repo):
        repo = make_repo()
        path = repo.stage("STAGE-1", "TICKET-1", "EPIC-1", depends_on=["repo/"])
        with pytest.raises(MetadataError, match="depends_on"):
            parse_work_item(path)

    def test_non_work_item_rejected(self, tmp_path):
        path = tmp_path / "notes.md"
        path.write_text("---\nid: x\n---\n")
        with pytest.raises(MetadataError, match="Not a work item file"):
            parse_work_item(path)


class TestDiscovery:
    def test_finds_items_sorted_and_skips_other_files(self, make_repo):
        repo = make_repo()
        repo.epic("EPIC-001")
        repo.ticket("TICKET-001-001", "EPIC-001")
        repo.stage("STAGE-001-001-002", "TICKET-001-001", "EPIC-001")
        repo.stage("STAGE-001-001-001", "TICKET-001-001", "EPIC-001")
        (repo.root / "epics" / "README.md").write_text("hello")

        files = discover_work_item_files(repo.root)
        assert [p.name for p in files] == [
            "EPIC-001.md", "STAGE-001-001-001.md", "STAGE-001-001-002.md", "TICKET-001-001.md",
        ]
        assert [p.name for p in discover_stage_files(repo.root)] == [
            "STAGE-001-001-001.md", "STAGE-001-001-002.md",
        ]

    def test_no_epics_dir(self, tmp_path):
        assert discover_work_item_files(tmp_path) == []
