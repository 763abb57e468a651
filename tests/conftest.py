"""Shared fixtures: throwaway stores and on-disk work item trees."""

import logging
from pathlib import Path

import pytest

from kanban.lib.frontmatter import write_frontmatter
from kanban.lib.pipeline import default_pipeline
from kanban.store.db import KanbanStore


class RepoBuilder:
    """Writes epics/<epic>/<ticket>/<stage>.md files under a repo root."""

    def __init__(self, root: Path):
        self.root = root
        (root / "epics").mkdir(parents=True, exist_ok=True)

    def _write(self, path: Path, data: dict, body: str = "") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_frontmatter(path, data, body)
        return path

    def epic(self, epic_id: str, status: str = "In Progress", **extra) -> Path:
        data = {"id": epic_id, "title": f"{epic_id} title", "status": status, **extra}
        return self._write(self.root / "epics" / epic_id / f"{epic_id}.md", data)

    def ticket(self, ticket_id: str, epic: str, status: str = "Not Started", **extra) -> Path:
        data = {"id": ticket_id, "epic": epic, "title": f"{ticket_id} title", "status": status, **extra}
        return self._write(self.root / "epics" / epic / ticket_id / f"{ticket_id}.md", data)

    def stage(self, stage_id: str, ticket: str, epic: str, status: str = "Not Started", **extra) -> Path:
        data = {
            "id": stage_id, "ticket": ticket, "epic": epic,
            "title": f"{stage_id} title", "status": status, **extra,
        }
        return self._write(self.root / "epics" / epic / ticket / f"{stage_id}.md", data, "\n# Notes\n")


@pytest.fixture(autouse=True)
def reset_kanban_logger():
    """configure_logging() attaches a stderr handler; drop it between tests."""
    logger = logging.getLogger("kanban")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.fixture
def pipeline():
    return default_pipeline()


@pytest.fixture
def store():
    s = KanbanStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def make_repo(tmp_path):
    """Factory: make_repo("name") -> RepoBuilder rooted at tmp_path/name."""
    def _make(name: str = "repo") -> RepoBuilder:
        return RepoBuilder(tmp_path / name)
    return _make
