"""
Work item parsing.

Epics, tickets and stages live as markdown files with YAML frontmatter under
`<repo>/epics/`. The item type comes from the filename prefix, the rest from
the frontmatter. Required fields are checked first so the error names the
missing field; types are then checked against the item's JSON Schema.
"""

from dataclasses import dataclass, field
from pathlib import Path

from kanban.lib.constants import EPIC_PREFIX, STAGE_PREFIX, TICKET_PREFIX
from kanban.lib.frontmatter import MetadataError, read_frontmatter
from kanban.lib.validate import ValidationError, validate

REQUIRED_FIELDS = {
    "epic": ("id", "title", "status"),
    "ticket": ("id", "epic", "title", "status"),
    "stage": ("id", "ticket", "epic", "title", "status"),
}


@dataclass(frozen=True)
class DependencyRef:
    """A parsed `depends_on` entry."""
    item_id: str
    repo_name: str | None = None

    @property
    def is_cross_repo(self) -> bool:
        return self.repo_name is not None

    @property
    def item_type(self) -> str:
        return entity_type(self.item_id)


def parse_dependency_ref(ref: str) -> DependencyRef:
    """Parse "ITEM-ID" (local) or "repo-name/ITEM-ID" (cross-repo).

    Splits on the first "/" only.

    Raises:
        ValueError: If the repo name or item id is empty.
    """
    if "/" not in ref:
        if not ref:
            raise ValueError("Dependency reference has an empty item id")
        return DependencyRef(item_id=ref)
    repo_name, item_id = ref.split("/", 1)
    if not repo_name:
        raise ValueError(f'Dependency reference "{ref}" has an empty repo name')
    if not item_id:
        raise ValueError(f'Dependency reference "{ref}" has an empty item id')
    return DependencyRef(item_id=item_id, repo_name=repo_name)


def entity_type(item_id: str) -> str:
    if item_id.startswith(EPIC_PREFIX):
        return "epic"
    if item_id.startswith(TICKET_PREFIX):
        return "ticket"
    return "stage"


def file_type(path: Path) -> str | None:
    """Item type from the filename prefix, or None for other files."""
    name = Path(path).name
    if not name.endswith(".md"):
        return None
    for prefix, kind in ((EPIC_PREFIX, "epic"), (TICKET_PREFIX, "ticket"), (STAGE_PREFIX, "stage")):
        if name.startswith(prefix):
            return kind
    return None


@dataclass
class Epic:
    id: str
    title: str
    status: str
    file_path: Path
    tickets: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    ticket_statuses: dict[str, str] = field(default_factory=dict)
    jira_key: str | None = None


@dataclass
class Ticket:
    id: str
    epic: str
    title: str
    status: str
    file_path: Path
    stages: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    stage_statuses: dict[str, str] = field(default_factory=dict)
    source: str = "local"
    jira_key: str | None = None


@dataclass
class Stage:
    id: str
    ticket: str
    epic: str
    title: str
    status: str
    file_path: Path
    depends_on: list[str] = field(default_factory=list)
    refinement_type: list[str] = field(default_factory=list)
    session_active: bool = False
    locked_at: str | None = None
    locked_by: str | None = None
    session_id: str | None = None
    worktree_branch: str | None = None
    priority: int = 0
    due_date: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    is_draft: bool = False
    pending_merge_parents: list[dict] = field(default_factory=list)
    mr_target_branch: str | None = None


def _string_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    # Ordered, de-duplicated
    return list(dict.fromkeys(str(v) for v in value))


def _priority(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def _optional_str(value) -> str | None:
    return None if value is None else str(value)


def _check_required(data: dict, kind: str, path: Path) -> None:
    for name in REQUIRED_FIELDS[kind]:
        if data.get(name) in (None, ""):
            raise MetadataError(f'Missing required field "{name}" in frontmatter of {path}')


def parse_epic(data: dict, path: Path) -> Epic:
    _check_required(data, "epic", path)
    _validate(data, "epic", path)
    return Epic(
        id=str(data["id"]),
        title=str(data["title"]),
        status=str(data["status"]),
        file_path=path,
        tickets=_string_list(data.get("tickets")),
        depends_on=_check_refs(_string_list(data.get("depends_on")), path),
        ticket_statuses=dict(data.get("ticket_statuses") or {}),
        jira_key=_optional_str(data.get("jira_key")),
    )


def parse_ticket(data: dict, path: Path) -> Ticket:
    _check_required(data, "ticket", path)
    _validate(data, "ticket", path)
    return Ticket(
        id=str(data["id"]),
        epic=str(data["epic"]),
        title=str(data["title"]),
        status=str(data["status"]),
        file_path=path,
        stages=_string_list(data.get("stages")),
        depends_on=_check_refs(_string_list(data.get("depends_on")), path),
        stage_statuses=dict(data.get("stage_statuses") or {}),
        source=str(data.get("source") or "local"),
        jira_key=_optional_str(data.get("jira_key")),
    )


def parse_stage(data: dict, path: Path) -> Stage:
    _check_required(data, "stage", path)
    _validate(data, "stage", path)
    return Stage(
        id=str(data["id"]),
        ticket=str(data["ticket"]),
        epic=str(data["epic"]),
        title=str(data["title"]),
        status=str(data["status"]),
        file_path=path,
        depends_on=_check_refs(_string_list(data.get("depends_on")), path),
        refinement_type=_string_list(data.get("refinement_type")),
        session_active=data.get("session_active") is True,
        locked_at=_optional_str(data.get("locked_at")),
        locked_by=_optional_str(data.get("locked_by")),
        session_id=_optional_str(data.get("session_id")),
        worktree_branch=_optional_str(data.get("worktree_branch")),
        priority=_priority(data.get("priority")),
        due_date=_optional_str(data.get("due_date")),
        pr_url=_optional_str(data.get("pr_url")),
        pr_number=data.get("pr_number"),
        is_draft=data.get("is_draft") is True,
        pending_merge_parents=list(data.get("pending_merge_parents") or []),
        mr_target_branch=_optional_str(data.get("mr_target_branch")),
    )


def _check_refs(refs: list[str], path: Path) -> list[str]:
    for ref in refs:
        try:
            parse_dependency_ref(ref)
        except ValueError as e:
            raise MetadataError(f"{e} in depends_on of {path}") from None
    return refs


def _validate(data: dict, kind: str, path: Path) -> None:
    try:
        validate(data, kind)
    except ValidationError as e:
        raise MetadataError(f"Invalid {kind} frontmatter in {path}: {e.message} at {e.path}") from None


PARSERS = {"epic": parse_epic, "ticket": parse_ticket, "stage": parse_stage}


def parse_work_item(path: Path) -> Epic | Ticket | Stage:
    """Parse one work item file, typed by its filename prefix.

    Raises:
        MetadataError: Missing frontmatter, missing required field, bad types,
            or a filename that isn't a work item.
    """
    kind = file_type(path)
    if kind is None:
        raise MetadataError(f"Not a work item file: {path}")
    fm = read_frontmatter(path)
    return PARSERS[kind](fm.data, Path(path))


def discover_work_item_files(repo_path: Path) -> list[Path]:
    """All EPIC-/TICKET-/STAGE- markdown files under <repo>/epics, sorted."""
    epics_dir = Path(repo_path) / "epics"
    if not epics_dir.is_dir():
        return []
    return sorted(p for p in epics_dir.rglob("*.md") if p.is_file() and file_type(p) is not None)


def discover_stage_files(repo_path: Path) -> list[Path]:
    return [p for p in discover_work_item_files(repo_path) if file_type(p) == "stage"]
