"""
Sync engine: metadata files -> store.

One sync reads every work item file in a repo, rebuilds the repo's
dependency edges, recomputes every stage's kanban column and upserts it all
in a single transaction. Bad files are reported in the result and skipped;
they never abort the run. Re-running on unchanged files yields the same rows.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from kanban.lib.constants import COMPLETE_STATUS, NOT_STARTED_STATUS
from kanban.lib.frontmatter import MetadataError, read_frontmatter, write_frontmatter
from kanban.lib.pipeline import PipelineConfig
from kanban.store.db import DependencyRecord, KanbanStore, StageRecord, TicketRecord, now_iso
from kanban.sync.items import (
    Epic,
    Stage,
    Ticket,
    discover_work_item_files,
    entity_type,
    parse_dependency_ref,
    parse_work_item,
)
from kanban.sync.resolver import DependencyResolver
from kanban.workflow.columns import compute_kanban_column

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Counts of synced items plus per-file errors."""
    epics: int = 0
    tickets: int = 0
    stages: int = 0
    dependencies: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "epics": self.epics,
            "tickets": self.tickets,
            "stages": self.stages,
            "dependencies": self.dependencies,
            "errors": list(self.errors),
        }


def _parse_all(files: list[Path], result: SyncResult) -> tuple[list[Epic], list[Ticket], list[Stage]]:
    epics: list[Epic] = []
    tickets: list[Ticket] = []
    stages: list[Stage] = []
    seen: dict[str, Path] = {}

    for path in files:
        try:
            item = parse_work_item(path)
        except MetadataError as e:
            result.errors.append(f"{path}: {e}")
            logger.warning(f"[SYNC] Skipping {path}: {e}")
            continue

        if item.id in seen:
            result.errors.append(f"{path}: Duplicate id {item.id} (already defined in {seen[item.id]})")
            continue
        seen[item.id] = path

        if isinstance(item, Epic):
            epics.append(item)
        elif isinstance(item, Ticket):
            tickets.append(item)
        else:
            stages.append(item)

    return epics, tickets, stages


def _edge(from_id: str, from_type: str, ref: str, resolver: DependencyResolver) -> DependencyRecord:
    dep = parse_dependency_ref(ref)
    return DependencyRecord(
        from_id=from_id,
        from_type=from_type,
        to_id=dep.item_id,
        to_type=entity_type(dep.item_id),
        target_repo_name=dep.repo_name,
        resolved=resolver.is_resolved(dep),
    )


def pending_merge_parents(stage: Stage, resolver: DependencyResolver) -> list[dict]:
    """Soft-resolved stage parents whose PR must merge before this stage's does."""
    parents = []
    for ref in stage.depends_on:
        if resolver.is_resolved(ref):
            continue
        parent = resolver.soft_parent(ref)
        if parent is None:
            continue
        if parent.worktree_branch and parent.pr_url and parent.pr_number is not None:
            dep = parse_dependency_ref(ref)
            parents.append({
                "stage_id": dep.item_id,
                "repo": dep.repo_name,
                "branch": parent.worktree_branch,
                "pr_url": parent.pr_url,
                "pr_number": parent.pr_number,
            })
    return parents


def _write_back_pending(stage: Stage, parents: list[dict], result: SyncResult) -> None:
    """Persist pending_merge_parents / is_draft to the stage file when they changed."""
    is_draft = bool(parents)
    if stage.pending_merge_parents == parents and stage.is_draft == is_draft:
        return
    try:
        fm = read_frontmatter(stage.file_path)
        fm.data["pending_merge_parents"] = parents
        fm.data["is_draft"] = is_draft
        write_frontmatter(stage.file_path, fm.data, fm.content)
    except (MetadataError, OSError) as e:
        result.errors.append(f"Failed to update frontmatter for {stage.file_path}: {e}")


def sync_repo(repo_path: Path, store: KanbanStore, pipeline: PipelineConfig) -> SyncResult:
    """Sync one repo's work item files into the store.

    Args:
        repo_path: Repo root (contains epics/)
        store: Target store
        pipeline: Pipeline config used to derive columns

    Returns:
        SyncResult with counts and "<path>: <message>" errors
    """
    repo_path = Path(repo_path).resolve()
    repo_name = repo_path.name
    result = SyncResult()

    epics, tickets, stages = _parse_all(discover_work_item_files(repo_path), result)

    resolver = DependencyResolver(repo_name, tickets, stages, store)
    stage_ids_by_ticket: dict[str, list[str]] = {}
    for stage in stages:
        stage_ids_by_ticket.setdefault(stage.ticket, []).append(stage.id)

    synced_at = now_iso()
    pending: list[tuple[Stage, list[dict]]] = []

    with store.transaction():
        repo_id = store.upsert_repo(repo_path, repo_name)
        store.delete_dependencies(repo_id)

        for epic in epics:
            store.upsert_epic(repo_id, epic.id, epic.title, epic.status, str(epic.file_path),
                              epic.jira_key, synced_at)
            for ref in epic.depends_on:
                store.insert_dependency(repo_id, _edge(epic.id, "epic", ref, resolver))
                result.dependencies += 1

        for ticket in tickets:
            has_stages = bool(ticket.stages) or ticket.id in stage_ids_by_ticket
            store.upsert_ticket(TicketRecord(
                id=ticket.id,
                repo_id=repo_id,
                epic_id=ticket.epic,
                title=ticket.title,
                status=ticket.status,
                has_stages=has_stages,
                file_path=str(ticket.file_path),
                source=ticket.source,
                jira_key=ticket.jira_key,
            ), synced_at)
            for ref in ticket.depends_on:
                store.insert_dependency(repo_id, _edge(ticket.id, "ticket", ref, resolver))
                result.dependencies += 1

        for stage in stages:
            for ref in stage.depends_on:
                store.insert_dependency(repo_id, _edge(stage.id, "stage", ref, resolver))
                result.dependencies += 1

            unblocked = all(resolver.is_soft_or_hard_resolved(ref) for ref in stage.depends_on)
            column = compute_kanban_column(stage.status, not unblocked, pipeline)
            if (stage.status not in (COMPLETE_STATUS, NOT_STARTED_STATUS)
                    and pipeline.state_by_status(stage.status) is None):
                logger.warning(f"[SYNC] {stage.id}: status '{stage.status}' is not in the pipeline, placing in {column}")

            parents = pending_merge_parents(stage, resolver) if unblocked else []
            pending.append((stage, parents))

            store.upsert_stage(StageRecord(
                id=stage.id,
                repo_id=repo_id,
                ticket_id=stage.ticket,
                epic_id=stage.epic,
                title=stage.title,
                status=stage.status,
                kanban_column=column,
                file_path=str(stage.file_path),
                refinement_type=stage.refinement_type,
                worktree_branch=stage.worktree_branch,
                pr_url=stage.pr_url,
                pr_number=stage.pr_number,
                priority=stage.priority,
                due_date=stage.due_date,
                session_active=stage.session_active,
                locked_at=stage.locked_at,
                locked_by=stage.locked_by,
                is_draft=bool(parents),
                pending_merge_parents=parents,
                mr_target_branch=stage.mr_target_branch,
            ), synced_at)

    result.epics = len(epics)
    result.tickets = len(tickets)
    result.stages = len(stages)

    for stage, parents in pending:
        _write_back_pending(stage, parents, result)

    logger.info(
        f"[SYNC] {repo_name}: epics={result.epics} tickets={result.tickets} stages={result.stages} "
        f"dependencies={result.dependencies} errors={len(result.errors)}"
    )
    return result
