"""
Dependency resolution.

Two tiers:
- hard: the target reached "Complete" (tickets and epics: every stage under
  them is Complete). This is the only thing that sets an edge's `resolved`.
- soft: a cross-repo stage target sits in a published phase such as
  "PR Created". It unblocks column placement only.

Local targets are checked against the items parsed in the current sync.
Cross-repo targets are looked up in the store; a repo that was never synced
leaves the dependency unresolved.
"""

from kanban.lib.constants import COMPLETE_STATUS, SOFT_RESOLVE_STATUSES
from kanban.store.db import KanbanStore, StageRecord
from kanban.sync.items import DependencyRef, Stage, Ticket, parse_dependency_ref


class DependencyResolver:
    """Resolution view over one repo's freshly parsed items plus the store.

    Built once per sync; nothing is cached across syncs.
    """

    def __init__(self, repo_name: str, tickets: list[Ticket], stages: list[Stage],
                 store: KanbanStore | None = None):
        self.repo_name = repo_name
        self.store = store
        self._stages = {s.id: s for s in stages}
        self._stages_by_ticket: dict[str, list[Stage]] = {}
        for stage in stages:
            self._stages_by_ticket.setdefault(stage.ticket, []).append(stage)
        self._tickets_by_epic: dict[str, list[Ticket]] = {}
        for ticket in tickets:
            self._tickets_by_epic.setdefault(ticket.epic, []).append(ticket)

    def _parse(self, ref: str | DependencyRef) -> DependencyRef:
        parsed = parse_dependency_ref(ref) if isinstance(ref, str) else ref
        if parsed.repo_name == self.repo_name:
            return DependencyRef(item_id=parsed.item_id)
        return parsed

    # -- hard --

    def is_resolved(self, ref: str | DependencyRef) -> bool:
        """Hard resolution: target is terminal-complete."""
        dep = self._parse(ref)
        if dep.is_cross_repo:
            return self._cross_repo_resolved(dep)
        return self._local_resolved(dep)

    def _local_resolved(self, dep: DependencyRef) -> bool:
        if dep.item_type == "stage":
            stage = self._stages.get(dep.item_id)
            return stage is not None and stage.status == COMPLETE_STATUS
        if dep.item_type == "ticket":
            return _all_complete(self._stages_by_ticket.get(dep.item_id, []))
        tickets = self._tickets_by_epic.get(dep.item_id, [])
        if not tickets:
            return False
        return all(_all_complete(self._stages_by_ticket.get(t.id, [])) for t in tickets)

    def _cross_repo_resolved(self, dep: DependencyRef) -> bool:
        if self.store is None:
            return False
        repo = self.store.find_repo_by_name(dep.repo_name)
        if repo is None:
            return False
        if dep.item_type == "stage":
            stage = self.store.find_stage(repo.id, dep.item_id)
            return stage is not None and stage.status == COMPLETE_STATUS
        if dep.item_type == "ticket":
            return _all_complete(self.store.list_stages_by_ticket(repo.id, dep.item_id))
        tickets = self.store.list_tickets_by_epic(repo.id, dep.item_id)
        if not tickets:
            return False
        return all(_all_complete(self.store.list_stages_by_ticket(repo.id, t.id)) for t in tickets)

    # -- soft --

    def soft_parent(self, ref: str | DependencyRef) -> StageRecord | None:
        """Stored row of a cross-repo stage target in a soft-resolve status, else None."""
        dep = self._parse(ref)
        if not dep.is_cross_repo or dep.item_type != "stage" or self.store is None:
            return None
        repo = self.store.find_repo_by_name(dep.repo_name)
        if repo is None:
            return None
        stage = self.store.find_stage(repo.id, dep.item_id)
        if stage is None or stage.status not in SOFT_RESOLVE_STATUSES:
            return None
        return stage

    def is_soft_resolved(self, ref: str | DependencyRef) -> bool:
        return self.soft_parent(ref) is not None

    def is_soft_or_hard_resolved(self, ref: str | DependencyRef) -> bool:
        """Resolution used for column placement."""
        return self.is_resolved(ref) or self.is_soft_resolved(ref)


def _all_complete(stages) -> bool:
    return bool(stages) and all(s.status == COMPLETE_STATUS for s in stages)
