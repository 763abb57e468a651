"""
Work discovery: which stages should get a session next.

Reads columns computed by the last sync; never derives columns itself, so a
sync must run first. Candidates are stages in an automatable column (ready
for work, or a phase backed by a skill) that are not locked and don't need a
human. Higher score = pick sooner:

    700  Addressing Comments
    600  manual phases
    500  automatic phases
    400  Build
    300  ready for work (Not Started, deps resolved)
    200  other phases

plus 10 per priority level and up to 50 for an approaching due date.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

from kanban.lib.constants import COLUMN_BACKLOG, COLUMN_READY, COLUMN_TO_CONVERT, HUMAN_KEYWORDS
from kanban.lib.pipeline import PipelineConfig
from kanban.store.db import KanbanStore, StageRecord
from kanban.workflow.columns import ticket_column

logger = logging.getLogger(__name__)

DUE_DATE_WINDOW_DAYS = 30
MAX_DUE_DATE_BONUS = 50


@dataclass
class ReadyStage:
    id: str
    ticket: str
    epic: str
    title: str
    worktree_branch: str | None
    refinement_type: list[str]
    priority_score: int
    priority_reason: str
    needs_human: bool
    file_path: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket": self.ticket,
            "epic": self.epic,
            "title": self.title,
            "worktree_branch": self.worktree_branch,
            "refinement_type": list(self.refinement_type),
            "priority_score": self.priority_score,
            "priority_reason": self.priority_reason,
            "needs_human": self.needs_human,
        }


@dataclass
class DiscoveryResult:
    ready_stages: list[ReadyStage] = field(default_factory=list)
    blocked_count: int = 0
    in_progress_count: int = 0
    to_convert_count: int = 0

    def to_dict(self) -> dict:
        return {
            "ready_stages": [s.to_dict() for s in self.ready_stages],
            "blocked_count": self.blocked_count,
            "in_progress_count": self.in_progress_count,
            "to_convert_count": self.to_convert_count,
        }


def _due_date_bonus(due_date: str | None, today: date) -> int:
    if not due_date:
        return 0
    try:
        due = datetime.fromisoformat(due_date).date()
    except ValueError:
        logger.debug(f"[DISCOVERY] Ignoring unparseable due_date {due_date!r}")
        return 0
    days_until = max(0, (due - today).days)
    return max(0, round(MAX_DUE_DATE_BONUS - (days_until / DUE_DATE_WINDOW_DAYS) * MAX_DUE_DATE_BONUS))


def compute_priority_score(stage: StageRecord, pipeline: PipelineConfig, today: date | None = None) -> int:
    state = pipeline.state_by_status(stage.status)

    base = 200
    if state is not None:
        name = state.name.lower()
        if state.name == "Addressing Comments":
            base = 700
        elif "manual" in name:
            base = 600
        elif "automatic" in name:
            base = 500
        elif state.name == "Build":
            base = 400

    if stage.kanban_column == COLUMN_READY:
        base = 300

    return base + stage.priority * 10 + _due_date_bonus(stage.due_date, today or date.today())


def priority_reason(stage: StageRecord, pipeline: PipelineConfig) -> str:
    state = pipeline.state_by_status(stage.status)
    if state is not None:
        name = state.name.lower()
        if state.name == "Addressing Comments":
            return "review_comments_pending"
        if "manual" in name:
            return "manual_testing_pending"
        if "automatic" in name:
            return "automatic_testing_ready"
        if state.name == "Build":
            return "build_ready"
        return f"{state.column}_ready"
    if stage.kanban_column == COLUMN_READY:
        return "design_ready"
    return "normal"


def needs_human(stage: StageRecord, pipeline: PipelineConfig) -> bool:
    """Phase name mentions a human step, or a refinement type is human-only."""
    if any(rt in pipeline.human_refinement_types for rt in stage.refinement_type):
        return True
    state = pipeline.state_by_status(stage.status)
    if state is None:
        return False
    name = state.name.lower()
    return any(kw in name for kw in HUMAN_KEYWORDS)


def build_discovery(
    stages: list[StageRecord],
    tickets_without_stages: int,
    pipeline: PipelineConfig,
    max_candidates: int | None = None,
    include_human: bool = False,
    today: date | None = None,
) -> DiscoveryResult:
    """Score and filter already-synced stage rows."""
    automatable = pipeline.automatable_columns()
    ready = []
    for stage in stages:
        if stage.session_active or stage.kanban_column not in automatable:
            continue
        human = needs_human(stage, pipeline)
        if human and not include_human:
            continue
        ready.append(ReadyStage(
            id=stage.id,
            ticket=stage.ticket_id,
            epic=stage.epic_id,
            title=stage.title,
            worktree_branch=stage.worktree_branch,
            refinement_type=list(stage.refinement_type),
            priority_score=compute_priority_score(stage, pipeline, today),
            priority_reason=priority_reason(stage, pipeline),
            needs_human=human,
            file_path=stage.file_path,
        ))

    ready.sort(key=lambda s: (-s.priority_score, s.id))
    if max_candidates is not None:
        ready = ready[:max_candidates]

    return DiscoveryResult(
        ready_stages=ready,
        blocked_count=sum(1 for s in stages if s.kanban_column == COLUMN_BACKLOG),
        in_progress_count=sum(1 for s in stages if s.session_active),
        to_convert_count=tickets_without_stages,
    )


def discover(
    store: KanbanStore,
    repo_path: Path,
    pipeline: PipelineConfig,
    max_candidates: int | None = None,
    include_human: bool = False,
) -> DiscoveryResult:
    """Ready stages for a synced repo, best first.

    A repo that was never synced has nothing ready.
    """
    repo = store.find_repo_by_path(Path(repo_path).resolve())
    if repo is None:
        logger.warning(f"[DISCOVERY] {repo_path} has not been synced")
        return DiscoveryResult()

    stages = store.list_stages(repo.id)
    to_convert = sum(1 for t in store.list_tickets(repo.id) if ticket_column(t.has_stages) == COLUMN_TO_CONVERT)
    result = build_discovery(stages, to_convert, pipeline, max_candidates, include_human)
    logger.debug(
        f"[DISCOVERY] {repo.name}: ready={len(result.ready_stages)} blocked={result.blocked_count} "
        f"in_progress={result.in_progress_count} to_convert={result.to_convert_count}"
    )
    return result
