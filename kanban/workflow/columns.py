"""Board column derivation and status roll-up.

Columns are never stored as authored state. They are recomputed on every
sync from (status, dependency resolution, pipeline config) so re-running
sync cannot drift.
"""

from kanban.lib.constants import (
    COLUMN_BACKLOG,
    COLUMN_DONE,
    COLUMN_READY,
    COLUMN_TO_CONVERT,
    COMPLETE_STATUS,
    IN_PROGRESS_STATUS,
    NOT_STARTED_STATUS,
)
from kanban.lib.pipeline import PipelineConfig


def compute_kanban_column(status: str, has_unresolved_deps: bool, pipeline: PipelineConfig) -> str:
    """Column for a stage.

    Order of checks:
        Complete            -> done
        unresolved deps     -> backlog
        Not Started         -> ready_for_work
        pipeline status     -> column key of the phase name
        anything else       -> backlog
    """
    if status == COMPLETE_STATUS:
        return COLUMN_DONE
    if has_unresolved_deps:
        return COLUMN_BACKLOG
    if status == NOT_STARTED_STATUS:
        return COLUMN_READY
    state = pipeline.state_by_status(status)
    if state is not None:
        return state.column
    return COLUMN_BACKLOG


def ticket_column(has_stages: bool) -> str | None:
    """Tickets without stages still need converting into stages."""
    return None if has_stages else COLUMN_TO_CONVERT


def _roll_up(statuses: dict[str, str]) -> str | None:
    values = list(statuses.values())
    if not values:
        return None
    if all(v == COMPLETE_STATUS for v in values):
        return COMPLETE_STATUS
    if all(v == NOT_STARTED_STATUS for v in values):
        return NOT_STARTED_STATUS
    return IN_PROGRESS_STATUS


def derive_ticket_status(stage_statuses: dict[str, str]) -> str | None:
    """Ticket status from its stages' statuses; None when it has none."""
    return _roll_up(stage_statuses)


def derive_epic_status(ticket_statuses: dict[str, str]) -> str | None:
    """Epic status from its tickets' statuses; None when it has none."""
    return _roll_up(ticket_statuses)
