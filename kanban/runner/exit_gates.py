"""
Exit gates: propagate a stage status change up the hierarchy.

After a session (or a resolver) moves a stage, the owning ticket's
stage_statuses map and status are updated, then the epic's ticket_statuses
map and status, then the repo is re-synced so the board reflects the change.
Each step logs its own failure and the later steps still run.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from kanban.lib.constants import COMPLETE_STATUS
from kanban.lib.frontmatter import MetadataError, read_frontmatter, write_frontmatter
from kanban.workflow.columns import derive_epic_status, derive_ticket_status

logger = logging.getLogger(__name__)


@dataclass
class ExitGateResult:
    status_changed: bool
    status_before: str
    status_after: str
    ticket_updated: bool = False
    ticket_completed: bool = False
    epic_updated: bool = False
    epic_completed: bool = False
    synced: bool = False
    sync_error: str | None = None


def find_item_file(repo_path: Path, item_id: str, conventional: Path) -> Path | None:
    """The item's file at its conventional location, else anywhere under epics/."""
    if conventional.is_file():
        return conventional
    epics_dir = Path(repo_path) / "epics"
    if not epics_dir.is_dir():
        return None
    matches = sorted(epics_dir.rglob(f"{item_id}.md"))
    return matches[0] if matches else None


class ExitGateRunner:
    """Runs the post-session propagation steps.

    run_sync is called with the repo path; any exception it raises counts as
    a failed sync.
    """

    def __init__(self, run_sync: Callable[[Path], object]):
        self.run_sync = run_sync

    def run(self, stage_id: str, stage_file: Path, repo_path: Path,
            status_before: str, status_after: str) -> ExitGateResult:
        repo_path = Path(repo_path)
        result = ExitGateResult(
            status_changed=status_before != status_after,
            status_before=status_before,
            status_after=status_after,
        )
        if not result.status_changed:
            result.synced = True
            return result

        try:
            stage_data = read_frontmatter(stage_file).data
        except MetadataError as e:
            logger.error(f"[GATE] {stage_id}: cannot read stage file: {e}")
            self._sync_with_retry(repo_path, result)
            return result

        ticket_id = stage_data.get("ticket")
        epic_id = stage_data.get("epic")
        if not ticket_id or not epic_id:
            logger.warning(f"[GATE] {stage_id}: stage file has no ticket or epic (ticket={ticket_id} epic={epic_id})")
            self._sync_with_retry(repo_path, result)
            return result

        ticket_status = self._update_ticket(repo_path, epic_id, ticket_id, stage_id, status_after, result)
        if ticket_status is not None:
            self._update_epic(repo_path, epic_id, ticket_id, ticket_status, result)

        self._sync_with_retry(repo_path, result)
        return result

    def _update_ticket(self, repo_path: Path, epic_id: str, ticket_id: str, stage_id: str,
                       status_after: str, result: ExitGateResult) -> str | None:
        conventional = repo_path / "epics" / epic_id / ticket_id / f"{ticket_id}.md"
        ticket_file = find_item_file(repo_path, ticket_id, conventional)
        if ticket_file is None:
            logger.warning(f"[GATE] {stage_id}: ticket file for {ticket_id} not found")
            return None
        try:
            fm = read_frontmatter(ticket_file)
            stage_statuses = dict(fm.data.get("stage_statuses") or {})
            stage_statuses[stage_id] = status_after
            fm.data["stage_statuses"] = stage_statuses
            derived = derive_ticket_status(stage_statuses)
            if derived is not None:
                fm.data["status"] = derived
            write_frontmatter(ticket_file, fm.data, fm.content)
        except (MetadataError, OSError) as e:
            logger.warning(f"[GATE] Failed to update ticket {ticket_file}: {e}")
            return None

        result.ticket_updated = True
        result.ticket_completed = derived == COMPLETE_STATUS
        logger.info(f"[GATE] {ticket_id}: {stage_id} -> {status_after}, ticket status={derived}")
        return derived

    def _update_epic(self, repo_path: Path, epic_id: str, ticket_id: str,
                     ticket_status: str, result: ExitGateResult) -> None:
        conventional = repo_path / "epics" / epic_id / f"{epic_id}.md"
        epic_file = find_item_file(repo_path, epic_id, conventional)
        if epic_file is None:
            logger.warning(f"[GATE] Epic file for {epic_id} not found")
            return
        try:
            fm = read_frontmatter(epic_file)
            ticket_statuses = dict(fm.data.get("ticket_statuses") or {})
            ticket_statuses[ticket_id] = ticket_status
            fm.data["ticket_statuses"] = ticket_statuses
            derived = derive_epic_status(ticket_statuses)
            if derived is not None:
                fm.data["status"] = derived
            write_frontmatter(epic_file, fm.data, fm.content)
        except (MetadataError, OSError) as e:
            logger.warning(f"[GATE] Failed to update epic {epic_file}: {e}")
            return

        result.epic_updated = True
        result.epic_completed = derived == COMPLETE_STATUS
        logger.info(f"[GATE] {epic_id}: {ticket_id} -> {ticket_status}, epic status={derived}")

    def _sync_with_retry(self, repo_path: Path, result: ExitGateResult) -> None:
        for attempt in (1, 2):
            try:
                self.run_sync(repo_path)
            except Exception as e:
                result.sync_error = str(e)
                if attempt == 1:
                    logger.warning(f"[GATE] Sync failed, retrying once: {e}")
                else:
                    logger.warning(f"[GATE] Sync failed on retry: {e}")
                continue
            result.synced = True
            result.sync_error = None
            return
