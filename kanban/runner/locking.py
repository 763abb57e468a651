"""
Stage locking for the orchestrator.

The lock lives in the stage's own frontmatter (session_active, locked_at,
locked_by). Acquire and release are plain read-modify-write cycles with no
external mutex: only one orchestrator instance runs against a repo, and
between our read and write the only other writer is the session itself,
which never touches the lock fields.
"""

import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from kanban.lib.frontmatter import MetadataError, read_frontmatter, update_frontmatter, write_frontmatter

logger = logging.getLogger(__name__)

LOCK_FIELDS = ("session_active", "locked_at", "locked_by")


class LockConflict(Exception):
    """Stage is already locked by another session."""
    pass


def default_identity() -> str:
    return f"orchestrator@{socket.gethostname()}:{os.getpid()}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Locker:
    """Acquire/release the advisory execution lock on stage files.

    Every successful acquire() must be paired with exactly one release(),
    on success, crash and validation-failure paths alike.
    """

    def __init__(self, identity: str | None = None, clock: Callable[[], str] = utc_now_iso):
        self.identity = identity or default_identity()
        self.clock = clock

    def acquire(self, stage_file: Path) -> None:
        """
        Mark the stage as locked by this orchestrator.

        Raises:
            LockConflict: session_active is already true
            MetadataError: file missing or frontmatter unreadable
        """
        fm = read_frontmatter(stage_file)
        if fm.data.get("session_active") is True:
            raise LockConflict(
                f"Stage already locked: {stage_file} (by {fm.data.get('locked_by')} at {fm.data.get('locked_at')})"
            )
        fm.data["session_active"] = True
        fm.data["locked_at"] = self.clock()
        fm.data["locked_by"] = self.identity
        write_frontmatter(stage_file, fm.data, fm.content)
        logger.info(f"[LOCK] Acquired {fm.data.get('id', stage_file)}")

    def release(self, stage_file: Path) -> None:
        """Clear the lock fields, keeping whatever else changed since acquire."""
        fm = read_frontmatter(stage_file)
        fm.data["session_active"] = False
        fm.data["locked_at"] = None
        fm.data["locked_by"] = None
        write_frontmatter(stage_file, fm.data, fm.content)
        logger.info(f"[LOCK] Released {fm.data.get('id', stage_file)}")

    def is_locked(self, stage_file: Path) -> bool:
        return read_frontmatter(stage_file).data.get("session_active") is True

    def read_status(self, stage_file: Path) -> str:
        """
        Current stage status.

        Raises:
            MetadataError: status missing or not a string
        """
        status = read_frontmatter(stage_file).data.get("status")
        if not isinstance(status, str) or not status:
            raise MetadataError(f"Stage file {stage_file} has no valid status")
        return status

    def write_status(self, stage_file: Path, status: str) -> None:
        update_frontmatter(stage_file, status=status)
