"""
SQLite-backed board store.

Holds the synced view of every registered repo: epics, tickets, stages with
their derived kanban column, and the dependency edge cache. The metadata
files stay the source of truth; this store is rebuilt by sync.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL UNIQUE,
    registered_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS epics (
    id TEXT NOT NULL,
    repo_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    jira_key TEXT,
    file_path TEXT NOT NULL,
    last_synced TEXT NOT NULL,
    PRIMARY KEY(repo_id, id),
    FOREIGN KEY(repo_id) REFERENCES repos(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS tickets (
    id TEXT NOT NULL,
    repo_id INTEGER NOT NULL,
    epic_id TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    jira_key TEXT,
    source TEXT NOT NULL DEFAULT 'local',
    has_stages INTEGER NOT NULL DEFAULT 0,
    file_path TEXT NOT NULL,
    last_synced TEXT NOT NULL,
    PRIMARY KEY(repo_id, id),
    FOREIGN KEY(repo_id) REFERENCES repos(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS stages (
    id TEXT NOT NULL,
    repo_id INTEGER NOT NULL,
    ticket_id TEXT NOT NULL,
    epic_id TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    kanban_column TEXT NOT NULL,
    refinement_type TEXT NOT NULL DEFAULT '[]',
    worktree_branch TEXT,
    pr_url TEXT,
    pr_number INTEGER,
    priority INTEGER NOT NULL DEFAULT 0,
    due_date TEXT,
    session_active INTEGER NOT NULL DEFAULT 0,
    locked_at TEXT,
    locked_by TEXT,
    is_draft INTEGER NOT NULL DEFAULT 0,
    pending_merge_parents TEXT,
    mr_target_branch TEXT,
    file_path TEXT NOT NULL,
    last_synced TEXT NOT NULL,
    PRIMARY KEY(repo_id, id),
    FOREIGN KEY(repo_id) REFERENCES repos(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS dependencies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_id INTEGER NOT NULL,
    from_id TEXT NOT NULL,
    from_type TEXT NOT NULL,
    to_id TEXT NOT NULL,
    to_type TEXT NOT NULL,
    target_repo_name TEXT,
    resolved INTEGER NOT NULL DEFAULT 0,
    UNIQUE(repo_id, from_id, to_id, target_repo_name),
    FOREIGN KEY(repo_id) REFERENCES repos(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS mr_comment_tracking (
    stage_id TEXT NOT NULL,
    repo_id INTEGER NOT NULL,
    last_poll_timestamp TEXT NOT NULL,
    last_known_unresolved_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY(repo_id, stage_id),
    FOREIGN KEY(repo_id) REFERENCES repos(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_stages_ticket ON stages(repo_id, ticket_id);
CREATE INDEX IF NOT EXISTS idx_stages_column ON stages(repo_id, kanban_column);
CREATE INDEX IF NOT EXISTS idx_tickets_epic ON tickets(repo_id, epic_id);
CREATE INDEX IF NOT EXISTS idx_deps_from ON dependencies(repo_id, from_id);
"""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RepoRecord:
    id: int
    path: str
    name: str


@dataclass
class TicketRecord:
    id: str
    repo_id: int
    epic_id: str
    title: str
    status: str
    has_stages: bool
    file_path: str
    source: str = "local"
    jira_key: str | None = None


@dataclass
class StageRecord:
    id: str
    repo_id: int
    ticket_id: str
    epic_id: str
    title: str
    status: str
    kanban_column: str
    file_path: str
    refinement_type: list[str] = field(default_factory=list)
    worktree_branch: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    priority: int = 0
    due_date: str | None = None
    session_active: bool = False
    locked_at: str | None = None
    locked_by: str | None = None
    is_draft: bool = False
    pending_merge_parents: list[dict] = field(default_factory=list)
    mr_target_branch: str | None = None


@dataclass
class DependencyRecord:
    from_id: str
    from_type: str
    to_id: str
    to_type: str
    resolved: bool
    target_repo_name: str | None = None


def _stage_from_row(row: sqlite3.Row) -> StageRecord:
    return StageRecord(
        id=row["id"],
        repo_id=row["repo_id"],
        ticket_id=row["ticket_id"],
        epic_id=row["epic_id"],
        title=row["title"],
        status=row["status"],
        kanban_column=row["kanban_column"],
        file_path=row["file_path"],
        refinement_type=json.loads(row["refinement_type"] or "[]"),
        worktree_branch=row["worktree_branch"],
        pr_url=row["pr_url"],
        pr_number=row["pr_number"],
        priority=row["priority"],
        due_date=row["due_date"],
        session_active=bool(row["session_active"]),
        locked_at=row["locked_at"],
        locked_by=row["locked_by"],
        is_draft=bool(row["is_draft"]),
        pending_merge_parents=json.loads(row["pending_merge_parents"] or "[]"),
        mr_target_branch=row["mr_target_branch"],
    )


def _ticket_from_row(row: sqlite3.Row) -> TicketRecord:
    return TicketRecord(
        id=row["id"],
        repo_id=row["repo_id"],
        epic_id=row["epic_id"],
        title=row["title"],
        status=row["status"],
        has_stages=bool(row["has_stages"]),
        file_path=row["file_path"],
        source=row["source"],
        jira_key=row["jira_key"],
    )


@dataclass
class CommentTrackingRecord:
    stage_id: str
    repo_id: int
    last_poll_timestamp: str
    last_known_unresolved_count: int

class KanbanStore:
    """Repository interface over a single SQLite database.

    Use ":memory:" as db_path for a throwaway store. The connection is shared
    across threads, so every public method holds the store lock; a thread
    inside transaction() owns the connection until it commits or rolls back.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self):
        """Commit on success, roll back on any exception."""
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
                if self._tx_depth == 1:
                    self._conn.commit()
            except BaseException:
                if self._tx_depth == 1:
                    self._conn.rollback()
                raise
            finally:
                self._tx_depth -= 1

    def _commit_unless_in_transaction(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    def _fetchone(self, sql: str, params: tuple = ()):
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # -- repos --

    def upsert_repo(self, path: Path | str, name: str) -> int:
        path = str(path)
        with self._lock:
            row = self._conn.execute("SELECT id FROM repos WHERE path = ?", (path,)).fetchone()
            if row:
                self._conn.execute("UPDATE repos SET name = ? WHERE id = ?", (name, row["id"]))
                repo_id = row["id"]
            else:
                cur = self._conn.execute(
                    "INSERT INTO repos (path, name, registered_at) VALUES (?, ?, ?)",
                    (path, name, now_iso()),
                )
                repo_id = cur.lastrowid
            self._commit_unless_in_transaction()
            return repo_id

    def find_repo_by_name(self, name: str) -> RepoRecord | None:
        row = self._fetchone("SELECT id, path, name FROM repos WHERE name = ?", (name,))
        return RepoRecord(id=row["id"], path=row["path"], name=row["name"]) if row else None

    def find_repo_by_path(self, path: Path | str) -> RepoRecord | None:
        row = self._fetchone("SELECT id, path, name FROM repos WHERE path = ?", (str(path),))
        return RepoRecord(id=row["id"], path=row["path"], name=row["name"]) if row else None

    def list_repos(self) -> list[RepoRecord]:
        rows = self._fetchall("SELECT id, path, name FROM repos ORDER BY name")
        return [RepoRecord(id=r["id"], path=r["path"], name=r["name"]) for r in rows]

    # -- epics / tickets / stages --

    def upsert_epic(self, repo_id: int, epic_id: str, title: str, status: str,
                    file_path: str, jira_key: str | None, synced_at: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO epics (id, repo_id, title, status, jira_key, file_path, last_synced)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_id, id) DO UPDATE SET
                    title = excluded.title, status = excluded.status, jira_key = excluded.jira_key,
                    file_path = excluded.file_path, last_synced = excluded.last_synced
                """,
                (epic_id, repo_id, title, status, jira_key, file_path, synced_at),
            )

    def upsert_ticket(self, ticket: TicketRecord, synced_at: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO tickets (id, repo_id, epic_id, title, status, jira_key, source,
                                     has_stages, file_path, last_synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_id, id) DO UPDATE SET
                    epic_id = excluded.epic_id, title = excluded.title, status = excluded.status,
                    jira_key = excluded.jira_key, source = excluded.source,
                    has_stages = excluded.has_stages, file_path = excluded.file_path,
                    last_synced = excluded.last_synced
                """,
                (ticket.id, ticket.repo_id, ticket.epic_id, ticket.title, ticket.status, ticket.jira_key,
                 ticket.source, int(ticket.has_stages), ticket.file_path, synced_at),
            )

    def upsert_stage(self, stage: StageRecord, synced_at: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO stages (id, repo_id, ticket_id, epic_id, title, status, kanban_column,
                                    refinement_type, worktree_branch, pr_url, pr_number, priority,
                                    due_date, session_active, locked_at, locked_by, is_draft,
                                    pending_merge_parents, mr_target_branch, file_path, last_synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_id, id) DO UPDATE SET
                    ticket_id = excluded.ticket_id, epic_id = excluded.epic_id,
                    title = excluded.title, status = excluded.status,
                    kanban_column = excluded.kanban_column, refinement_type = excluded.refinement_type,
                    worktree_branch = excluded.worktree_branch, pr_url = excluded.pr_url,
                    pr_number = excluded.pr_number, priority = excluded.priority,
                    due_date = excluded.due_date, session_active = excluded.session_active,
                    locked_at = excluded.locked_at, locked_by = excluded.locked_by,
                    is_draft = excluded.is_draft, pending_merge_parents = excluded.pending_merge_parents,
                    mr_target_branch = excluded.mr_target_branch, file_path = excluded.file_path,
                    last_synced = excluded.last_synced
                """,
                (
                    stage.id, stage.repo_id, stage.ticket_id, stage.epic_id, stage.title, stage.status,
                    stage.kanban_column, json.dumps(stage.refinement_type), stage.worktree_branch,
                    stage.pr_url, stage.pr_number, stage.priority, stage.due_date,
                    int(stage.session_active), stage.locked_at, stage.locked_by, int(stage.is_draft),
                    json.dumps(stage.pending_merge_parents) if stage.pending_merge_parents else None,
                    stage.mr_target_branch, stage.file_path, synced_at,
                ),
            )

    def find_stage(self, repo_id: int, stage_id: str) -> StageRecord | None:
        row = self._fetchone("SELECT * FROM stages WHERE repo_id = ? AND id = ?", (repo_id, stage_id))
        return _stage_from_row(row) if row else None

    def list_stages(self, repo_id: int) -> list[StageRecord]:
        rows = self._fetchall("SELECT * FROM stages WHERE repo_id = ? ORDER BY id", (repo_id,))
        return [_stage_from_row(r) for r in rows]

    def list_stages_by_status(self, repo_id: int, statuses: list[str], limit: int | None = None) -> list[StageRecord]:
        marks = ", ".join("?" for _ in statuses)
        sql = f"SELECT * FROM stages WHERE repo_id = ? AND status IN ({marks}) ORDER BY id"
        params: tuple = (repo_id, *statuses)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return [_stage_from_row(r) for r in self._fetchall(sql, params)]

    def list_stages_by_ticket(self, repo_id: int, ticket_id: str) -> list[StageRecord]:
        rows = self._fetchall(
            "SELECT * FROM stages WHERE repo_id = ? AND ticket_id = ? ORDER BY id", (repo_id, ticket_id)
        )
        return [_stage_from_row(r) for r in rows]

    def list_tickets(self, repo_id: int) -> list[TicketRecord]:
        rows = self._fetchall("SELECT * FROM tickets WHERE repo_id = ? ORDER BY id", (repo_id,))
        return [_ticket_from_row(r) for r in rows]

    def list_tickets_by_epic(self, repo_id: int, epic_id: str) -> list[TicketRecord]:
        rows = self._fetchall(
            "SELECT * FROM tickets WHERE repo_id = ? AND epic_id = ? ORDER BY id", (repo_id, epic_id)
        )
        return [_ticket_from_row(r) for r in rows]

    def count_epics(self, repo_id: int) -> int:
        return self._fetchone("SELECT COUNT(*) FROM epics WHERE repo_id = ?", (repo_id,))[0]

    # -- dependencies --

    def delete_dependencies(self, repo_id: int) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM dependencies WHERE repo_id = ?", (repo_id,))

    def insert_dependency(self, repo_id: int, dep: DependencyRecord) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO dependencies
                    (repo_id, from_id, from_type, to_id, to_type, target_repo_name, resolved)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (repo_id, dep.from_id, dep.from_type, dep.to_id, dep.to_type,
                 dep.target_repo_name, int(dep.resolved)),
            )

    def list_dependencies(self, repo_id: int) -> list[DependencyRecord]:
        rows = self._fetchall(
            "SELECT * FROM dependencies WHERE repo_id = ? ORDER BY from_id, to_id", (repo_id,)
        )
        return [
            DependencyRecord(
                from_id=r["from_id"],
                from_type=r["from_type"],
                to_id=r["to_id"],
                to_type=r["to_type"],
                resolved=bool(r["resolved"]),
                target_repo_name=r["target_repo_name"],
            )
            for r in rows
        ]

    # -- MR comment tracking --

    def get_comment_tracking(self, repo_id: int, stage_id: str) -> CommentTrackingRecord | None:
        row = self._fetchone(
            "SELECT * FROM mr_comment_tracking WHERE repo_id = ? AND stage_id = ?", (repo_id, stage_id)
        )
        if row is None:
            return None
        return CommentTrackingRecord(
            stage_id=row["stage_id"],
            repo_id=row["repo_id"],
            last_poll_timestamp=row["last_poll_timestamp"],
            last_known_unresolved_count=row["last_known_unresolved_count"],
        )

    def upsert_comment_tracking(self, repo_id: int, stage_id: str, timestamp: str, count: int) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO mr_comment_tracking
                    (stage_id, repo_id, last_poll_timestamp, last_known_unresolved_count)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(repo_id, stage_id) DO UPDATE SET
                    last_poll_timestamp = excluded.last_poll_timestamp,
                    last_known_unresolved_count = excluded.last_known_unresolved_count
                """,
                (stage_id, repo_id, timestamp, count),
            )
            self._commit_unless_in_transaction()
