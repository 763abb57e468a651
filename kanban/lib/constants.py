"""Shared constants for the kanban workflow."""

import re

# Terminal stage statuses. Pipeline phases may not use these (see pipeline schema).
NOT_STARTED_STATUS = "Not Started"
COMPLETE_STATUS = "Complete"
IN_PROGRESS_STATUS = "In Progress"

# Transition target name for the terminal state
DONE_TARGET = "Done"

# Review phases: the stage has an open PR
PR_CREATED_STATUS = "PR Created"
ADDRESSING_COMMENTS_STATUS = "Addressing Comments"

# Stage statuses that soft-resolve a cross-repo stage dependency
SOFT_RESOLVE_STATUSES = (PR_CREATED_STATUS, ADDRESSING_COMMENTS_STATUS)

# System board columns
COLUMN_TO_CONVERT = "to_convert"
COLUMN_BACKLOG = "backlog"
COLUMN_READY = "ready_for_work"
COLUMN_DONE = "done"

# Work item id prefixes
EPIC_PREFIX = "EPIC-"
TICKET_PREFIX = "TICKET-"
STAGE_PREFIX = "STAGE-"

# Phase names containing one of these need a human in the loop
HUMAN_KEYWORDS = ("manual", "user", "feedback")

# Config locations
GLOBAL_CONFIG_PATH = "~/.config/kanban-workflow/config.yaml"
REPO_CONFIG_NAME = ".kanban-workflow.yaml"
DEFAULT_LOG_DIR_NAME = ".kanban-logs"
DEFAULT_DB_PATH = ".kanban/kanban.db"
WORKTREE_DIR_NAME = ".worktrees"
ISOLATION_DOC_NAME = "CLAUDE.md"

WORKFLOW_ENV_PREFIX = "WORKFLOW_"
MAX_PARALLEL_ENV = "WORKFLOW_MAX_PARALLEL"

WHITESPACE_RE = re.compile(r"\s+")
