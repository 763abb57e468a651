"""Logging setup and per-session log files."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Send kanban.* records to stderr. Safe to call more than once."""
    root = logging.getLogger("kanban")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(getattr(h, "_kanban", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._kanban = True
        root.addHandler(handler)


class SessionLog:
    """Append-only log file capturing one session's output.

    Written to <log_dir>/<stage_id>-<timestamp>.log.
    """

    def __init__(self, log_dir: Path, stage_id: str):
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        self.path = log_dir / f"{stage_id}-{stamp}.log"
        self._fh = open(self.path, "a", encoding="utf-8")
        self.write(f"[{datetime.now(timezone.utc).isoformat()}] session log for {stage_id}\n")

    def write(self, text: str) -> None:
        if not self._fh.closed:
            self._fh.write(text)
            self._fh.flush()

    def write_bytes(self, data: bytes) -> None:
        self.write(data.decode("utf-8", errors="replace"))

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()
