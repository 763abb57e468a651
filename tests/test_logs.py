"""Tests for kanban.lib.logs."""

import logging

from kanban.lib.logs import SessionLog, configure_logging


class TestSessionLog:
    def test_writes_header_and_output(self, tmp_path):
        log = SessionLog(tmp_path / "logs", "STAGE-1")
        log.write("hello\n")
        log.write_bytes(b"bytes \xff\n")
        log.close()

        assert log.path.parent == tmp_path / "logs"
        assert log.path.name.startswith("STAGE-1-")
        text = log.path.read_text()
        assert "session log for STAGE-1" in text
        assert "hello" in text
        assert "bytes �" in text

    def test_writes_after_close_ignored(self, tmp_path):
        log = SessionLog(tmp_path, "STAGE-1")
        log.close()
        log.write("late\n")
        log.close()
        assert log.closed
        assert "late" not in log.path.read_text()


class TestConfigureLogging:
    def test_idempotent(self):
        logger = logging.getLogger("kanban")
        configure_logging()
        configure_logging(verbose=True)
        ours = [h for h in logger.handlers if getattr(h, "_kanban", False)]
        assert len(ours) == 1
        assert logger.level == logging.DEBUG
