import logging
import os
import sys

from deadlineshield.utils import configure_logging


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("DS_LOG_LEVEL", "INFO")
    monkeypatch.setenv("DS_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("deadlineshield.scheduler")
        configure_logging("deadlineshield.scheduler")

        stdout_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
            and handler.stream is sys.stdout
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stdout_handlers) == 1
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_log_level_overrides(monkeypatch):
    monkeypatch.setenv("DS_LOG_LEVELS", "deadlineshield.fetch=ERROR")
    target = logging.getLogger("deadlineshield.fetch")
    original = target.level
    try:
        configure_logging("deadlineshield")
        assert target.level == logging.ERROR
    finally:
        target.setLevel(original)
