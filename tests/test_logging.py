"""Tests for logging setup and task-scoped log context."""

import json
import logging
import sys

import pytest

from bulknotify.config import LoggingConfig
from bulknotify.logging import LoggingContext, StructuredFormatter, TaskIdFilter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def make_record(logger, message="event", *args):
    return logger.makeRecord(logger.name, logging.INFO, __file__, 1, message, args, None)


class TestStructuredFormatter:
    def test_includes_context_fields(self):
        logger = logging.getLogger("bulknotify.tests")
        with LoggingContext(logger, task_id="bulk_1"):
            record = make_record(logger, "batch %s done", 2)

        data = json.loads(StructuredFormatter().format(record))
        assert data["message"] == "batch 2 done"
        assert data["level"] == "INFO"
        assert data["logger"] == "bulknotify.tests"
        assert data["task_id"] == "bulk_1"
        assert "msg" not in data and "args" not in data

    def test_context_is_removed_on_exit(self):
        logger = logging.getLogger("bulknotify.tests")
        with LoggingContext(logger, task_id="bulk_1"):
            pass
        assert not hasattr(make_record(logger), "task_id")

    def test_exception_is_rendered(self):
        logger = logging.getLogger("bulknotify.tests")
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = logger.makeRecord(
                logger.name, logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        data = json.loads(StructuredFormatter().format(record))
        assert "ValueError: bad payload" in data["exception"]


class TestTaskIdFilter:
    def test_sets_placeholder_outside_task(self):
        record = make_record(logging.getLogger("bulknotify.tests"))
        assert TaskIdFilter().filter(record) is True
        assert record.task_id == "-"

    def test_keeps_existing_task_id(self):
        logger = logging.getLogger("bulknotify.tests")
        with LoggingContext(logger, task_id="bulk_9"):
            record = make_record(logger)
        TaskIdFilter().filter(record)
        assert record.task_id == "bulk_9"


class TestSetupLogging:
    def test_file_handler_writes_json_lines(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "worker.log"
        setup_logging(LoggingConfig(console_output=False, file_path=str(log_file)))
        logger = logging.getLogger("bulknotify.worker")

        logger.info("idle")
        with LoggingContext(logger, task_id="bulk_7"):
            logger.warning("batch failed")
        for handler in restore_root_logger.handlers:
            handler.flush()

        lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        assert [(line["message"], line["task_id"]) for line in lines] == [
            ("idle", "-"),
            ("batch failed", "bulk_7"),
        ]

    def test_replaces_existing_handlers(self, restore_root_logger):
        restore_root_logger.addHandler(logging.NullHandler())
        setup_logging(LoggingConfig(console_output=False, level="warning"))
        assert restore_root_logger.handlers == []
        assert restore_root_logger.level == logging.WARNING

    def test_console_handler_uses_task_aware_format(self, restore_root_logger):
        setup_logging(LoggingConfig(console_output=True))
        (handler,) = restore_root_logger.handlers
        record = make_record(logging.getLogger("bulknotify.tests"), "hello")
        assert all(f.filter(record) for f in handler.filters)
        assert "[-] hello" in handler.format(record)

    def test_quiets_client_libraries(self, restore_root_logger):
        setup_logging(LoggingConfig(console_output=False))
        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
