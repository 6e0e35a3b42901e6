"""Tests for log formatting and the context adapter."""

import json
import logging
import sys

import pytest

from classcomm_sync.logging_utils import (
    ContextTextFormatter,
    StructuredJsonFormatter,
    SyncLoggerAdapter,
    configure_structured_logging,
    get_sync_logger,
)


def make_record(message="Sync cycle finished", **extra):
    record = logging.makeLogRecord(
        {"name": "classcomm_sync.sync.engine", "levelname": "INFO", "levelno": logging.INFO, "msg": message}
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def scratch_logger():
    logger = logging.getLogger("classcomm_sync.tests.scratch")
    yield logger
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


class TestStructuredJsonFormatter:
    """Tests for JSON log lines."""

    def test_context_fields_always_present(self):
        line = json.loads(StructuredJsonFormatter().format(make_record()))

        assert line["message"] == "Sync cycle finished"
        assert line["level"] == "INFO"
        assert line["logger"] == "classcomm_sync.sync.engine"
        assert line["client_id"] is None
        assert line["tenant_id"] is None

    def test_extra_values_included(self):
        record = make_record(client_id="c1", pushed=3, path=object())
        line = json.loads(StructuredJsonFormatter().format(record))

        assert line["client_id"] == "c1"
        assert line["pushed"] == 3
        assert isinstance(line["path"], str)
        assert "msg" not in line
        assert "args" not in line

    def test_exception_rendered(self):
        try:
            raise RuntimeError("disk full")
        except RuntimeError:
            record = make_record(exc_info=sys.exc_info())

        line = json.loads(StructuredJsonFormatter().format(record))
        assert "RuntimeError: disk full" in line["exception"]


class TestContextTextFormatter:
    """Tests for plain text log lines."""

    def test_context_in_brackets(self):
        line = ContextTextFormatter().format(make_record(client_id="c1", tenant_id="t1"))
        assert "classcomm_sync.sync.engine [client_id=c1 tenant_id=t1]: Sync cycle finished" in line

    def test_no_context(self):
        line = ContextTextFormatter().format(make_record())
        assert "classcomm_sync.sync.engine: Sync cycle finished" in line


class TestConfiguration:
    """Tests for handler installation."""

    def test_defaults_to_json(self, scratch_logger, monkeypatch):
        monkeypatch.delenv("CLASSCOMM_LOG_FORMAT", raising=False)
        monkeypatch.delenv("CLASSCOMM_LOG_LEVEL", raising=False)

        logger = configure_structured_logging(logger_name=scratch_logger.name)

        (handler,) = logger.handlers
        assert isinstance(handler.formatter, StructuredJsonFormatter)
        assert logger.level == logging.INFO

    def test_environment_selects_text_and_level(self, scratch_logger, monkeypatch):
        monkeypatch.setenv("CLASSCOMM_LOG_FORMAT", "text")
        monkeypatch.setenv("CLASSCOMM_LOG_LEVEL", "debug")

        logger = configure_structured_logging(logger_name=scratch_logger.name)

        (handler,) = logger.handlers
        assert isinstance(handler.formatter, ContextTextFormatter)
        assert logger.level == logging.DEBUG

    def test_reconfigure_replaces_handler(self, scratch_logger):
        configure_structured_logging(logging.WARNING, "json", scratch_logger.name)
        logger = configure_structured_logging(logging.WARNING, "text", scratch_logger.name)
        assert len(logger.handlers) == 1

    def test_sync_logger_namespace(self):
        assert get_sync_logger("server").name == "classcomm_sync.server"


class TestSyncLoggerAdapter:
    """Tests for context stamping."""

    def test_context_merged_with_call_extra(self, caplog):
        log = SyncLoggerAdapter(logging.getLogger("classcomm_sync.tests.adapter"), {"client_id": "c1"})

        with caplog.at_level(logging.INFO, logger="classcomm_sync.tests.adapter"):
            log.info("Push finished", extra={"pushed": 2, "client_id": "spoofed"})

        (record,) = caplog.records
        assert record.client_id == "c1"
        assert record.pushed == 2
