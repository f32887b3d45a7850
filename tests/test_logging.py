"""
Tests for crmbridge/utils/logging.py - formatters and correlation IDs.
"""
import json
import logging
import sys

import pytest

from crmbridge.utils.logging import (
    ConsoleFormatter,
    StructuredJsonFormatter,
    configure_structured_logging,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


def _record(message="Rule executed", level=logging.INFO, **extra):
    record = logging.LogRecord("crmbridge.services.dispatcher", level, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def _reset_cid():
    set_correlation_id(None)
    yield
    set_correlation_id(None)


class TestJsonFormatter:
    def test_engine_context_in_line(self):
        set_correlation_id("job-1")
        line = StructuredJsonFormatter().format(_record(tenant_id="t1", rule_id=3, provider="amocrm"))
        entry = json.loads(line)
        assert entry["service"] == "crmbridge"
        assert entry["correlation_id"] == "job-1"
        assert entry["module"] == "crmbridge.services.dispatcher"
        assert entry["message"] == "Rule executed"
        assert entry["tenant_id"] == "t1"
        assert entry["rule_id"] == 3
        assert entry["provider"] == "amocrm"
        assert "entity_id" not in entry

    def test_exception_included(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert "bad payload" in entry["exception"]


class TestConsoleFormatter:
    def test_readable_line(self):
        set_correlation_id("abcdef1234567890")
        line = ConsoleFormatter().format(_record(level=logging.WARNING, tenant_id="t1"))
        assert "WARNING crmbridge.services.dispatcher [abcdef12] Rule executed tenant_id=t1" in line


def test_correlation_id_roundtrip():
    cid = generate_correlation_id()
    assert len(cid) == 32
    set_correlation_id(cid)
    assert get_correlation_id() == cid


def test_configure_installs_single_handler():
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        configure_structured_logging("debug", json_output=False)
        configure_structured_logging("warning")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredJsonFormatter)
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
