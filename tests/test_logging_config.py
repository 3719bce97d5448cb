"""
Tests for escrowflow_core.logging_config.

Covers:
  - JSON formatter fields, context extras and exceptions
  - Human formatter with and without colour
  - setup_logging handler wiring and the JSON log file
"""

from __future__ import annotations

import json
import logging
import sys

import pytest

from escrowflow_core.logging_config import _HumanFormatter, _JSONFormatter, setup_logging


def _record(msg="vault opened", level=logging.INFO, **extra):
    rec = logging.LogRecord("escrowflow_engine", level, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


# ═══════════════════════════════════════════════════════════════════
#  Formatters
# ═══════════════════════════════════════════════════════════════════

class TestJSONFormatter:
    def test_basic_fields(self):
        obj = json.loads(_JSONFormatter().format(_record()))
        assert obj["level"] == "INFO"
        assert obj["logger"] == "escrowflow_engine"
        assert obj["msg"] == "vault opened"
        assert "ts" in obj
        assert "escrow" not in obj

    def test_context_extras(self):
        rec = _record(escrow="ab" * 32, operation="release")
        obj = json.loads(_JSONFormatter().format(rec))
        assert obj["escrow"] == "ab" * 32
        assert obj["operation"] == "release"

    def test_exception_included(self):
        try:
            raise RuntimeError("disk full")
        except RuntimeError:
            rec = _record(level=logging.CRITICAL)
            rec.exc_info = sys.exc_info()
        obj = json.loads(_JSONFormatter().format(rec))
        assert "disk full" in obj["exception"]


class TestHumanFormatter:
    def test_plain(self):
        line = _HumanFormatter(colour=False).format(_record(level=logging.WARNING))
        assert "[WARNING ]" in line
        assert "escrowflow_engine: vault opened" in line
        assert "\033[" not in line

    def test_coloured(self):
        line = _HumanFormatter(colour=True).format(_record(level=logging.ERROR))
        assert "\033[31m" in line
        assert line.count(_HumanFormatter.RESET) == 1

    def test_context_suffix(self):
        line = _HumanFormatter(colour=False).format(_record(escrow="k1", operation="fund"))
        assert line.endswith("(escrow=k1 operation=fund)")


# ═══════════════════════════════════════════════════════════════════
#  setup_logging
# ═══════════════════════════════════════════════════════════════════

class TestSetupLogging:
    def test_replaces_root_handlers(self, restore_root):
        setup_logging(level="debug", fmt="json")
        assert restore_root.level == logging.DEBUG
        assert len(restore_root.handlers) == 1
        assert isinstance(restore_root.handlers[0].formatter, _JSONFormatter)

    def test_human_console(self, restore_root):
        setup_logging(fmt="human")
        assert isinstance(restore_root.handlers[0].formatter, _HumanFormatter)

    def test_unknown_level_defaults_to_info(self, restore_root):
        setup_logging(level="chatty")
        assert restore_root.level == logging.INFO

    def test_unknown_format(self, restore_root):
        with pytest.raises(ValueError):
            setup_logging(fmt="xml")

    def test_file_is_json(self, restore_root, tmp_path):
        path = tmp_path / "logs" / "escrowflow.log"
        setup_logging(level="INFO", fmt="human", log_file=str(path))
        logging.getLogger("escrowflow_engine").info(
            "released", extra={"escrow": "k9", "operation": "release"},
        )
        for h in restore_root.handlers:
            h.flush()
        obj = json.loads(path.read_text().strip().splitlines()[-1])
        assert obj["msg"] == "released"
        assert obj["escrow"] == "k9"

    def test_access_log_quietened(self, restore_root):
        setup_logging()
        assert logging.getLogger("aiohttp.access").level == logging.WARNING
