"""
Tests for structured logging, run-stream logging and the audit log.
"""

import json
import logging

import pytest
from unittest.mock import patch

from stagegate.audit import audit_pipeline_action
from stagegate.logging_config import (
    PIPELINE_RUNS_LOGGER,
    LogContext,
    StructuredFormatter,
    log_stage_transition,
)
from stagegate.utils.log_sanitizer import sanitize_for_log


class TestStructuredFormatter:
    def test_includes_run_context(self):
        logger = logging.getLogger("stagegate.test")
        records = []
        handler = logging.Handler()
        handler.emit = records.append
        logger.addHandler(handler)
        try:
            with LogContext(run_id="run-42"):
                logger.warning("Gate failed")
        finally:
            logger.removeHandler(handler)

        payload = json.loads(StructuredFormatter().format(records[0]))
        assert payload["message"] == "Gate failed"
        assert payload["level"] == "WARNING"
        assert payload["run_id"] == "run-42"

    def test_context_is_removed_on_exit(self):
        with LogContext(run_id="run-42"):
            pass
        record = logging.getLogger("stagegate.test").makeRecord(
            "stagegate.test", logging.INFO, __file__, 1, "msg", (), None
        )
        assert not hasattr(record, "run_id")


class TestStageTransitionLog:
    def test_failed_stage_logged_as_error(self, caplog):
        logger = logging.getLogger(PIPELINE_RUNS_LOGGER)
        with patch.object(logger, "propagate", True):
            with caplog.at_level(logging.INFO, logger=PIPELINE_RUNS_LOGGER):
                log_stage_transition(
                    "run-1", "PROD_GATE", "failed", "production", {"error": "GateFailure"}
                )

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.stage == "PROD_GATE"
        assert record.environment == "production"
        assert "GateFailure" in record.getMessage()


class TestAudit:
    def test_appends_jsonl(self, audit_log):
        audit_pipeline_action("run_started", "run-1", {"artifact": "sha:abc123"}, user="ci")
        audit_pipeline_action("run_finished", "run-1", {"state": "SUCCEEDED"}, success=True)

        entries = [json.loads(line) for line in audit_log.read_text().splitlines()]
        assert [e["action"] for e in entries] == ["run_started", "run_finished"]
        assert entries[0]["user"] == "ci"
        assert entries[1]["user"] == "system"
        assert entries[1]["success"] is True
        assert "success" not in entries[0]

    def test_write_failure_is_not_raised(self, tmp_path, monkeypatch):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        monkeypatch.setattr("stagegate.audit.AUDIT_LOG_PATH", blocker / "audit.jsonl")

        audit_pipeline_action("run_started", "run-1")


class TestLogSanitizer:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("Fix checkout\n[rollback]", "Fix checkout [rollback]"),
            (None, "None"),
        ],
    )
    def test_sanitize(self, value, expected):
        assert sanitize_for_log(value) == expected

    def test_truncates(self):
        assert len(sanitize_for_log("x" * 500, max_length=50)) <= 53
