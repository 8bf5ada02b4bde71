"""
Tests for the command-line interface.
"""

import json
import sys

import pytest
import yaml
from unittest.mock import patch

from stagegate.__main__ import main


@pytest.fixture
def config_path(tmp_path):
    """Dry-run configuration using the in-memory platform."""
    passing = {"command": [sys.executable, "-c", "pass"]}
    config = {
        "platform": {"provider": "memory"},
        "polling": {"interval_seconds": 0, "max_attempts": 10},
        "gates": {"settle_seconds": 0, "suites": {"acceptance": passing, "smoke": passing}},
        "pipeline": {
            "state_dir": str(tmp_path / "state"),
            "audit_log": str(tmp_path / "audit.jsonl"),
        },
        "registry": {"resolve_digests": False},
        "logging": {"log_dir": str(tmp_path / "logs")},
    }
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(config))
    return path


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("stagegate.__main__.setup_logging") as setup:
        yield setup


class TestCLI:
    def test_generate_config(self, tmp_path, capsys):
        path = tmp_path / "generated" / "config.yml"

        assert main(["--config", str(path), "--generate-config"]) == 0

        assert path.exists()
        assert "Generated default configuration" in capsys.readouterr().out
        assert main(["--config", str(path), "--validate-config"]) == 0

    def test_validate_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "config.yml"
        path.write_text("polling:\n  max_attempts: -1\n")

        assert main(["--config", str(path), "--validate-config"]) == 1
        assert "Configuration invalid" in capsys.readouterr().out

    def test_missing_config(self, tmp_path, capsys):
        assert main(["--config", str(tmp_path / "missing.yml"), "runs"]) == 1
        assert "--generate-config" in capsys.readouterr().out

    def test_no_command_prints_help(self, config_path):
        assert main(["--config", str(config_path)]) == 1

    def test_run_and_list(self, config_path, capsys):
        """Test a dry run end to end, then the run history."""
        assert main(["--config", str(config_path), "run", "sha:abc123", "--commit", "abc123"]) == 0
        out = capsys.readouterr().out
        assert "SUCCEEDED" in out
        assert "PROD_GATE" in out

        assert main(["--config", str(config_path), "--format", "json", "runs"]) == 0
        runs = json.loads(capsys.readouterr().out)
        assert len(runs) == 1
        assert runs[0]["artifact"]["reference"] == "sha:abc123"

        run_id = runs[0]["run_id"]
        assert main(["--config", str(config_path), "runs", run_id]) == 0
        assert run_id in capsys.readouterr().out

    def test_failed_run_exit_code(self, config_path, tmp_path):
        config = yaml.safe_load(config_path.read_text())
        config["gates"]["suites"]["acceptance"] = {"command": [sys.executable, "-c", "raise SystemExit(1)"]}
        config_path.write_text(yaml.safe_dump(config))

        assert main(["--config", str(config_path), "run", "sha:abc123"]) == 1

    def test_unknown_run(self, config_path, capsys):
        assert main(["--config", str(config_path), "runs", "missing"]) == 1

    def test_rollback_without_history(self, config_path, capsys):
        """Test that a rollback with nothing deployed fails cleanly."""
        assert main(["--config", str(config_path), "rollback"]) == 1
        assert "Error" in capsys.readouterr().err
