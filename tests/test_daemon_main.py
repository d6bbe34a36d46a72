"""Tests for daemon.main - launch config validation and the startup report."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from core.config import DEFAULT_COLS, DEFAULT_REPLAY_LINES
from daemon import main as daemon_main
from daemon.main import LaunchConfig


class TestLaunchConfig:
    def test_defaults(self):
        cfg = LaunchConfig.model_validate_json(json.dumps({
            "session_id": "dev",
            "command": "bash",
            "socket_path": "/tmp/holdfast-dev.sock",
        }))
        assert cfg.args == []
        assert cfg.env == {}
        assert cfg.cols == DEFAULT_COLS
        assert cfg.replay_lines == DEFAULT_REPLAY_LINES
        assert cfg.socket_path == Path("/tmp/holdfast-dev.sock")

    @pytest.mark.parametrize("override", [
        {"session_id": "../escape"},
        {"command": ""},
        {"cols": 0},
        {"replay_lines": -1},
    ])
    def test_rejects_invalid(self, override):
        data = {"session_id": "dev", "command": "bash", "socket_path": "/tmp/x.sock"}
        data.update(override)
        with pytest.raises(ValidationError):
            LaunchConfig.model_validate(data)


class TestMain:
    def test_invalid_config_reports_error(self, capsys):
        assert daemon_main.main(["not json"]) == 2
        report = json.loads(capsys.readouterr().out.strip())
        assert report["error"].startswith("invalid launch config")
