"""Tests for core.config module."""

import json

from core.config import (
    DB_FILE,
    DEFAULT_BRIDGE_PORT,
    DEFAULT_MAX_RESTARTS,
    DEFAULT_REPLAY_LINES,
    HOLDFAST_DIR,
    LOG_DIR,
    RUN_DIR,
    load_saved_settings,
    load_settings,
    source_env_file,
    ENV_KEY_MAP,
)


def test_state_dirs_are_under_holdfast_dir():
    assert RUN_DIR.parent == HOLDFAST_DIR
    assert LOG_DIR.parent == HOLDFAST_DIR
    assert DB_FILE.parent == HOLDFAST_DIR


def test_defaults():
    assert DEFAULT_BRIDGE_PORT == 9785
    assert DEFAULT_REPLAY_LINES == 10_000
    assert DEFAULT_MAX_RESTARTS == 50


class TestSourceEnvFile:
    """Shell-style config.env parsing."""

    def test_parses_known_keys(self, tmp_path):
        env_file = tmp_path / "config.env"
        env_file.write_text(
            "# comment\n"
            "HOLDFAST_BRIDGE_PORT=9900\n"
            "export HOLDFAST_KILL_GRACE='2.5'\n"
            "UNRELATED=1\n"
            "garbage line\n"
        )
        config: dict = {}
        source_env_file(env_file, config, ENV_KEY_MAP)
        assert config == {"bridge_port": 9900, "kill_grace": 2.5}

    def test_bad_cast_is_skipped(self, tmp_path):
        env_file = tmp_path / "config.env"
        env_file.write_text("HOLDFAST_MAX_RESTARTS=lots\n")
        config = {"max_restarts": 50}
        source_env_file(env_file, config, ENV_KEY_MAP)
        assert config["max_restarts"] == 50


class TestLoadSettings:
    """Priority: env > config.env > settings.json > defaults."""

    def test_defaults_when_nothing_set(self, tmp_path):
        config = load_settings(env={}, search_dirs=[tmp_path],
                               settings_file=tmp_path / "settings.json")
        assert config["bridge_port"] == DEFAULT_BRIDGE_PORT
        assert config["run_dir"] == RUN_DIR

    def test_priority_order(self, tmp_path):
        settings_file = tmp_path / "settings.json"
        settings_file.write_text(json.dumps({
            "bridge_port": 1111, "max_restarts": 3, "kill_grace": 9.0,
        }))
        (tmp_path / "config.env").write_text(
            "HOLDFAST_BRIDGE_PORT=2222\nHOLDFAST_MAX_RESTARTS=4\n"
        )
        env = {"HOLDFAST_BRIDGE_PORT": "3333"}

        config = load_settings(env=env, search_dirs=[tmp_path],
                               settings_file=settings_file)

        assert config["bridge_port"] == 3333
        assert config["max_restarts"] == 4
        assert config["kill_grace"] == 9.0

    def test_unknown_saved_keys_ignored(self, tmp_path):
        settings_file = tmp_path / "settings.json"
        settings_file.write_text(json.dumps({"run_dir": "/tmp/evil"}))
        config = load_settings(env={}, search_dirs=[tmp_path],
                               settings_file=settings_file)
        assert config["run_dir"] == RUN_DIR


class TestSavedSettings:
    """settings.json loading."""

    def test_reads_object(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"bridge_port": 1234, "max_restarts": 7}))
        assert load_saved_settings(path) == {"bridge_port": 1234, "max_restarts": 7}

    def test_missing_or_non_object_reads_empty(self, tmp_path):
        path = tmp_path / "settings.json"
        assert load_saved_settings(path) == {}
        path.write_text("[1, 2]")
        assert load_saved_settings(path) == {}

    def test_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert load_saved_settings(path) == {}
