"""Tests for environment-driven configuration."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

import conductor.config as config_module
from conductor.config import Config, get_config, load_environment
from conductor.orchestration.workflow_engine.steps import ExecutionMode
from conductor.utils.retry import BackoffStrategy


class TestConfigDefaults:
    """Tests for default values."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = Config()
        assert config.app_name == "pipeline-conductor"
        assert config.execution_mode == "parallel"
        assert config.max_concurrency == 4
        assert config.queue_db is None
        assert config.state_db is None
        assert config.state_max_records == 1000
        assert config.job_attempts == 3
        assert config.dead_letter_enabled is True
        assert config.disabled_providers == []
        config.validate()

    def test_environment_overrides(self):
        env = {
            "CONDUCTOR_EXECUTION_MODE": "Sequential",
            "CONDUCTOR_MAX_CONCURRENCY": "8",
            "CONDUCTOR_QUEUE_DB": "/tmp/q.db",
            "CONDUCTOR_JOB_BACKOFF_DELAY": "0.5",
            "CONDUCTOR_DEAD_LETTER_ENABLED": "off",
            "CONDUCTOR_DISABLED_PROVIDERS": "tts, video ,",
            "CONDUCTOR_LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config()
        assert config.execution_mode == "sequential"
        assert config.max_concurrency == 8
        assert config.queue_db == Path("/tmp/q.db")
        assert config.job_backoff_delay == 0.5
        assert config.dead_letter_enabled is False
        assert config.disabled_providers == ["tts", "video"]
        assert config.log_level == "DEBUG"


class TestConfigValidation:
    """Tests for Config.validate() and parse errors."""

    @pytest.mark.parametrize(
        "var,value",
        [("CONDUCTOR_MAX_CONCURRENCY", "many"), ("CONDUCTOR_ALERT_COOLDOWN", "soon")],
    )
    def test_unparseable_numbers(self, var, value):
        with patch.dict(os.environ, {var: value}, clear=True):
            with pytest.raises(ValueError, match=var):
                Config()

    @pytest.mark.parametrize(
        "field,value",
        [
            ("execution_mode", "random"),
            ("max_concurrency", 0),
            ("worker_concurrency", 0),
            ("job_attempts", 0),
            ("state_max_records", 0),
            ("error_rate_threshold", 150),
        ],
    )
    def test_out_of_range(self, field, value):
        with patch.dict(os.environ, {}, clear=True):
            config = Config()
        setattr(config, field, value)
        with pytest.raises(ValueError):
            config.validate()


class TestComponentConfigs:
    """Tests for the component configuration builders."""

    def test_builders(self):
        with patch.dict(
            os.environ,
            {"CONDUCTOR_EXECUTION_MODE": "sequential", "CONDUCTOR_JOB_ATTEMPTS": "5", "CONDUCTOR_WORKER_CONCURRENCY": "3"},
            clear=True,
        ):
            config = Config()

        engine_config = config.engine_config()
        assert engine_config.execution_mode == ExecutionMode.SEQUENTIAL

        options = config.job_options()
        assert options.attempts == 5
        assert options.backoff == BackoffStrategy.EXPONENTIAL

        assert config.worker_config().concurrency == 3
        assert config.monitoring_config().alert_cooldown == 900.0


def test_get_config_is_a_singleton(monkeypatch):
    monkeypatch.setattr(config_module, "_config_instance", None)
    with patch.object(config_module, "load_environment") as mock_load:
        assert get_config() is get_config()
    mock_load.assert_called_once()


def test_load_environment_does_not_override(tmp_path):
    missing = tmp_path / "missing.env"
    env_file = tmp_path / ".env"
    env_file.write_text("CONDUCTOR_QUEUE_NAME=from-file\nCONDUCTOR_MAX_CONCURRENCY=9\n")

    with patch.dict(os.environ, {"CONDUCTOR_MAX_CONCURRENCY": "2"}, clear=True):
        assert load_environment([missing, env_file]) == env_file
        config = Config()

    assert config.queue_name == "from-file"
    assert config.max_concurrency == 2
    assert load_environment([missing]) is None
