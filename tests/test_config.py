"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import chisel.config as config
from chisel.config import (
    Config,
    DriftConfig,
    EngineConfig,
    LoggingConfig,
    NotificationConfig,
    get_config,
    load_config,
    reset_config,
)


class TestEngineConfig:
    """Tests for EngineConfig class."""

    def test_default_values(self):
        cfg = EngineConfig()
        assert cfg.max_concurrency == 10
        assert cfg.operation_timeout == 1800.0
        assert cfg.enable_rollback is True
        assert cfg.plan_concurrency == 5
        assert cfg.read_timeout is None

    def test_from_env(self):
        env_vars = {
            "CHISEL_MAX_CONCURRENCY": "4",
            "CHISEL_OPERATION_TIMEOUT": "60",
            "CHISEL_ENABLE_ROLLBACK": "false",
            "CHISEL_PLAN_CONCURRENCY": "2",
            "CHISEL_READ_TIMEOUT": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = EngineConfig.from_env()
            assert cfg.max_concurrency == 4
            assert cfg.operation_timeout == 60.0
            assert cfg.enable_rollback is False
            assert cfg.plan_concurrency == 2
            assert cfg.read_timeout == 15.0

    def test_from_env_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = EngineConfig.from_env()
            assert cfg == EngineConfig()

    def test_rollback_flag_values(self):
        for value, expected in (("1", True), ("yes", True), ("TRUE", True), ("0", False)):
            with patch.dict(os.environ, {"CHISEL_ENABLE_ROLLBACK": value}, clear=True):
                assert EngineConfig.from_env().enable_rollback is expected


class TestDriftConfig:
    """Tests for DriftConfig class."""

    def test_default_values(self):
        cfg = DriftConfig()
        # Scheduling is opted into by running `chisel watch`, not by a flag
        assert not hasattr(cfg, "enabled")
        assert cfg.interval == 900.0
        assert cfg.max_retries == 3
        assert cfg.notify_threshold == 1

    def test_from_env(self):
        env_vars = {
            "CHISEL_DRIFT_INTERVAL": "120",
            "CHISEL_DRIFT_MAX_RETRIES": "0",
            "CHISEL_DRIFT_RETRY_DELAY": "5",
            "CHISEL_DRIFT_TIMEOUT": "30",
            "CHISEL_DRIFT_NOTIFY_THRESHOLD": "3",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DriftConfig.from_env()
            assert cfg.interval == 120.0
            assert cfg.max_retries == 0
            assert cfg.retry_delay == 5.0
            assert cfg.timeout == 30.0
            assert cfg.notify_threshold == 3


class TestNotificationConfig:
    """Tests for NotificationConfig class."""

    def test_from_env(self):
        env_vars = {
            "CHISEL_WEBHOOK_URL": "https://hooks.example.com/drift",
            "CHISEL_WEBHOOK_HEADERS": '{"Authorization": "Bearer abc"}',
            "CHISEL_WEBHOOK_TIMEOUT": "3",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = NotificationConfig.from_env()
            assert cfg.webhook_url == "https://hooks.example.com/drift"
            assert cfg.webhook_headers == {"Authorization": "Bearer abc"}
            assert cfg.webhook_timeout == 3.0

    def test_from_env_empty(self):
        with patch.dict(os.environ, {"CHISEL_WEBHOOK_URL": ""}, clear=True):
            cfg = NotificationConfig.from_env()
            assert cfg.webhook_url is None
            assert cfg.webhook_headers == {}

    def test_from_env_invalid_headers_json(self):
        env_vars = {"CHISEL_WEBHOOK_HEADERS": "not-json"}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = NotificationConfig.from_env()
            assert cfg.webhook_headers == {}


class TestConfig:
    """Tests for main Config class."""

    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.engine, EngineConfig)
        assert isinstance(cfg.drift, DriftConfig)
        assert isinstance(cfg.notifications, NotificationConfig)
        assert isinstance(cfg.logging, LoggingConfig)
        assert cfg.logging.level == "INFO"

    def test_from_env(self):
        env_vars = {
            "CHISEL_MAX_CONCURRENCY": "3",
            "CHISEL_DRIFT_INTERVAL": "60",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = Config.from_env()
            assert cfg.engine.max_concurrency == 3
            assert cfg.drift.interval == 60.0
            assert cfg.logging.level == "DEBUG"

    def test_default_is_valid(self):
        Config.default().validate()

    @pytest.mark.parametrize(
        "section,field_name,value,env_name",
        [
            ("engine", "max_concurrency", 0, "CHISEL_MAX_CONCURRENCY"),
            ("engine", "operation_timeout", -1, "CHISEL_OPERATION_TIMEOUT"),
            ("engine", "read_timeout", 0, "CHISEL_READ_TIMEOUT"),
            ("drift", "interval", 0, "CHISEL_DRIFT_INTERVAL"),
            ("drift", "max_retries", -1, "CHISEL_DRIFT_MAX_RETRIES"),
        ],
    )
    def test_validate_rejects(self, section, field_name, value, env_name):
        cfg = Config.default()
        setattr(getattr(cfg, section), field_name, value)
        with pytest.raises(ValueError, match=env_name):
            cfg.validate()


class TestConfigSingleton:
    """Tests for the module-level configuration helpers."""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_load_config(self):
        with patch.dict(os.environ, {"CHISEL_MAX_CONCURRENCY": "7"}, clear=False):
            cfg = load_config()
            assert cfg.engine.max_concurrency == 7
            assert config.config is cfg

    def test_get_config_loads_if_none(self):
        assert config.config is None
        with patch.dict(os.environ, {}, clear=True):
            cfg = get_config()
        assert cfg is not None
        assert config.config is cfg

    def test_singleton_returns_same_instance(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_config() is get_config()

    def test_reset_config(self):
        with patch.dict(os.environ, {}, clear=True):
            get_config()
        reset_config()
        assert config.config is None

    def test_load_config_validates(self):
        with patch.dict(os.environ, {"CHISEL_MAX_CONCURRENCY": "0"}, clear=True):
            with pytest.raises(ValueError):
                load_config()
        assert config.config is None
