"""Tests for event intake settings."""

import pytest

from event_intake.config import CeleryConfig, IntakeConfig


class TestIntakeConfig:
    def test_defaults(self) -> None:
        config = IntakeConfig()

        assert config.log_level == "INFO"
        assert config.metrics_port is None

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INTAKE_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("INTAKE_METRICS_PORT", "9200")

        config = IntakeConfig()

        assert config.log_level == "DEBUG"
        assert config.metrics_port == 9200


class TestCeleryConfig:
    def test_broker_defaults_to_amqp(self) -> None:
        assert CeleryConfig().broker_url.startswith("amqp://")
