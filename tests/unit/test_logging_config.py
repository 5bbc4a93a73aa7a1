"""Unit tests for structlog configuration."""

import logging

import structlog

from taskmesh.core.logging_config import configure_logging


def captured_configuration(monkeypatch, *args):
    seen = {}
    monkeypatch.setattr(structlog, "configure", lambda **kwargs: seen.update(kwargs))
    configure_logging(*args)
    return seen


class TestConfigureLogging:
    def test_json_renderer(self, monkeypatch):
        config = captured_configuration(monkeypatch, "DEBUG", "json")

        assert isinstance(config["processors"][-1], structlog.processors.JSONRenderer)
        assert config["cache_logger_on_first_use"] is True

    def test_console_renderer_by_default(self, monkeypatch):
        config = captured_configuration(monkeypatch)

        assert isinstance(config["processors"][-1], structlog.dev.ConsoleRenderer)

    def test_level_filters(self, monkeypatch):
        config = captured_configuration(monkeypatch, "warning")
        logger = config["wrapper_class"]

        assert logger is structlog.make_filtering_bound_logger(logging.WARNING)

    def test_unknown_level_falls_back_to_info(self, monkeypatch):
        config = captured_configuration(monkeypatch, "chatty")

        assert config["wrapper_class"] is structlog.make_filtering_bound_logger(logging.INFO)
