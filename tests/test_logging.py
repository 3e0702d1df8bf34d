"""
Tests for structured logging setup.
"""

import structlog

from billsync.logging import setup_logging
from billsync.settings import Settings


class TestSetupLogging:
    def test_json_renderer_by_default(self):
        setup_logging(Settings(environment="test"))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_renderer(self):
        setup_logging(Settings(environment="test", observability={"log_format": "console"}))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_uses_stdlib_logging(self):
        setup_logging(Settings(environment="test"))

        config = structlog.get_config()
        assert config["wrapper_class"] is structlog.stdlib.BoundLogger
        assert isinstance(config["logger_factory"], structlog.stdlib.LoggerFactory)
