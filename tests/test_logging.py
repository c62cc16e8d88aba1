import logging
from typing import Iterator

import pytest
import structlog

from quotawatch.logging import setup_logging


@pytest.fixture(autouse=True)
def reset_structlog() -> "Iterator[None]":
    yield
    structlog.reset_defaults()


class TestSetupLogging:
    def test_console_renderer_by_default(self) -> "None":
        setup_logging("info")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_renderer(self) -> "None":
        setup_logging("debug", "json")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert structlog.processors.format_exc_info in processors

    def test_httpx_request_logs_stay_quiet(self) -> "None":
        setup_logging("debug")
        assert logging.getLogger("httpx").level == logging.WARNING
