"""
Tests for logging setup
"""

import logging

import pytest

from mcp_sse_proxy.middleware import SessionTokenFilter, setup_logging
from mcp_sse_proxy.proxy.session import mask_session_tokens

TOKEN = "abcdef1234567890"


@pytest.fixture
def root_logger():
    """Restore the root logger's handlers and level after the test"""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(msg, *args):
    return logging.LogRecord("mcp_sse_proxy", logging.INFO, __file__, 1, msg, args or None, None)


class TestMaskSessionTokens:
    """Tests for mask_session_tokens"""

    def test_long_token_is_shortened(self):
        masked = mask_session_tokens(f"POST /mcp/messages?sessionId={TOKEN} 202")

        assert masked == "POST /mcp/messages?sessionId=abcdef12... 202"

    def test_short_token_is_kept(self):
        assert mask_session_tokens("sessionId=abc") == "sessionId=abc"

    def test_every_token_is_shortened(self):
        masked = mask_session_tokens(f"sessionId: {TOKEN}, SESSIONID={TOKEN}")

        assert TOKEN not in masked
        assert masked.count("abcdef12...") == 2


class TestSessionTokenFilter:
    """Tests for SessionTokenFilter"""

    def test_masks_formatted_message(self):
        record = make_record("HTTP Request: POST %s", f"http://t/mcp/messages?sessionId={TOKEN}")

        assert SessionTokenFilter().filter(record) is True
        assert TOKEN not in record.getMessage()
        assert "sessionId=abcdef12..." in record.getMessage()

    def test_leaves_other_records_alone(self):
        record = make_record("Sending request %s", "tools/list")

        SessionTokenFilter().filter(record)

        assert record.msg == "Sending request %s"
        assert record.args == ("tools/list",)


class TestSetupLogging:
    """Tests for setup_logging"""

    def test_installs_filtered_handler_once(self, root_logger):
        first = setup_logging("DEBUG")
        second = setup_logging("WARNING")

        assert first is second
        assert first in root_logger.handlers
        assert any(isinstance(f, SessionTokenFilter) for f in first.filters)
        assert root_logger.level == logging.WARNING

    def test_quiets_http_loggers(self, root_logger):
        setup_logging("DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_level_from_env(self, root_logger, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "error")

        setup_logging()

        assert root_logger.level == logging.ERROR
