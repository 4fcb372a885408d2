"""Tests for cartwise.config.logging: formatters and request-bound loggers."""

import json
import logging

from cartwise.config.logging import ConsoleFormatter, JSONFormatter, get_logger, request_logger


def _record(**extra):
    record = logging.LogRecord(
        name="cartwise.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="prompt_rendered",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_includes_extras(self):
        line = JSONFormatter().format(_record(tokens=212, template="faq_response"))
        entry = json.loads(line)
        assert entry["message"] == "prompt_rendered"
        assert entry["level"] == "INFO"
        assert entry["tokens"] == 212
        assert entry["template"] == "faq_response"

    def test_console_includes_extras(self):
        line = ConsoleFormatter().format(_record(tokens=212))
        assert "cartwise.test: prompt_rendered" in line
        assert "tokens=212" in line


class TestRequestLogger:
    def test_binds_request_ids(self, caplog):
        log = request_logger(get_logger("cartwise.test"), "s-1", "m-1")
        with caplog.at_level(logging.INFO, logger="cartwise.test"):
            log.info("attempt_failed", extra={"attempt": 1})

        record = caplog.records[-1]
        assert record.session_id == "s-1"
        assert record.merchant_id == "m-1"
        assert record.attempt == 1
