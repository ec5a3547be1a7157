"""
Tests for configuration and structured logging
"""

import json
import sys
import logging
import pytest

from pawnshop_core import config as config_module
from pawnshop_core.config import PawnshopConfig, get_config, reload_config
from pawnshop_core.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestConfig:
    """Test defaults and environment overrides"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PAWNSHOP_DATABASE_URL", raising=False)
        monkeypatch.delenv("PAWNSHOP_SETTLEMENT_MAX_RETRIES", raising=False)
        cfg = PawnshopConfig(_env_file=None)

        assert cfg.database_url == "memory://"
        assert cfg.settlement_max_retries == 3
        assert cfg.payment_number_prefix == "PY"
        assert cfg.outbox_dispatch_inline is True
        assert cfg.api_port == 8091

    def test_environment_override(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("PAWNSHOP_DATABASE_URL", "sqlite:///tmp/pawnshop.db")
        monkeypatch.setenv("PAWNSHOP_SETTLEMENT_MAX_RETRIES", "7")
        monkeypatch.setenv("PAWNSHOP_OUTBOX_DISPATCH_INLINE", "false")
        try:
            cfg = reload_config()

            assert cfg is get_config()
            assert cfg.database_url == "sqlite:///tmp/pawnshop.db"
            assert cfg.settlement_max_retries == 7
            assert cfg.outbox_dispatch_inline is False
        finally:
            config_module.config = original


class TestJSONFormatter:
    """Test structured log records"""

    def make_record(self, **attrs):
        record = logging.LogRecord("pawnshop.settlement", logging.INFO, __file__, 1,
                                   "Payment settled", None, None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_structured_fields(self):
        record = self.make_record(user_id="cashier_1", action="settle_payment",
                                  resource="loan:l1", extra={"amount": "100.00"})

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "pawnshop.settlement"
        assert entry["message"] == "Payment settled"
        assert entry["user_id"] == "cashier_1"
        assert entry["action"] == "settle_payment"
        assert entry["resource"] == "loan:l1"
        assert entry["extra"] == {"amount": "100.00"}
        assert "correlation_id" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("store down")
        except RuntimeError:
            record = logging.LogRecord("pawnshop", logging.ERROR, __file__, 1,
                                       "failed", None, sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: store down" in entry["exception"]


class TestLogAction:
    """Test the log_action helper"""

    def test_extra_fields_attached(self, caplog):
        logger = get_logger("pawnshop.test_actions")

        with caplog.at_level(logging.INFO, logger="pawnshop.test_actions"):
            log_action(logger, "info", "Payment reversed", user_id="manager_1",
                       action="reverse_payment", resource="payment:p1",
                       extra={"reason": "Duplicate"})

        record = caplog.records[-1]
        assert record.getMessage() == "Payment reversed"
        assert record.user_id == "manager_1"
        assert record.action == "reverse_payment"
        assert record.resource == "payment:p1"
        assert record.extra == {"reason": "Duplicate"}

    def test_empty_fields_omitted(self, caplog):
        logger = get_logger("pawnshop.test_actions")

        with caplog.at_level(logging.WARNING, logger="pawnshop.test_actions"):
            log_action(logger, "warning", "Settlement rejected")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert not hasattr(record, "user_id")


class TestSetupLogging:
    """setup_logging configures a dedicated logger"""

    @pytest.fixture
    def logger_name(self):
        name = "pawnshop_setup_test"
        yield name
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    def test_json_file_output(self, tmp_path, logger_name):
        log_file = tmp_path / "pawnshop.log"
        logger = setup_logging("DEBUG", logger_name=logger_name, log_file=str(log_file))

        log_action(logger, "info", "Outbox message dispatched", action="dispatch_event")
        logger.handlers[0].flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "Outbox message dispatched"
        assert entry["action"] == "dispatch_event"
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_repeat_setup_does_not_duplicate_handlers(self, logger_name):
        setup_logging("INFO", logger_name=logger_name)
        logger = setup_logging("WARNING", logger_name=logger_name, log_format="text")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING
