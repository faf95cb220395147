"""Tests for the logger tree (services/api/logging_config.py)."""

from __future__ import annotations

import json
import logging

from services.api.logging_config import JSONFormatter, get_logger
from services.rpc import executor
from services.settlement import deposit, root_acceptance, withdrawal


def test_loggers_share_one_namespace():
    assert get_logger().name == "settlement"
    assert get_logger("rpc.executor").name == "settlement.rpc.executor"


def test_module_logger_names():
    assert root_acceptance.logger.name == "settlement.root_acceptance"
    assert withdrawal.logger.name == "settlement.withdrawal"
    assert deposit.logger.name == "settlement.deposit"
    assert executor.logger.name == "settlement.rpc.executor"


def test_no_doubled_prefix():
    names = [name for name in logging.root.manager.loggerDict if name.startswith("settlement.")]
    assert names
    assert not [name for name in names if name.startswith("settlement.settlement")]


def test_json_formatter():
    record = logging.LogRecord("settlement.api", logging.INFO, __file__, 10, "ready %s", ("ok",), None)
    entry = json.loads(JSONFormatter().format(record))
    assert entry["logger"] == "settlement.api"
    assert entry["message"] == "ready ok"
    assert entry["level"] == "INFO"
