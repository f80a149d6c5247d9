import json
import logging

import pytest
import structlog

from turnloop.logging import bind_context, clear_context, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_json_logs_carry_turn_context(capsys, restore_root_logger) -> None:
    configure_logging("INFO", json_output=True)
    bind_context(turn_id="trn_1", family_id="fam_1")
    logging.getLogger("turnloop.test").info("Polling %s", "resp_1")
    clear_context()
    logging.getLogger("turnloop.test").info("after clear")

    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.strip()]
    assert lines[0]["event"] == "Polling resp_1"
    assert lines[0]["turn_id"] == "trn_1"
    assert lines[0]["family_id"] == "fam_1"
    assert lines[0]["level"] == "info"
    assert "turn_id" not in lines[1]


def test_httpx_noise_is_quieted(restore_root_logger) -> None:
    configure_logging("DEBUG", json_output=False)
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
