from __future__ import annotations

import logging

from device_intake.logging.init import (
    APP_LOGGER_NAME,
    SUMMARY_LEVEL,
    LabeledFormatter,
    get_logger,
    log_summary,
    reset_logging,
    set_debug,
    setup_logging,
)


def _record(level: int, msg: str) -> logging.LogRecord:
    return logging.LogRecord("device_intake", level, __file__, 1, msg, None, None)


def test_setup_logging_creates_logger_with_labeled_formatter():
    logger = setup_logging()
    assert logger.name == APP_LOGGER_NAME
    assert logger.level == logging.INFO
    assert logger.propagate is False
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, LabeledFormatter)


def test_setup_logging_is_idempotent():
    first = setup_logging()
    assert setup_logging() is first
    assert get_logger() is first
    assert len(first.handlers) == 1


def test_labels():
    fmt = LabeledFormatter()
    assert fmt.format(_record(logging.INFO, "started")) == "INFO started"
    assert fmt.format(_record(logging.WARNING, "row skipped")) == "WARN row skipped"
    assert fmt.format(_record(logging.ERROR, "boom")) == "ERROR boom"
    assert fmt.format(_record(SUMMARY_LEVEL, "files=1/1")) == "SUMMARY files=1/1"
    assert fmt.format(_record(logging.DEBUG, "detail")) == "DEBUG detail"


def test_module_loggers_share_the_handler(capsys):
    setup_logging()
    logging.getLogger("device_intake.services.duplicates").info("duplicate imei=351454482579210")
    log_summary("files=1/1 success=1")
    out = capsys.readouterr().out.splitlines()
    assert out == ["INFO duplicate imei=351454482579210", "SUMMARY files=1/1 success=1"]


def test_debug_toggle(capsys):
    set_debug(True)
    child = logging.getLogger("device_intake.excel.row_extractor")
    child.debug("row=4 imei=351454482579210")
    set_debug(False)
    child.debug("hidden")
    assert capsys.readouterr().out.splitlines() == ["DEBUG row=4 imei=351454482579210"]


def test_reset_logging_restores_propagation():
    logger = setup_logging()
    reset_logging()
    assert logger.handlers == []
    assert logger.propagate is True
    assert get_logger() is logger
    assert len(logger.handlers) == 1
