import logging

from logging_config import LOGGER_NAME, get_logger, setup_logging


def test_file_handler_receives_debug_and_console_respects_level(tmp_path):
    log_file = tmp_path / "juspost.log"
    try:
        logger = setup_logging(level="WARNING", log_file=str(log_file))
        get_logger("api").debug("debug line")
        get_logger("api").error("error line")
        for handler in logger.handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "| DEBUG | juspost.api | debug line" in content
        assert "| ERROR | juspost.api | error line" in content

        console = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
        assert [h.level for h in console] == [logging.WARNING]
    finally:
        setup_logging(log_file="")


def test_setup_is_idempotent(tmp_path):
    try:
        setup_logging(log_file=str(tmp_path / "a.log"))
        logger = setup_logging(log_file=str(tmp_path / "a.log"))
        assert len(logger.handlers) == 2
        assert logger is logging.getLogger(LOGGER_NAME)
    finally:
        setup_logging(log_file="")


def test_empty_log_file_disables_file_handler():
    logger = setup_logging(log_file="")
    assert len(logger.handlers) == 1
    assert not isinstance(logger.handlers[0], logging.FileHandler)
