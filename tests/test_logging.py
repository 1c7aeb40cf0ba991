# tests/test_logging.py
import logging

import pytest

from noisemap.logging_config import resolve_level, setup_logging


@pytest.fixture
def noisemap_logger():
    logger = logging.getLogger("noisemap")
    saved = list(logger.handlers), logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in saved[0]:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(saved[1])
    logging.captureWarnings(False)


def test_level_names():
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(logging.WARNING) == logging.WARNING
    with pytest.raises(ValueError):
        resolve_level("chatty")


def test_repeated_setup_keeps_foreign_handlers(noisemap_logger, tmp_path):
    foreign = logging.NullHandler()
    noisemap_logger.addHandler(foreign)
    setup_logging("INFO")
    setup_logging("DEBUG", str(tmp_path / "run.log"))
    assert foreign in noisemap_logger.handlers
    assert len(noisemap_logger.handlers) == 3
    assert noisemap_logger.level == logging.DEBUG


def test_log_file_receives_cell_messages(noisemap_logger, tmp_path):
    log_file = tmp_path / "run.log"
    setup_logging(logging.INFO, str(log_file))
    logging.getLogger("noisemap.runner").info("Cell %d,%d done", 1, 2)
    setup_logging(logging.INFO, str(log_file), append=True)
    logging.getLogger("noisemap.runner").info("second run")
    text = log_file.read_text(encoding="utf-8")
    assert "noisemap.runner - INFO - Cell 1,2 done" in text
    assert "second run" in text
