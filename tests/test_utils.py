"""Tests for utility functions."""

import logging

import pytest

from pharmacoassoc.utils import ensure_dir, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Keep handlers added by setup_logging from leaking into other tests."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    for handler in root_logger.handlers[:]:
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(level)


def test_setup_logging(tmp_path):
    """Test setting up logging configuration."""
    log_dir = tmp_path / "logs"

    logger = setup_logging(log_dir)
    assert log_dir.exists()
    assert (log_dir / "pipeline.log").exists()
    assert logger.name == "pharmacoassoc"

    logging.getLogger("pharmacoassoc.stats").debug("debug goes to the file")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "debug goes to the file" in (log_dir / "pipeline.log").read_text()


def test_setup_logging_does_not_duplicate_handlers(tmp_path):
    """Calling setup twice replaces the handlers it installed."""
    setup_logging(tmp_path / "logs")
    count = len(logging.getLogger().handlers)
    setup_logging(tmp_path / "logs", level=logging.DEBUG)
    assert len(logging.getLogger().handlers) == count


def test_setup_logging_console_level(tmp_path):
    """The console handler uses the requested level."""
    setup_logging(None, level=logging.WARNING)
    console = [h for h in logging.getLogger().handlers if getattr(h, "_pharmacoassoc", False)]
    assert len(console) == 1
    assert console[0].level == logging.WARNING


def test_setup_logging_nested_dir(tmp_path):
    """Test setting up logging in a nested directory."""
    log_dir = tmp_path / "nested" / "logs"
    setup_logging(log_dir)
    assert log_dir.exists()
    assert (log_dir / "pipeline.log").exists()


def test_ensure_dir(tmp_path):
    """Test directory creation."""
    test_dir = tmp_path / "test_dir"
    assert ensure_dir(test_dir) == test_dir
    assert test_dir.is_dir()

    # Existing directory
    ensure_dir(test_dir)


def test_ensure_dir_nested(tmp_path):
    """Test nested directory creation."""
    test_dir = tmp_path / "nested" / "test_dir"
    ensure_dir(test_dir)
    assert test_dir.is_dir()


def test_ensure_dir_file_exists(tmp_path):
    """Test behavior when a file exists at the target path."""
    test_path = tmp_path / "test_file"
    test_path.touch()

    with pytest.raises(FileExistsError):
        ensure_dir(test_path)
