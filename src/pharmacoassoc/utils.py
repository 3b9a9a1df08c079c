"""Utility functions for the drug-response association pipeline."""

import logging
from pathlib import Path
from typing import Optional, Union


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level=logging.INFO):
    """Set up logging configuration.

    Debug output and above goes to ``<log_dir>/pipeline.log`` when a log
    directory is given; the console only shows ``level`` and above.

    Args:
        log_dir: Directory to store log files
        level: Console logging level

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove handlers from a previous call to avoid duplicated lines
    for handler in root_logger.handlers[:]:
        if getattr(handler, "_pharmacoassoc", False):
            root_logger.removeHandler(handler)
            handler.close()

    if log_dir:
        log_dir = ensure_dir(Path(log_dir))
        file_handler = logging.FileHandler(log_dir / 'pipeline.log', mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        file_handler._pharmacoassoc = True
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    console_handler._pharmacoassoc = True
    root_logger.addHandler(console_handler)

    root_logger.info("Logging initialized")
    return logging.getLogger('pharmacoassoc')


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
