"""
Logging Configuration
Sets up the package logger for the command-line tools.
"""
import logging
from typing import Optional

from rich.logging import RichHandler


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configures the logger for the 'petrecon' namespace.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file.

    Returns:
        logging.Logger: The configured package logger.
    """
    logger = logging.getLogger("petrecon")
    logger.setLevel(level)

    # Avoid duplicate handlers when the CLI is invoked repeatedly in one process
    if logger.hasHandlers():
        logger.handlers.clear()

    console_handler = RichHandler(show_path=False, markup=False, log_time_format="%H:%M:%S")
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        ))
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug("Logging initialized.")
    return logger
