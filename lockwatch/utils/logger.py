"""
Logging setup shared by every lockwatch module.
"""
import logging
import os
import sys

from lockwatch.utils.config import load_settings

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATEFMT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name: str) -> logging.Logger:
    """Console handler always, file handler when LOG_FILE is set."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    cfg = load_settings()
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    logger.setLevel(level)

    formatter = logging.Formatter(FORMAT, datefmt=DATEFMT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if cfg.log_file:
        log_dir = os.path.dirname(cfg.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
