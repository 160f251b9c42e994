"""
Logging setup for command line sessions: console output plus the
deployment log under the deployment root.
"""
import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Handlers installed by configure_logging
_installed = []


def remove_handlers():
    """
    Closes and detaches the handlers added by configure_logging.
    Handlers installed by anything else are left alone.
    """
    root_logger = logging.getLogger()
    for handler in _installed:
        handler.close()
        root_logger.removeHandler(handler)
    _installed.clear()


def configure_logging(logs_dir: Optional[Path] = None, debug: bool = False) -> Optional[Path]:
    """
    Configures the root logger.

    :param logs_dir: Directory for ``deployment.log``; no file logging if None.
    :param debug: Log DEBUG messages to the console as well.
    :return: Path of the log file, if one is used.
    """
    remove_handlers()
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    _installed.append(console_handler)

    log_file = None
    if logs_dir is not None:
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = logs_dir / "deployment.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        _installed.append(file_handler)

    # Library chatter stays out of the deployment log
    for noisy in ("urllib3", "docker", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return log_file
