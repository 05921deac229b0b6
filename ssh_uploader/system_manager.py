import logging
import time
from pathlib import Path
from typing import Union

from .config_manager import DEFAULT_LOG_DIR


def setup_logging(log_dir: Union[str, Path] = DEFAULT_LOG_DIR, debug: bool = False) -> Path:
    """Configures the root logger for file-based logging.

    This function sets up a `FileHandler` that logs messages to a timestamped
    file in `log_dir`. Console handlers (like RichHandler) are configured
    separately by the command-line entry point.

    Args:
        log_dir: The directory to write log files to. Created if missing.
        debug: If `True`, sets the logging level to `DEBUG`, otherwise `INFO`.

    Returns:
        The path of the new log file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    log_file_path = log_dir / f"ssh_uploader_{timestamp}.log"

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    if logger.hasHandlers():
        logger.handlers.clear()

    file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.info("--- ssh-uploader file logging started ---")
    return log_file_path
