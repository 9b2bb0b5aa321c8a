import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from utils.settings import CONFIG_DIR

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)-20s: %(message)s"
LOG_FILE_NAME = "opendbconnector.log"


def configure_logging(level: str | int = "INFO", log_dir: Path | None = None) -> Path | None:
    """Set up console logging plus a rotating file under the config folder.

    Returns the log file path, or None when only console logging could be set up.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    for name in ("db", "utils", "app"):
        logging.getLogger(name).setLevel(level)

    target_dir = Path(log_dir) if log_dir else CONFIG_DIR / "logs"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        log_file = target_dir / LOG_FILE_NAME
        handler = RotatingFileHandler(str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    except OSError:
        # console logging keeps working
        logging.getLogger(__name__).exception("Failed to configure file logger")
        return None
    logging.getLogger(__name__).debug("File logging configured: %s", log_file)
    return log_file
