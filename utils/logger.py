import logging
from logging.handlers import RotatingFileHandler
import os
from utils.config import ActiveConfig


def build_logger(name: str = "EntityResolution") -> logging.Logger:
    """
    Create the application logger.

    Logs to the console always, and to a rotating file under
    ActiveConfig.LOG_DIR when ActiveConfig.LOG_TO_FILE is set.

    Args:
        name (str, optional): Logger name. Defaults to "EntityResolution".

    Returns:
        logging.Logger: Configured logger
    """
    level = getattr(logging, ActiveConfig.LOG_LEVEL)
    log = logging.getLogger(name)
    log.setLevel(level)

    # Re-importing must not stack handlers
    if log.handlers:
        log.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    handlers = [logging.StreamHandler()]
    if ActiveConfig.LOG_TO_FILE:
        os.makedirs(ActiveConfig.LOG_DIR, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=os.path.join(ActiveConfig.LOG_DIR, ActiveConfig.LOG_FILE),
            maxBytes=ActiveConfig.LOG_MAX_BYTES,
            backupCount=ActiveConfig.LOG_BACKUP_COUNT,
        ))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        log.addHandler(handler)
    return log


logger = build_logger()
