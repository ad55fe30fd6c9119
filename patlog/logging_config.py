# patlog/logging_config.py
import logging
import logging.handlers
import sys
import os
from datetime import datetime
from patlog import config

def setup_logging(log_dir=None):
    """Configures logging to a daily rotating file and to the console."""
    log_dir = log_dir or config.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    log_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)-8s - %(name)-15s - %(message)s'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Reloads (uvicorn --reload) must not stack handlers
    for handler in list(root_logger.handlers):
        if getattr(handler, "_patlog_handler", False):
            root_logger.removeHandler(handler)

    log_filename = os.path.join(log_dir, f"patlog_{datetime.now().strftime('%Y-%m-%d')}.log")
    file_handler = logging.handlers.RotatingFileHandler(
        log_filename, maxBytes=5*1024*1024, backupCount=5, encoding='utf-8'
    )
    file_handler.setFormatter(log_formatter)
    file_handler.setLevel(logging.INFO)
    file_handler._patlog_handler = True

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_formatter)
    console_handler.setLevel(logging.DEBUG)
    console_handler._patlog_handler = True

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Pillow logs every decoder plugin it tries at DEBUG
    logging.getLogger("PIL").setLevel(logging.INFO)

    logging.info("Logging configured.")
