import logging
import os
from logging.handlers import RotatingFileHandler

AUDIT_LOGGER_NAME = "evfleet.audit"

_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(app):
    formatter = logging.Formatter(_FORMAT)
    handlers = []

    log_file = app.config.get("LOG_FILE")
    if log_file:
        log_file_path = os.path.abspath(log_file)
        try:
            file_handler = RotatingFileHandler(log_file_path, maxBytes=1_000_000, backupCount=3)
        except OSError as e:
            app.logger.warning("File logging disabled (%s): %s", log_file_path, e)
        else:
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    app.logger.setLevel(logging.INFO)
    audit_logger = get_audit_logger()
    audit_logger.setLevel(logging.INFO)
    # Replaced rather than appended so repeated create_app() calls don't duplicate audit lines
    audit_logger.handlers = list(handlers)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info("Logging setup complete")


def get_audit_logger():
    """Sink for access-control decisions; handlers are attached by setup_logging."""
    return logging.getLogger(AUDIT_LOGGER_NAME)
