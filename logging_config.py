"""Logging configuration for the POS sync backend."""
import logging
import logging.handlers
import os
from collections import deque
from datetime import datetime
from pythonjsonlogger import jsonlogger

class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter for structured logging."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        log_record['timestamp'] = datetime.utcnow().isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno
        sync_log_id = getattr(record, 'sync_log_id', None)
        if sync_log_id is not None:
            log_record['sync_log_id'] = sync_log_id

class SyncRunLogHandler(logging.Handler):
    """Keeps the log lines of a single sync run in memory."""

    def __init__(self, sync_log_id, max_records=1000):
        super().__init__()
        self.sync_log_id = sync_log_id
        self.records = deque(maxlen=max_records)

    def emit(self, record):
        try:
            self.records.append({
                'timestamp': datetime.utcnow().isoformat(),
                'level': record.levelname,
                'message': self.format(record)
            })
        except Exception:
            self.handleError(record)

    def get_logs(self):
        return list(self.records)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 10

def _rotating_handler(path, level, formatter):
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler

def setup_app_logging(app, log_path, level=logging.INFO):
    """Send app and module logs to the console and to rotating files under ``log_path``.

    Files: ``pos_sync.log`` (text), ``pos_sync.json.log`` (structured) and
    ``errors.log`` (ERROR and above).
    """
    os.makedirs(log_path, exist_ok=True)
    text_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(text_formatter)

    handlers = [
        console_handler,
        _rotating_handler(os.path.join(log_path, 'pos_sync.log'), level, text_formatter),
        _rotating_handler(os.path.join(log_path, 'pos_sync.json.log'), level, CustomJsonFormatter()),
        _rotating_handler(os.path.join(log_path, 'errors.log'), logging.ERROR, text_formatter),
    ]

    # Module loggers propagate to the root logger, the Flask logger does not
    root = logging.getLogger()
    app.logger.handlers = []
    app.logger.propagate = False
    for handler in handlers:
        app.logger.addHandler(handler)
        root.addHandler(handler)

    app.logger.setLevel(level)
    root.setLevel(level)
    app.logger.info(f"Logging to {log_path}")

def get_sync_logger(sync_log_id, max_records=1000):
    """Get a logger that captures the lines of one sync run.

    Records still propagate to the application handlers.
    """
    logger = logging.getLogger(f'pos_sync.run.{sync_log_id}')
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    run_handler = SyncRunLogHandler(sync_log_id, max_records=max_records)
    run_handler.setLevel(logging.INFO)
    run_handler.setFormatter(logging.Formatter('%(levelname)s - %(message)s'))
    logger.addHandler(run_handler)

    return logger, run_handler

def release_sync_logger(sync_log_id):
    """Drop the handlers of a finished run's logger."""
    logger = logging.getLogger(f'pos_sync.run.{sync_log_id}')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
