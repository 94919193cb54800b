"""
Centralized logging configuration for the Order Assembly engine.

This module provides the logging setup shared by every engine component:
- Structured JSON logging to daily files (one object per line)
- Automatic file rotation and cleanup of old logs
- Human-readable console output
- Context-aware records (order_id, session_id, worker_id)

Assembly stations run unattended for whole shifts, so the log is the only
record of why a row was rejected, which scale frame was discarded, or which
kit definition could not be expanded.

Log file location: <LogDir>/YYYY-MM-DD.log (default ~/.order_assembly/logs)

Example log entry (JSON format):
    {"timestamp": "2026-10-18T09:12:03.412", "level": "INFO", "tool": "order_assembly",
     "order_id": "10452", "session_id": "10452-1", "worker_id": "007",
     "module": "scan_router", "function": "route", "line": 141,
     "message": "Box box_1 scanned, awaiting weight"}
"""

import logging
import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
import configparser
from contextvars import ContextVar


# Context variables for structured logging
_order_id: ContextVar[Optional[str]] = ContextVar('order_id', default=None)
_session_id: ContextVar[Optional[str]] = ContextVar('session_id', default=None)
_worker_id: ContextVar[Optional[str]] = ContextVar('worker_id', default=None)

DEFAULT_LOG_DIR = Path(os.path.expanduser("~")) / ".order_assembly" / "logs"


class StructuredJSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON with fields:
    - timestamp: ISO 8601 format with milliseconds
    - level: Log level name
    - tool: Always "order_assembly"
    - order_id / session_id / worker_id: Current context (if set)
    - module, function, line: Origin of the record
    - message: Log message
    - exc_info: Exception information (if present)
    - extra: Value of ``extra_data`` passed via ``extra=`` (if present)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(timespec='milliseconds'),
            'level': record.levelname,
            'tool': 'order_assembly',
            'order_id': _order_id.get(),
            'session_id': _session_id.get(),
            'worker_id': _worker_id.get(),
            'module': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False, default=str)


class AppLogger:
    """
    Application logger with one-time lazy configuration.

    The first call to get_logger() reads config.ini and installs the file
    and console handlers on the root logger; later calls only hand out
    named loggers that share those handlers.

    Settings read from config.ini:
        [Logging]
        LogLevel = INFO
        MaxLogSizeMB = 10
        LogRetentionDays = 30
        LogDir = /var/log/order_assembly
    """

    _initialized: bool = False
    config_path: Path = Path('config.ini')

    @classmethod
    def get_logger(cls, name: str = 'OrderAssembly') -> logging.Logger:
        """
        Get or create a logger, configuring logging on first use.

        Args:
            name: Logger name, typically the module name (__name__)

        Returns:
            Logger sharing the application's handlers
        """
        if not cls._initialized:
            cls._setup_logging()
            cls._initialized = True

        return logging.getLogger(name)

    @classmethod
    def _setup_logging(cls):
        """
        Install file and console handlers on the root logger.

        Log files are named by day (2026-10-18.log). When a file exceeds
        MaxLogSizeMB it rotates to .log.1, .log.2 ... up to 30 backups.
        """
        config = cls._load_config()

        log_dir = Path(config.get('Logging', 'LogDir', fallback=str(DEFAULT_LOG_DIR)))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log_dir = DEFAULT_LOG_DIR
            log_dir.mkdir(parents=True, exist_ok=True)
            print(f"Warning: Could not create log directory. Using {log_dir}. Error: {e}")

        log_file = log_dir / f"{datetime.now():%Y-%m-%d}.log"

        log_level_str = config.get('Logging', 'LogLevel', fallback='INFO')
        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        max_log_size = config.getint('Logging', 'MaxLogSizeMB', fallback=10) * 1024 * 1024

        console_formatter = logging.Formatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_log_size,
            backupCount=30,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(StructuredJSONFormatter())

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

        retention_days = config.getint('Logging', 'LogRetentionDays', fallback=30)
        cls._cleanup_old_logs(log_dir, retention_days)

        logger = logging.getLogger('OrderAssembly')
        logger.info("=" * 80)
        logger.info("Order Assembly engine started")
        logger.info(f"Log Level: {log_level_str}")
        logger.info(f"Log File: {log_file}")
        logger.info("=" * 80)

    @classmethod
    def _load_config(cls) -> configparser.ConfigParser:
        """
        Load the [Logging] section from config.ini.

        A missing file is not an error: an empty parser is returned and
        every setting falls back to its default.
        """
        config = configparser.ConfigParser()

        if cls.config_path.exists():
            config.read(cls.config_path, encoding='utf-8')

        return config

    @staticmethod
    def _cleanup_old_logs(log_dir: Path, retention_days: int):
        """
        Delete log files older than the retention period.

        Args:
            log_dir: Directory containing log files
            retention_days: Days to keep; 0 or negative keeps everything
        """
        if retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=retention_days)

        try:
            for log_file in log_dir.glob("*.log*"):
                file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
                if file_mtime < cutoff_date:
                    log_file.unlink()
                    logging.getLogger('OrderAssembly').debug(f"Deleted old log: {log_file.name}")
        except OSError as e:
            # File in use or permissions; cleanup is retried on next start
            logging.getLogger('OrderAssembly').warning(f"Failed to cleanup old logs: {e}")


def get_logger(name: str = 'OrderAssembly') -> logging.Logger:
    """
    Get application logger.

    Example:
        >>> from logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Checklist built")
    """
    return AppLogger.get_logger(name)


def set_order_context(order_id: Optional[str]) -> None:
    """Set the order ID stamped on subsequent log records (None clears it)."""
    _order_id.set(order_id)


def set_session_context(session_id: Optional[str]) -> None:
    """Set the assembly session ID stamped on subsequent log records."""
    _session_id.set(session_id)


def set_worker_context(worker_id: Optional[str]) -> None:
    """Set the worker ID stamped on subsequent log records."""
    _worker_id.set(worker_id)


def clear_logging_context() -> None:
    """Clear order, session and worker context."""
    _order_id.set(None)
    _session_id.set(None)
    _worker_id.set(None)
