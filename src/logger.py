r"""
Centralized logging configuration for the Scan Station.

This module provides the logging system shared by every station module:
- Structured JSON logging to file for later parsing and auditing
- Automatic file rotation (prevents log files from growing indefinitely)
- Configurable log levels (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- Automatic cleanup of old logs (retention policy)
- Both file and console output
- Context-aware logging (station_id, operator_id, po_number)

On the packing floor the logs are the audit trail: which box was opened,
which pair was counted, which carton was closed and which PO was sent to T4.

Log file location: ~/.scan_station/logs/ (override with [Logging] LogDir)
Log file format: YYYY-MM-DD.log

Example log entry (JSON format):
    {"timestamp": "2025-11-05T14:30:45.123", "level": "INFO", "tool": "scan_station",
     "station_id": "LINE-2", "operator_id": "017", "po_number": "4500123",
     "module": "carton_logic", "function": "scan_pair", "line": 212,
     "message": "Carton C100 complete"}
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
_station_id: ContextVar[Optional[str]] = ContextVar('station_id', default=None)
_operator_id: ContextVar[Optional[str]] = ContextVar('operator_id', default=None)
_po_number: ContextVar[Optional[str]] = ContextVar('po_number', default=None)


class StructuredJSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Outputs log records as JSON with fields:
    - timestamp: ISO 8601 format with milliseconds
    - level: Log level
    - tool: Always "scan_station"
    - station_id / operator_id / po_number: Current context (if set)
    - module, function, line: Origin of the record
    - message: Log message
    - exc_info: Exception information (if present)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'tool': 'scan_station',
            'station_id': _station_id.get(),
            'operator_id': _operator_id.get(),
            'po_number': _po_number.get(),
            'module': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False)


class AppLogger:
    """
    Centralized application logger with file rotation and cleanup.

    Logging is configured once, lazily, on the first get_logger() call,
    regardless of how many modules import the logger.

    Settings are read from config.ini:
    - LogLevel: DEBUG, INFO, WARNING, ERROR, CRITICAL
    - MaxLogSizeMB: Maximum size per log file before rotation
    - LogRetentionDays: How many days of logs to keep
    - LogDir: Directory for log files (default ~/.scan_station/logs)
    """

    _instance: Optional[logging.Logger] = None
    _initialized: bool = False

    @classmethod
    def get_logger(cls, name: str = 'ScanStation') -> logging.Logger:
        """
        Get or create application logger with lazy initialization.

        Usage in modules:
            from logger import get_logger
            logger = get_logger(__name__)
            logger.info("Box opened")

        Args:
            name: Logger name, typically the module name (__name__)

        Returns:
            Configured logger instance for the specified name
        """
        if not cls._initialized:
            cls._setup_logging()
            cls._initialized = True

        return logging.getLogger(name)

    @classmethod
    def _setup_logging(cls):
        """
        Setup logging configuration from config.ini.

        Configures the log directory, level, a JSON file handler with
        rotation, a human-readable console handler, and removes logs older
        than the retention period.
        """
        config = cls._load_config()

        default_dir = Path(os.path.expanduser("~")) / ".scan_station" / "logs"
        log_dir = Path(config.get('Logging', 'LogDir', fallback='') or default_dir)

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Fall back to the home directory if the configured one is unusable
            log_dir = default_dir
            log_dir.mkdir(parents=True, exist_ok=True)
            print(f"Warning: Could not use configured log directory. Using {log_dir}. Error: {e}")

        log_file = log_dir / f"{datetime.now():%Y-%m-%d}.log"

        log_level_str = config.get('Logging', 'LogLevel', fallback='INFO')
        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        max_log_size = config.getint('Logging', 'MaxLogSizeMB', fallback=10) * 1024 * 1024

        json_formatter = StructuredJSONFormatter()

        # Format: timestamp | module | level | function:line | message
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
        file_handler.setFormatter(json_formatter)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

        retention_days = config.getint('Logging', 'LogRetentionDays', fallback=30)
        cls._cleanup_old_logs(log_dir, retention_days)

        logger = logging.getLogger('ScanStation')
        logger.info("=" * 80)
        logger.info("Scan Station Started")
        logger.info(f"Log Level: {log_level_str}")
        logger.info(f"Log File: {log_file}")
        logger.info("=" * 80)

    @staticmethod
    def _load_config() -> configparser.ConfigParser:
        """
        Load configuration from config.ini in the working directory.

        Returns an empty ConfigParser if the file does not exist; callers
        use fallback defaults (INFO level, 10MB size, 30 days retention).
        """
        config = configparser.ConfigParser()
        config_path = Path('config.ini')

        if config_path.exists():
            config.read(config_path, encoding='utf-8')

        return config

    @staticmethod
    def _cleanup_old_logs(log_dir: Path, retention_days: int):
        """
        Delete log files older than the retention period.

        Args:
            log_dir: Directory containing log files
            retention_days: Number of days to keep logs; 0 or negative keeps all
        """
        if retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=retention_days)

        try:
            for log_file in log_dir.glob("*.log*"):
                file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
                if file_mtime < cutoff_date:
                    log_file.unlink()
                    logging.getLogger('ScanStation').debug(f"Deleted old log: {log_file.name}")

        except OSError as e:
            # Non-fatal: a log still held open by another process is retried next start
            logging.getLogger('ScanStation').warning(f"Failed to cleanup old logs: {e}")


def get_logger(name: str = 'ScanStation') -> logging.Logger:
    """
    Get application logger.

    Example:
        >>> from logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Scanning pair")
    """
    return AppLogger.get_logger(name)


def set_station_context(station_id: Optional[str]) -> None:
    """
    Set the scanning station identifier for structured logging context.

    Args:
        station_id: Station identifier (e.g., "LINE-2") or None to clear
    """
    _station_id.set(station_id)


def set_operator_context(operator_id: Optional[str]) -> None:
    """
    Set the operator identifier for structured logging context.

    Args:
        operator_id: Operator identifier (e.g., "017") or None to clear
    """
    _operator_id.set(operator_id)


def set_po_context(po_number: Optional[str]) -> None:
    """
    Set the purchase order being worked for structured logging context.

    Example:
        >>> set_po_context("4500123")
        >>> logger.info("Carton selected")  # Will include po_number="4500123"
    """
    _po_number.set(po_number)


def clear_logging_context() -> None:
    """Clear all logging context (station_id, operator_id, po_number)."""
    _station_id.set(None)
    _operator_id.set(None)
    _po_number.set(None)
