"""
Logging setup and configuration for DDG Sync.

Console output carries a timestamp on every line so runbook output can be
read on its own. An optional transcript file captures the full run with
module and line detail, and can rotate daily.
"""

import os
import re
import logging
import logging.handlers
from typing import Dict, Any, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'secret', 'token', 'credential', 'pwd'
    ]

    _PATTERNS = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ] + [
        re.compile(rf"(['\"]{keyword}['\"]\s*:\s*['\"])[^'\"]*", re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]

    _formatter = logging.Formatter()

    def filter(self, record):
        """Replace secret values with ``****`` in the message and traceback."""
        if hasattr(record, 'msg'):
            record.msg = self._scrub(record.getMessage() if record.args else str(record.msg))
            record.args = None
        if record.exc_info and not record.exc_text:
            # Formatter.format reuses a cached exc_text
            record.exc_text = self._formatter.formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self._scrub(record.exc_text)
        return True

    def _scrub(self, text):
        for pattern in self._PATTERNS:
            text = pattern.sub(r'\1****', text)
        return text


class LoggingManager:
    """
    Manages logging configuration for DDG Sync.

    Configures the root logger once per process: a timestamped console
    handler and, when ``log_path`` is set, a transcript file handler.
    """

    CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s %(message)s'
    TRANSCRIPT_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
    DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self):
        self.configured = False
        self.log_path = None

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: ``logging`` configuration section
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_path = logging_config.get('log_path')
        rotation = str(logging_config.get('rotation', 'none'))
        retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'INFO')).upper()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        if self.log_path:
            file_handler = self._create_file_handler(self.log_path, rotation, retention_days)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(logging.Formatter(self.TRANSCRIPT_FORMAT, datefmt=self.DATE_FORMAT))
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(logging.Formatter(self.CONSOLE_FORMAT, datefmt=self.DATE_FORMAT))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, transcript={self.log_path or 'disabled'}, "
                    f"console={console_enabled}")

    def _create_file_handler(self, log_path: str, rotation: str, retention_days: int) -> logging.Handler:
        """
        Create the transcript handler.

        Args:
            log_path: Transcript file path
            rotation: 'daily'/'midnight' to rotate at midnight, anything else appends
            retention_days: Rotated files to keep

        Returns:
            Configured logging handler
        """
        log_dir = os.path.dirname(os.path.abspath(log_path))
        os.makedirs(log_dir, exist_ok=True)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_path,
                when='midnight',
                interval=1,
                backupCount=retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_path, encoding='utf-8')

        return handler

    def reset(self) -> None:
        """Detach and close handlers so logging can be configured again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False
        self.log_path = None


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    """Undo :func:`setup_logging`; used between runs in the same process."""
    _logging_manager.reset()
