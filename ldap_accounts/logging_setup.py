"""
Logging setup and configuration for LDAP Account Tools.

Centralised logging for account commands: a rotated log file with a retention
window, optional console output, scrubbing of passwords and password hashes,
and an audit channel recording every account change.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta

LOG_FILE_NAME = 'ldap-accounts.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub passwords and password hashes from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'userPassword', 'sambaNTPassword',
        'sambaLMPassword', 'secret', 'credential', 'pwd', 'nt_hash', 'lm_hash'
    ]

    # {CRYPT}$6$salt$hash and bare $id$salt$hash crypt strings
    CRYPT_PATTERN = re.compile(r'(\{CRYPT\})?\$[0-9a-z]+\$(rounds=\d+\$)?[./0-9A-Za-z]*\$[./0-9A-Za-z]+')

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            for keyword in self.SENSITIVE_KEYWORDS:
                # key=value and key: value
                msg = re.sub(rf'({keyword}\s*[=:]\s*)[^\s,}}\]\'"]+', r'\1****', msg, flags=re.IGNORECASE)
                # "key": "value" and 'key': ['value']
                msg = re.sub(rf'([\'"]{keyword}[\'"]\s*:\s*\[?\s*[\'"])[^\'"]*([\'"])', r'\1****\2',
                             msg, flags=re.IGNORECASE)

            msg = self.CRYPT_PATTERN.sub('****', msg)
            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for the account tools.

    Provides file-based logging with rotation, retention policies, and
    console output for the operator.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).debug(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Create the log directory, disabling file logging if that fails."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not create log directory {self.log_dir}: {e}")
                self.log_dir = None

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if str(rotation).lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {log_file}: {e}")


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Audit trail for binds and account changes."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_bind_attempt(self, server: str, bind_dn: str, success: bool):
        """Log directory bind attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Bind {status}: server={server} dn={bind_dn}")

    def log_account_operation(self, operation: str, kind: str, name: str, success: bool, details: str = ""):
        """Log one create/modify/delete of a user, group or role."""
        status = "SUCCESS" if success else "FAILURE"
        message = f"Account operation {status}: {operation} {kind}={name}"
        if details:
            message += f" ({details})"
        if success:
            self.logger.info(message)
        else:
            self.logger.warning(message)


# Global security logger instance
security_logger = SecurityAuditLogger()
