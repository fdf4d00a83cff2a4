"""
Logging for LDAP Mailchimp Sync.

A run writes a detailed log file under ``logging.log_dir`` (rotated at
midnight unless rotation is off) and, for interactive use, short console
lines. Bind passwords and Mailchimp API keys are masked by a filter on every
handler before anything is written.
"""

import os
import re
import logging
import logging.handlers
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(threadName)s %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(levelname)s: %(message)s'
MASK = '****'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'key_secret', 'secret', 'api_key', 'apikey', 'token',
        'credential', 'pass', 'pwd', 'authorization',
    ]

    # Mailchimp API keys: 32 hex characters followed by the datacenter
    MAILCHIMP_KEY_PATTERN = re.compile(r'\b[0-9a-f]{32}-[a-z]{2,4}\d{1,3}\b', re.IGNORECASE)
    AUTH_HEADER_PATTERN = re.compile(r'(Authorization:\s*(?:Basic|Bearer)\s+)[^\s,}\]]+', re.IGNORECASE)

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            word = re.escape(keyword)
            self._patterns.extend([
                # a letter or digit before the keyword makes it part of another word (bypass)
                re.compile(rf'(?<![a-z0-9])({word}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE),
                re.compile(rf'("{word}"\s*:\s*")[^"]*(")', re.IGNORECASE),
                re.compile(rf"('{word}'\s*:\s*')[^']*(')", re.IGNORECASE),
            ])

    def scrub(self, text: str) -> str:
        """Return ``text`` with every recognised secret replaced by the mask."""
        for pattern in self._patterns:
            text = pattern.sub(rf'\g<1>{MASK}\g<2>', text)
        text = self.AUTH_HEADER_PATTERN.sub(rf'\g<1>{MASK}', text)
        return self.MAILCHIMP_KEY_PATTERN.sub(MASK, text)

    def filter(self, record):
        if record.args:
            # merge first so secrets passed as %-style arguments are caught too
            record.msg = record.getMessage()
            record.args = None
        record.msg = self.scrub(str(record.msg))
        return True


class SyncLogging:
    """
    Owns the root logger handlers installed for a sync run.

    ``configure`` is idempotent until ``reset`` is called, so the CLI and the
    health check can both ask for logging without doubling handlers.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
        self.handlers: List[logging.Handler] = []

    def configure(self, settings: Optional[Dict[str, Any]]) -> None:
        """
        Install file and console handlers on the root logger.

        Args:
            settings: The ``logging`` section of the configuration
        """
        if self.configured:
            return

        settings = settings or {}
        level = self._level(settings.get('level'), logging.INFO)
        self.retention_days = settings.get('retention_days', 7)
        self.log_dir = self._prepare_log_dir(os.path.expanduser(settings.get('log_dir', 'logs')))
        log_path = os.path.join(self.log_dir, settings.get('log_file', 'sync.log'))

        scrubber = SensitiveDataFilter()
        self.handlers = [self._file_handler(log_path, settings.get('rotation', 'daily'), level, scrubber)]
        if settings.get('console_output', True):
            console_level = self._level(settings.get('console_level'), logging.WARNING)
            self.handlers.append(self._console_handler(console_level, scrubber))

        root = logging.getLogger()
        root.setLevel(level)
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in self.handlers:
            root.addHandler(handler)

        # ldap3 logs every PDU at DEBUG
        logging.getLogger('ldap3').setLevel(logging.WARNING)

        self._prune_backups(log_path)
        self.configured = True
        logging.getLogger(__name__).info(
            f"Logging to {log_path} at {logging.getLevelName(level)}, "
            f"keeping {self.retention_days} days of backups"
        )

    @staticmethod
    def _level(name, default: int) -> int:
        if name is None:
            return default
        level = logging.getLevelName(str(name).upper())
        return level if isinstance(level, int) else default

    @staticmethod
    def _prepare_log_dir(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: cannot create log directory {log_dir} ({e}), logging to the current directory")
            return '.'
        return log_dir

    def _file_handler(self, log_path: str, rotation, level: int,
                      scrubber: logging.Filter) -> logging.Handler:
        """Rotate at midnight for 'daily'/'midnight', otherwise append to one file."""
        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                log_path, when='midnight', backupCount=self.retention_days, encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_path, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handler.addFilter(scrubber)
        return handler

    @staticmethod
    def _console_handler(level: int, scrubber: logging.Filter) -> logging.Handler:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        handler.addFilter(scrubber)
        return handler

    def _prune_backups(self, log_path: str) -> None:
        """Delete rotated copies of ``log_path`` older than the retention window."""
        if self.retention_days <= 0:
            return

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        prefix = os.path.basename(log_path) + '.'
        with os.scandir(os.path.dirname(log_path) or '.') as entries:
            for entry in entries:
                if not entry.name.startswith(prefix) or not entry.is_file():
                    continue
                try:
                    if entry.stat().st_mtime < cutoff:
                        os.remove(entry.path)
                except OSError as e:
                    print(f"Warning: could not remove old log file {entry.path}: {e}")

    def reset(self) -> None:
        """Detach and close the installed handlers so ``configure`` can run again."""
        root = logging.getLogger()
        for handler in self.handlers:
            root.removeHandler(handler)
            handler.close()
        self.handlers = []
        self.configured = False


_sync_logging = SyncLogging()


def setup_logging(settings: Optional[Dict[str, Any]]) -> None:
    """Configure process-wide logging from the ``logging`` config section."""
    _sync_logging.configure(settings)


def reset_logging() -> None:
    _sync_logging.reset()
