"""
Seal Relayer Logging

Root logger setup shared by every module: a ``rich`` console with relayer
highlighting and a rotating file, both behind a formatter that strips
terminal control sequences. Timestamps are UTC.

Usage:
    >>> from sealrelay.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Relayer started")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
)


PROJECT_ROOT = Path(__file__).parent.parent
LOG_FILE_PATH = PROJECT_ROOT / "logs" / "relayer.log"

RELAYER_THEME = Theme({
    "sealrelay.arrow":          "bold yellow",
    "sealrelay.level_critical": "bold red reverse",
    "sealrelay.level_debug":    "bold dim",
    "sealrelay.level_error":    "bold red",
    "sealrelay.level_info":     "bold green",
    "sealrelay.level_warning":  "bold yellow",
    "sealrelay.logger_name":    "magenta",
    "sealrelay.seal":           "bold cyan",
    "sealrelay.status":         "bold blue",
    "sealrelay.failed":         "bold red",
    "sealrelay.tag":            "bold magenta",
    "sealrelay.timestamp":      "bold cyan",
    "sealrelay.url":            "cyan",
})

NOISY_LIBRARIES = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "uvicorn": logging.ERROR,
    "uvicorn.error": logging.ERROR,
}


class LogManager:
    """Configures the root logger once per process (singleton)."""

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> "LogManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._configured = False
        return cls._instance

    @staticmethod
    def _formatter() -> "TerminalSafeFormatter":
        try:
            formatter = TerminalSafeFormatter(fmt=str(LOG_FORMAT), datefmt=f"{LOG_DATE_FORMAT} UTC", validate=True)
        except ValueError as e:
            print(f"sealrelay.logger - bad LOG_FORMAT ({e}), using default", file=sys.stderr)
            formatter = TerminalSafeFormatter(fmt=LOG_FORMAT.default(), datefmt=f"{LOG_DATE_FORMAT.default()} UTC")
        formatter.converter = time.gmtime
        return formatter

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = True,
        force: bool = False,
    ) -> None:
        """
        Install console and file handlers on the root logger.

        Args:
            log_level: DEBUG, INFO, ... (defaults to LOG_LEVEL from .env)
            log_file: rotating log file (defaults to logs/relayer.log)
            force: reconfigure even if already configured, used by the CLI
                once the config file has been read
        """
        with self._lock:
            if self._configured and not force:
                return

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            root_logger = logging.getLogger()
            root_logger.setLevel(level)
            root_logger.handlers.clear()
            for lib, lib_level in NOISY_LIBRARIES.items():
                logging.getLogger(lib).setLevel(lib_level)

            formatter = self._formatter()
            handlers = []
            if console_output and LOG_CONSOLE_HIGHLIGHTING:
                handlers.append(RichHandler(
                    console=Console(theme=RELAYER_THEME, highlight=False),
                    highlighter=RelayerLogHighlighter(),
                    keywords=[],
                    rich_tracebacks=True,
                    show_path=False,
                    show_time=False,
                    show_level=False,
                    markup=False,
                ))
            elif console_output:
                handlers.append(logging.StreamHandler(sys.stdout))

            if file_output:
                path = log_file or LOG_FILE_PATH
                path.parent.mkdir(parents=True, exist_ok=True)
                handlers.append(logging.handlers.RotatingFileHandler(
                    filename=str(path),
                    maxBytes=LOG_MAX_FILE_SIZE,
                    backupCount=LOG_BACKUP_COUNT,
                    encoding="utf-8",
                ))

            for handler in handlers:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                root_logger.addHandler(handler)
            self._configured = True

    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


class TerminalSafeFormatter(logging.Formatter):
    """
    Strips ANSI escape sequences and control characters so that values read
    from ledgers (NFT names, URIs) cannot manipulate the terminal or forge
    log lines (CWE-117).
    """

    _ansi_escape_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
    )
    # everything below 0x20 except tab and newline, plus DEL
    _control_chars_re = re.compile(r"[\x00-\x08\x0B-\x1F\x7F]")

    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        return cls._control_chars_re.sub("", cls._ansi_escape_re.sub("", text))

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class RelayerLogHighlighter(RegexHighlighter):
    """Colors levels, pipeline arrows, truncated seal hashes and statuses."""

    base_style = "sealrelay."
    highlights = [
        r"(?P<arrow>(\-\->)|(<--))",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<level_warning>\bWARNING\b)",
        r"(?P<seal>\bseal=[0-9a-f]{8,64}(?:\.\.\.)?)",
        r"(?P<status>\b(OBSERVED|SIGNING|VERIFIED|MINTED|CLOSED)\b)",
        r"(?P<failed>\bFAILED\b)",
        r"(?P<tag>\[.*?\])",
        r"(?P<timestamp>^(.*?)UTC)",
        r"(?P<url>https?://\S+)",
    ]


def short_hash(value: Union[bytes, str], length: int = 16) -> str:
    """Truncated hex form of a seal hash for log lines."""
    text = value.hex() if isinstance(value, (bytes, bytearray)) else str(value)
    if len(text) <= length:
        return text
    return text[:length] + "..."


_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    return _manager.get_logger(name)


def configure_logging(**kwargs) -> None:
    """Reconfigure logging after the relayer config is loaded."""
    _manager.configure(force=True, **kwargs)


_manager.configure()
