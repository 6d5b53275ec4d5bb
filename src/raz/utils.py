"""
Raz - Utility functions.

Created by orpheus497
Version: 1.0.0

Provides logging setup, validation and formatting helpers.
"""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import Config
from .constants import (
    DEFAULT_DATA_DIR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)

logger = logging.getLogger(__name__)

# URL-safe base64 alphabet used by secrets.token_urlsafe
_URLSAFE_TOKEN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


def setup_logging(config: Optional[Config] = None, debug: bool = False) -> logging.Logger:
    """
    Configure the ``raz`` logger from the logging configuration section.

    Console output goes through a rich handler; file output, when enabled,
    rotates at 10 MB keeping five backups.

    Args:
        config: Configuration (defaults are used when omitted)
        debug: Force DEBUG level regardless of configuration

    Returns:
        The configured package logger
    """
    level_name = config.get("logging", "level", "INFO") if config else "INFO"
    level = logging.DEBUG if debug else getattr(logging, str(level_name).upper(), logging.INFO)
    console_logging = config.get("logging", "console_logging", True) if config else True
    file_logging = config.get("logging", "file_logging", False) if config else False

    package_logger = logging.getLogger("raz")
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    if console_logging:
        console_handler = RichHandler(
            console=Console(stderr=True), show_path=False, rich_tracebacks=True
        )
        console_handler.setLevel(level)
        package_logger.addHandler(console_handler)

    if file_logging:
        log_dir_setting = config.get("logging", "log_dir", "") if config else ""
        log_dir = (
            Path(log_dir_setting).expanduser()
            if log_dir_setting
            else Path(DEFAULT_DATA_DIR).expanduser() / LOGS_DIR
        )
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        file_handler.setLevel(level)
        package_logger.addHandler(file_handler)

    package_logger.propagate = not package_logger.handlers
    return package_logger


def validate_token(token: Any) -> bool:
    """
    Validate the shape of a room ID or membership token.

    Args:
        token: Candidate value

    Returns:
        True if it looks like a URL-safe generated token
    """
    return isinstance(token, str) and bool(_URLSAFE_TOKEN.match(token))


def validate_port(port: int) -> bool:
    """
    Validate a listening port. 0 asks the OS for a free port.

    Args:
        port: Port number to validate

    Returns:
        True if valid, False otherwise
    """
    return port == 0 or 1024 <= port <= 65535


def format_remaining(seconds: Optional[int]) -> str:
    """
    Format a remaining TTL as MM:SS.

    Args:
        seconds: Remaining seconds, or None for a room that never expires

    Returns:
        Formatted string ("never" for permanent rooms)
    """
    if seconds is None:
        return "never"
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix


def create_settings_table(settings: Dict[str, Dict[str, Any]], hidden: List[str]) -> Table:
    """
    Create a table of effective settings for the server banner.

    Args:
        settings: Configuration sections
        hidden: Keys whose values are masked

    Returns:
        Rich Table object
    """
    table = Table(title="Raz Server", show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="bold")
    table.add_column("Value")

    for section, values in settings.items():
        if not isinstance(values, dict):
            continue
        for key, value in values.items():
            if key in hidden:
                shown = "(set)" if value else "(unset)"
            else:
                shown = truncate_string(str(value), 48)
            table.add_row(f"{section}.{key}", shown)

    return table
