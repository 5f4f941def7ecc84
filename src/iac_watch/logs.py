"""Logging setup and secret redaction."""

import logging
from pathlib import Path
from typing import Iterable, Optional

from rich.logging import RichHandler

LOG_FILE_NAME = "iac-watch.log"
REDACTED = "****"

logger = logging.getLogger("iac_watch")


def redact(text: str, secrets: Iterable[Optional[str]]) -> str:
    """Mask every occurrence of the given secrets in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


class SecretFilter(logging.Filter):
    """Masks registered secrets in log records before they are emitted.

    Usage:
        secret_filter = SecretFilter()
        secret_filter.attach()
        secret_filter.track(config.auth_token)
        ...
        secret_filter.detach()
    """

    def __init__(self) -> None:
        super().__init__()
        self._secrets: set[str] = set()

    def register(self, secret: Optional[str]) -> None:
        if secret:
            self._secrets.add(secret)

    def track(self, secret: Optional[str]) -> None:
        """Mask only this secret from now on, forgetting earlier ones."""
        self._secrets = {secret} if secret else set()

    def attach(self, target: Optional[logging.Logger] = None) -> None:
        """Add the filter to every handler of the package logger."""
        for handler in (target or logger).handlers:
            handler.addFilter(self)

    def detach(self, target: Optional[logging.Logger] = None) -> None:
        for handler in (target or logger).handlers:
            handler.removeFilter(self)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        record.msg = redact(message, self._secrets)
        record.args = None
        return True


def configure_logging(
    log_dir: Optional[Path] = None,
    level: str = "INFO",
    console: bool = False,
) -> Optional[Path]:
    """Configure the package logger.

    Args:
        log_dir: Directory for the log file. No file is written if None.
        level: Log level name.
        console: Also log to stderr through rich.

    Returns:
        Path of the log file, if one was configured.
    """
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_file = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / LOG_FILE_NAME
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
        logger.addHandler(file_handler)

    if console:
        rich_handler = RichHandler(show_path=False, rich_tracebacks=False)
        logger.addHandler(rich_handler)

    return log_file
